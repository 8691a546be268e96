"""Lucas-Kanade optical flow by Gauss-Newton, single and multi level."""

from __future__ import annotations

import sys
import time

import numpy as np
from PIL import Image, ImageDraw
from scipy import ndimage

from vslamtools.image import build_pyramid, get_pixel_value, load_gray

_HALF_PATCH = 4
_ITERATIONS = 10
_PYRAMIDS = 4
_PYRAMID_SCALE = 0.5
_SCALES = (1.0, 0.5, 0.25, 0.125)

_OFFSETS_X = np.repeat(np.arange(-_HALF_PATCH, _HALF_PATCH), 2 * _HALF_PATCH).astype(float)
_OFFSETS_Y = np.tile(np.arange(-_HALF_PATCH, _HALF_PATCH), 2 * _HALF_PATCH).astype(float)


def _as_points(points) -> np.ndarray:
    return np.asarray(points, dtype=float).reshape(-1, 2)


def _gradient(img, xs, ys) -> np.ndarray:
    """Central-difference image gradient, one row per sample."""
    return 0.5 * np.stack(
        (
            get_pixel_value(img, xs + 1, ys) - get_pixel_value(img, xs - 1, ys),
            get_pixel_value(img, xs, ys + 1) - get_pixel_value(img, xs, ys - 1),
        ),
        axis=1,
    )


def _track(img1, img2, px, py, dx, dy, inverse):
    """Estimate the displacement of one keypoint; return (dx, dy, success)."""
    x1 = px + _OFFSETS_X
    y1 = py + _OFFSETS_Y
    reference = get_pixel_value(img1, x1, y1)

    hessian = np.zeros((2, 2))
    jacobian = None
    succ = True
    last_cost = 0.0

    for iteration in range(_ITERATIONS):
        xs = x1 + dx
        ys = y1 + dy
        error = reference - get_pixel_value(img2, xs, ys)

        if not inverse:
            jacobian = -_gradient(img2, xs, ys)
            hessian = jacobian.T @ jacobian
        elif iteration == 0:
            # The inverse formulation keeps the template Jacobian fixed.
            jacobian = -_gradient(img1, x1, y1)
            hessian = jacobian.T @ jacobian

        bias = -(jacobian.T @ error)
        cost = float(error @ error)

        try:
            update = np.linalg.solve(hessian, bias)
        except np.linalg.LinAlgError:
            update = np.full(2, np.nan)

        if np.isnan(update[0]):
            # A flat patch leaves the Hessian singular.
            print("update is nan")
            succ = False
            break

        if iteration > 0 and cost > last_cost:
            break

        dx += float(update[0])
        dy += float(update[1])
        last_cost = cost
        succ = True

        if float(np.linalg.norm(update)) < 1e-2:
            break

    return dx, dy, succ


def optical_flow_single_level(
    img1, img2, kp1, kp2=None, inverse: bool = False, has_initial: bool = False
):
    """Track keypoints ``kp1`` (rows of x, y) from ``img1`` into ``img2``.

    With ``has_initial`` the positions in ``kp2`` are the starting guesses.
    Returns the tracked positions and a boolean array of successes.
    """
    kp1 = _as_points(kp1)
    if has_initial:
        if kp2 is None:
            raise ValueError("an initial guess needs kp2")
        guess = _as_points(kp2)
        if len(guess) != len(kp1):
            raise ValueError("kp1 and kp2 must have the same length")
    else:
        guess = kp1

    img1 = np.asarray(img1)
    img2 = np.asarray(img2)
    tracked = np.empty_like(kp1)
    success = np.zeros(len(kp1), dtype=bool)

    for i, ((px, py), (gx, gy)) in enumerate(zip(kp1, guess)):
        dx, dy = (gx - px, gy - py) if has_initial else (0.0, 0.0)
        dx, dy, succ = _track(img1, img2, px, py, dx, dy, inverse)
        success[i] = succ
        tracked[i] = (px + dx, py + dy)

    return tracked, success


def optical_flow_multi_level(img1, img2, kp1, inverse: bool = False):
    """Coarse-to-fine tracking over a four-level pyramid of scale 0.5."""
    kp1 = _as_points(kp1)

    t1 = time.perf_counter()
    pyr1 = build_pyramid(img1, _PYRAMIDS, _PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, _PYRAMIDS, _PYRAMID_SCALE)
    print(f"build pyramid time: {time.perf_counter() - t1}")

    kp1_pyr = kp1 * _SCALES[_PYRAMIDS - 1]
    kp2_pyr = kp1_pyr.copy()
    success = np.zeros(len(kp1), dtype=bool)

    for level in range(_PYRAMIDS - 1, -1, -1):
        t1 = time.perf_counter()
        kp2_pyr, success = optical_flow_single_level(
            pyr1[level], pyr2[level], kp1_pyr, kp2_pyr, inverse, True
        )
        print(f"track pyr {level} cost time: {time.perf_counter() - t1}")
        if level > 0:
            kp1_pyr = kp1_pyr / _PYRAMID_SCALE
            kp2_pyr = kp2_pyr / _PYRAMID_SCALE

    return kp2_pyr, success


def detect_good_features(
    img, max_corners: int = 500, quality_level: float = 0.01, min_distance: float = 20
) -> np.ndarray:
    """Shi-Tomasi corners as rows of (x, y), strongest first."""
    data = np.asarray(img, dtype=float)
    gx = ndimage.sobel(data, axis=1)
    gy = ndimage.sobel(data, axis=0)
    sxx = ndimage.uniform_filter(gx * gx, 3)
    syy = ndimage.uniform_filter(gy * gy, 3)
    sxy = ndimage.uniform_filter(gx * gy, 3)
    response = 0.5 * (sxx + syy) - np.sqrt(0.25 * (sxx - syy) ** 2 + sxy * sxy)

    peak = float(response.max()) if response.size else 0.0
    if peak <= 0.0:
        return np.empty((0, 2))

    threshold = quality_level * peak
    local_max = response == ndimage.maximum_filter(response, size=3)
    ys, xs = np.nonzero(local_max & (response > threshold))
    order = np.argsort(-response[ys, xs], kind="stable")
    candidates = np.column_stack((xs[order], ys[order])).astype(float)

    kept: list[np.ndarray] = []
    min_d2 = float(min_distance) ** 2
    for point in candidates:
        if len(kept) >= max_corners:
            break
        if kept:
            diffs = np.asarray(kept) - point
            if np.min(np.einsum("ij,ij->i", diffs, diffs)) < min_d2:
                continue
        kept.append(point)
    return np.asarray(kept, dtype=float).reshape(-1, 2)


def _draw_tracks(img2, kp1, kp2, success, path) -> None:
    canvas = Image.fromarray(np.asarray(img2, dtype=np.uint8)).convert("RGB")
    draw = ImageDraw.Draw(canvas)
    green = (0, 250, 0)
    for (x1, y1), (x2, y2), ok in zip(kp1, kp2, success):
        if ok:
            draw.ellipse((x2 - 2, y2 - 2, x2 + 2, y2 + 2), outline=green, width=2)
            draw.line((x1, y1, x2, y2), fill=green)
    canvas.save(path)


def main(argv=None) -> int:
    """Track corners between two images and save the tracks as PNG files."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) not in (0, 2):
        print("usage: optical_flow [first.png second.png]")
        return 1
    file_1, file_2 = args if args else ("./LK1.png", "./LK2.png")

    img1 = load_gray(file_1)
    img2 = load_gray(file_2)
    kp1 = detect_good_features(img1, 500, 0.01, 20)

    kp2_single, success_single = optical_flow_single_level(img1, img2, kp1)

    t1 = time.perf_counter()
    kp2_multi, success_multi = optical_flow_multi_level(img1, img2, kp1, True)
    print(f"optical flow by gauss-newton: {time.perf_counter() - t1}")

    _draw_tracks(img2, kp1, kp2_single, success_single, "tracked_single_level.png")
    _draw_tracks(img2, kp1, kp2_multi, success_multi, "tracked_multi_level.png")
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""Sparse direct pose estimation between a reference image and later frames."""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass, replace

import numpy as np
from PIL import Image, ImageDraw

from vslamtools.image import build_pyramid, load_gray
from vslamtools.lie import SE3

_HALF_PATCH = 1
_ITERATIONS = 10
_PYRAMIDS = 4
_PYRAMID_SCALE = 0.5
_SCALES = (1.0, 0.5, 0.25, 0.125)
_BASELINE = 0.573

_PATCH = np.arange(-_HALF_PATCH, _HALF_PATCH + 1, dtype=float)
_OFFSETS_X = np.repeat(_PATCH, _PATCH.size)
_OFFSETS_Y = np.tile(_PATCH, _PATCH.size)


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera intrinsics."""

    fx: float = 718.856
    fy: float = 718.856
    cx: float = 607.1928
    cy: float = 185.2157

    def scaled(self, factor: float) -> "CameraIntrinsics":
        """Return the intrinsics of an image resized by ``factor``."""
        return replace(
            self,
            fx=self.fx * factor,
            fy=self.fy * factor,
            cx=self.cx * factor,
            cy=self.cy * factor,
        )


def get_pixel_value(img, x, y):
    """Bilinearly interpolate ``img`` at column ``x`` and row ``y``.

    Coordinates are clamped to the image; the neighbouring samples are
    clamped to the last row and column. Scalars give a float, arrays an array.
    """
    img = np.asarray(img)
    rows, cols = img.shape[:2]
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    x = np.where(x < 0, 0.0, x)
    y = np.where(y < 0, 0.0, y)
    x = np.where(x >= cols, float(cols - 1), x)
    y = np.where(y >= rows, float(rows - 1), y)

    x0 = np.floor(x).astype(int)
    y0 = np.floor(y).astype(int)
    xx = x - x0
    yy = y - y0
    x1 = np.minimum(cols - 1, x0 + 1)
    y1 = np.minimum(rows - 1, y0 + 1)

    data = img.astype(float, copy=False)
    value = (
        (1 - xx) * (1 - yy) * data[y0, x0]
        + xx * (1 - yy) * data[y0, x1]
        + (1 - xx) * yy * data[y1, x0]
        + xx * yy * data[y1, x1]
    )
    return float(value) if value.ndim == 0 else value


class JacobianAccumulator:
    """Accumulates the Gauss-Newton system of the photometric error."""

    def __init__(self, img1, img2, px_ref, depth_ref, T21, camera) -> None:
        self.img1 = np.asarray(img1)
        self.img2 = np.asarray(img2)
        self.px_ref = np.asarray(px_ref, dtype=float).reshape(-1, 2)
        self.depth_ref = np.asarray(depth_ref, dtype=float).ravel()
        if len(self.px_ref) != len(self.depth_ref):
            raise ValueError("px_ref and depth_ref must have the same length")
        self.T21 = T21
        self.camera = camera
        self.projection = np.zeros((len(self.px_ref), 2))
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Set the Hessian, bias and cost to zero."""
        self.hessian = np.zeros((6, 6))
        self.bias = np.zeros(6)
        self.cost = 0.0

    def accumulate_jacobian(self, start: int, stop: int) -> None:
        """Add the contributions of reference points ``start`` to ``stop - 1``."""
        cam = self.camera
        px = self.px_ref[start:stop]
        depth = self.depth_ref[start:stop]
        indices = np.arange(start, start + len(px))

        rays = np.column_stack(
            (
                (px[:, 0] - cam.cx) / cam.fx,
                (px[:, 1] - cam.cy) / cam.fy,
                np.ones(len(px)),
            )
        )
        with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
            point_cur = self.T21 * (depth[:, None] * rays)
            X, Y, Z = point_cur[:, 0], point_cur[:, 1], point_cur[:, 2]
            u = cam.fx * X / Z + cam.cx
            v = cam.fy * Y / Z + cam.cy

        rows, cols = self.img2.shape[:2]
        h = _HALF_PATCH
        good = (
            np.isfinite(u)
            & np.isfinite(v)
            & ~(Z < 0)
            & ~(u < h)
            & ~(u > cols - h)
            & ~(v < h)
            & ~(v > rows - h)
        )
        cnt_good = int(good.sum())
        if cnt_good == 0:
            return

        self.projection[indices[good]] = np.column_stack((u[good], v[good]))

        px, u, v = px[good], u[good, None], v[good, None]
        X, Y, Z = X[good], Y[good], Z[good]
        z_inv = 1.0 / Z
        z2_inv = z_inv * z_inv

        xs = u + _OFFSETS_X
        ys = v + _OFFSETS_Y
        error = get_pixel_value(
            self.img1, px[:, 0, None] + _OFFSETS_X, px[:, 1, None] + _OFFSETS_Y
        ) - get_pixel_value(self.img2, xs, ys)

        fx, fy = cam.fx, cam.fy
        zeros = np.zeros_like(X)
        j_pixel_xi = np.stack(
            (
                np.stack(
                    (
                        fx * z_inv,
                        zeros,
                        -fx * X * z2_inv,
                        -fx * X * Y * z2_inv,
                        fx + fx * X * X * z2_inv,
                        -fx * Y * z_inv,
                    ),
                    axis=1,
                ),
                np.stack(
                    (
                        zeros,
                        fy * z_inv,
                        -fy * Y * z2_inv,
                        -fy - fy * Y * Y * z2_inv,
                        fy * X * Y * z2_inv,
                        fy * X * z_inv,
                    ),
                    axis=1,
                ),
            ),
            axis=1,
        )
        j_img_pixel = 0.5 * np.stack(
            (
                get_pixel_value(self.img2, xs + 1, ys)
                - get_pixel_value(self.img2, xs - 1, ys),
                get_pixel_value(self.img2, xs, ys + 1)
                - get_pixel_value(self.img2, xs, ys - 1),
            ),
            axis=2,
        )
        jacobian = -np.einsum("nkp,npj->nkj", j_img_pixel, j_pixel_xi)

        hessian = np.einsum("nki,nkj->ij", jacobian, jacobian)
        bias = -np.einsum("nk,nki->i", error, jacobian)
        cost_tmp = float(np.sum(error * error))

        with self._lock:
            self.hessian += hessian
            self.bias += bias
            self.cost += cost_tmp / cnt_good


def _solve(hessian: np.ndarray, bias: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(hessian, bias)
    except np.linalg.LinAlgError:
        return np.full(6, np.nan)


def direct_pose_estimation_single_layer(
    img1, img2, px_ref, depth_ref, T21=None, camera=None
):
    """Refine ``T21`` on one image pair; return it with the projected points."""
    T21 = SE3() if T21 is None else T21
    camera = CameraIntrinsics() if camera is None else camera

    t1 = time.perf_counter()
    accumulator = JacobianAccumulator(img1, img2, px_ref, depth_ref, T21, camera)
    count = len(accumulator.px_ref)
    last_cost = 0.0

    for iteration in range(_ITERATIONS):
        accumulator.reset()
        accumulator.accumulate_jacobian(0, count)
        update = _solve(accumulator.hessian, accumulator.bias)
        T21 = SE3.exp(update) * T21
        accumulator.T21 = T21
        cost = accumulator.cost

        if np.isnan(update[0]):
            # A black or white patch leaves the Hessian singular.
            print("update is nan")
            break
        if iteration > 0 and cost > last_cost:
            print(f"cost increased: {cost}, {last_cost}")
            break
        if float(np.linalg.norm(update)) < 1e-3:
            break

        last_cost = cost
        print(f"iteration: {iteration}, cost: {cost}")

    print(f"T21 = \n{T21.matrix()}")
    print(f"direct method for single layer: {time.perf_counter() - t1}")
    return T21, accumulator.projection.copy()


def direct_pose_estimation_multi_layer(
    img1, img2, px_ref, depth_ref, T21=None, camera=None
):
    """Refine ``T21`` coarse to fine over a four-level pyramid of scale 0.5."""
    T21 = SE3() if T21 is None else T21
    camera = CameraIntrinsics() if camera is None else camera
    px_ref = np.asarray(px_ref, dtype=float).reshape(-1, 2)

    pyr1 = build_pyramid(img1, _PYRAMIDS, _PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, _PYRAMIDS, _PYRAMID_SCALE)

    projection = np.zeros_like(px_ref)
    for level in range(_PYRAMIDS - 1, -1, -1):
        scale = _SCALES[level]
        T21, projection = direct_pose_estimation_single_layer(
            pyr1[level],
            pyr2[level],
            px_ref * scale,
            depth_ref,
            T21,
            camera.scaled(scale),
        )
    return T21, projection


def _draw_projection(img, px_ref, projection, path) -> None:
    canvas = Image.fromarray(np.asarray(img, dtype=np.uint8)).convert("RGB")
    draw = ImageDraw.Draw(canvas)
    green = (0, 250, 0)
    for (xr, yr), (xc, yc) in zip(px_ref, projection):
        if xc > 0 and yc > 0:
            draw.ellipse((xc - 2, yc - 2, xc + 2, yc + 2), outline=green, width=2)
            draw.line((xr, yr, xc, yc), fill=green)
    canvas.save(path)


def main(argv=None) -> int:
    """Estimate the poses of five frames against a reference stereo image."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) not in (0, 3):
        print("usage: direct_method [left.png disparity.png frame_pattern]")
        return 1
    left_file, disparity_file, pattern = (
        args if args else ("./left.png", "./disparity.png", "./{:06d}.png")
    )

    camera = CameraIntrinsics()
    left_img = load_gray(left_file)
    disparity_img = load_gray(disparity_file)

    rng = np.random.default_rng(0)
    n_points = 2000
    border = 20
    rows, cols = left_img.shape
    xs = rng.integers(border, cols - border, size=n_points)
    ys = rng.integers(border, rows - border, size=n_points)
    disparity = disparity_img[ys, xs].astype(float)
    with np.errstate(divide="ignore"):
        depth_ref = camera.fx * _BASELINE / disparity
    pixels_ref = np.column_stack((xs, ys)).astype(float)

    T_cur_ref = SE3()
    for i in range(1, 6):
        img = load_gray(pattern.format(i))
        T_cur_ref, projection = direct_pose_estimation_multi_layer(
            left_img, img, pixels_ref, depth_ref, T_cur_ref, camera
        )
        _draw_projection(img, pixels_ref, projection, f"projected_{i:06d}.png")
    return 0


if __name__ == "__main__":
    sys.exit(main())
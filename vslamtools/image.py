"""Grayscale image loading, bilinear sampling and image pyramids."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image


def load_gray(path) -> np.ndarray:
    """Read an image file as an 8-bit grayscale array of shape (rows, cols)."""
    with Image.open(Path(path)) as image:
        return np.array(image.convert("L"), dtype=np.uint8)


def get_pixel_value(img, x, y):
    """Bilinearly interpolate ``img`` at column ``x`` and row ``y``.

    Coordinates are clamped so that the 2x2 neighbourhood stays inside the
    image. ``x`` and ``y`` may be scalars or arrays of the same shape; a
    scalar query returns a float.
    """
    img = np.asarray(img)
    rows, cols = img.shape[:2]
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    x = np.where(x < 0, 0.0, x)
    y = np.where(y < 0, 0.0, y)
    x = np.where(x >= cols - 1, float(cols - 2), x)
    y = np.where(y >= rows - 1, float(rows - 2), y)

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


def _linear_coords(dst_size: int, src_size: int):
    """Source indices and weights for half-pixel-centred linear resampling."""
    s = (np.arange(dst_size) + 0.5) * (src_size / dst_size) - 0.5
    s = np.maximum(s, 0.0)
    i0 = np.floor(s).astype(int)
    a = s - i0
    over = i0 >= src_size - 1
    i0 = np.where(over, src_size - 1, i0)
    a = np.where(over, 0.0, a)
    i1 = np.minimum(i0 + 1, src_size - 1)
    return i0, i1, a


def _resize_linear(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize with bilinear interpolation, keeping the input's dtype."""
    src = np.asarray(img)
    data = src.astype(float)
    rows, cols = data.shape[:2]
    x0, x1, ax = _linear_coords(width, cols)
    y0, y1, ay = _linear_coords(height, rows)

    top = data[y0][:, x0] * (1 - ax) + data[y0][:, x1] * ax
    bottom = data[y1][:, x0] * (1 - ax) + data[y1][:, x1] * ax
    out = top * (1 - ay)[:, None] + bottom * ay[:, None]

    if np.issubdtype(src.dtype, np.integer):
        info = np.iinfo(src.dtype)
        return np.clip(np.rint(out), info.min, info.max).astype(src.dtype)
    return out.astype(src.dtype)


def build_pyramid(img, levels: int = 4, scale: float = 0.5) -> list[np.ndarray]:
    """Return ``levels`` images, each ``scale`` times the size of the one before."""
    if levels < 1:
        raise ValueError("a pyramid needs at least one level")
    if not 0.0 < scale <= 1.0:
        raise ValueError("pyramid scale must be in (0, 1]")
    pyramid = [np.asarray(img)]
    for _ in range(1, levels):
        prev = pyramid[-1]
        rows, cols = prev.shape[:2]
        width = int(cols * scale)
        height = int(rows * scale)
        if width < 1 or height < 1:
            raise ValueError("image too small for the requested pyramid")
        pyramid.append(_resize_linear(prev, width, height))
    return pyramid
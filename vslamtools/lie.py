"""Rotation and rigid-motion groups with exponential and logarithm maps."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-8


def hat(v) -> np.ndarray:
    """Return the skew-symmetric matrix of a 3-vector."""
    x, y, z = np.asarray(v, dtype=float)[:3]
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def _rodrigues_coefficients(theta: float) -> tuple[float, float, float]:
    """Return sin(t)/t, (1-cos t)/t^2 and (t-sin t)/t^3 with small-angle series."""
    if theta < _SMALL_ANGLE:
        t2 = theta * theta
        return 1.0 - t2 / 6.0, 0.5 - t2 / 24.0, 1.0 / 6.0 - t2 / 120.0
    t2 = theta * theta
    sin_t = math.sin(theta)
    return sin_t / theta, (1.0 - math.cos(theta)) / t2, (theta - sin_t) / (t2 * theta)


def so3_exp(omega) -> np.ndarray:
    """Map a rotation vector to a rotation matrix."""
    omega = np.asarray(omega, dtype=float)[:3]
    theta = float(np.linalg.norm(omega))
    a, b, _ = _rodrigues_coefficients(theta)
    k = hat(omega)
    return np.eye(3) + a * k + b * (k @ k)


def so3_log(rotation) -> np.ndarray:
    """Map a rotation matrix to its rotation vector."""
    return Rotation.from_matrix(np.asarray(rotation, dtype=float)).as_rotvec()


@dataclass(eq=False)
class SE3:
    """A rigid-body transform ``x -> R x + t``."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=float).reshape(3)

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Build a transform from a twist ``(translation part, rotation part)``."""
        xi = np.asarray(xi, dtype=float)
        if xi.shape != (6,):
            raise ValueError("a twist has six components")
        upsilon, phi = xi[:3], xi[3:]
        theta = float(np.linalg.norm(phi))
        _, b, c = _rodrigues_coefficients(theta)
        k = hat(phi)
        v = np.eye(3) + b * k + c * (k @ k)
        return cls(so3_exp(phi), v @ upsilon)

    def __mul__(self, other):
        if isinstance(other, SE3):
            return SE3(
                self.rotation @ other.rotation,
                self.rotation @ other.translation + self.translation,
            )
        points = np.asarray(other, dtype=float)
        if points.ndim == 0 or points.shape[-1] != 3:
            raise ValueError("can only transform 3D points")
        return points @ self.rotation.T + self.translation

    def matrix(self) -> np.ndarray:
        """Return the homogeneous 4x4 matrix."""
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m
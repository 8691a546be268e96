"""Angle-axis and quaternion rotation helpers."""

from __future__ import annotations

import math

import numpy as np

_EPS = float(np.finfo(float).eps)


def angle_axis_to_quaternion(angle_axis) -> np.ndarray:
    """Convert an angle-axis vector to a quaternion ``(w, x, y, z)``."""
    a = np.asarray(angle_axis, dtype=float)[:3]
    theta_squared = float(a @ a)
    if theta_squared > _EPS:
        theta = math.sqrt(theta_squared)
        half_theta = 0.5 * theta
        k = math.sin(half_theta) / theta
        w = math.cos(half_theta)
    else:
        # First-order approximation near the zero rotation.
        k = 0.5
        w = 1.0
    return np.concatenate(([w], a * k))


def quaternion_to_angle_axis(quaternion) -> np.ndarray:
    """Convert a quaternion ``(w, x, y, z)`` to an angle-axis vector."""
    q = np.asarray(quaternion, dtype=float)
    v = q[1:4]
    sin_squared_theta = float(v @ v)
    if sin_squared_theta > _EPS:
        sin_theta = math.sqrt(sin_squared_theta)
        cos_theta = float(q[0])
        # Keep the resulting angle within [-pi, pi].
        if cos_theta < 0.0:
            two_theta = 2.0 * math.atan2(-sin_theta, -cos_theta)
        else:
            two_theta = 2.0 * math.atan2(sin_theta, cos_theta)
        k = two_theta / sin_theta
    else:
        k = 2.0
    return v * k


def angle_axis_rotate_point(angle_axis, pt) -> np.ndarray:
    """Rotate a 3D point by an angle-axis rotation (Rodrigues' formula)."""
    a = np.asarray(angle_axis, dtype=float)[:3]
    p = np.asarray(pt, dtype=float)[:3]
    theta2 = float(a @ a)
    if theta2 > _EPS:
        theta = math.sqrt(theta2)
        costheta = math.cos(theta)
        sintheta = math.sin(theta)
        w = a / theta
        w_cross_pt = np.cross(w, p)
        tmp = float(w @ p) * (1.0 - costheta)
        return p * costheta + w_cross_pt * sintheta + w * tmp
    # Near zero, R * pt ~= pt + w x pt.
    return p + np.cross(a, p)
import math

import numpy as np
import pytest

from vslamtools.rotation import (
    angle_axis_rotate_point,
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
)

AXES = [
    [0.1, -0.2, 0.3],
    [1.0, 0.5, -0.7],
    [0.0, 0.0, 2.5],
    [-1.2, 0.3, 0.9],
]


def test_zero_rotation_gives_identity_quaternion():
    q = angle_axis_to_quaternion([0.0, 0.0, 0.0])
    assert np.allclose(q, [1.0, 0.0, 0.0, 0.0])


@pytest.mark.parametrize("aa", AXES)
def test_quaternion_is_unit(aa):
    q = angle_axis_to_quaternion(aa)
    assert q.shape == (4,)
    assert np.linalg.norm(q) == pytest.approx(1.0)


@pytest.mark.parametrize("aa", AXES + [[1e-9, -2e-9, 3e-9]])
def test_angle_axis_quaternion_round_trip(aa):
    back = quaternion_to_angle_axis(angle_axis_to_quaternion(aa))
    assert np.allclose(back, aa, atol=1e-12)


@pytest.mark.parametrize("aa", AXES)
def test_negated_quaternion_same_angle_axis(aa):
    q = angle_axis_to_quaternion(aa)
    assert np.allclose(quaternion_to_angle_axis(-q), aa)


@pytest.mark.parametrize("aa", AXES)
def test_rotation_preserves_norm(aa):
    pt = np.array([0.3, -1.7, 2.2])
    out = angle_axis_rotate_point(aa, pt)
    assert np.linalg.norm(out) == pytest.approx(np.linalg.norm(pt))


@pytest.mark.parametrize("aa", AXES)
def test_axis_is_fixed(aa):
    assert np.allclose(angle_axis_rotate_point(aa, aa), aa)


@pytest.mark.parametrize("aa", AXES)
def test_inverse_rotation_recovers_point(aa):
    pt = np.array([4.0, -2.0, 1.5])
    rotated = angle_axis_rotate_point(aa, pt)
    back = angle_axis_rotate_point(-np.asarray(aa), rotated)
    assert np.allclose(back, pt)


@pytest.mark.parametrize("aa", AXES)
def test_composition_along_same_axis(aa):
    pt = np.array([1.0, 2.0, 3.0])
    twice = angle_axis_rotate_point(aa, angle_axis_rotate_point(aa, pt))
    assert np.allclose(twice, angle_axis_rotate_point(2 * np.asarray(aa), pt))


def test_quarter_turn_about_z():
    out = angle_axis_rotate_point([0.0, 0.0, math.pi / 2], [1.0, 0.0, 0.0])
    assert np.allclose(out, [0.0, 1.0, 0.0])


def test_tiny_rotation_is_nearly_identity():
    pt = np.array([1.0, -2.0, 0.5])
    out = angle_axis_rotate_point([1e-10, 0.0, -1e-10], pt)
    assert np.allclose(out, pt, atol=1e-8)
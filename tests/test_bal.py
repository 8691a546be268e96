import random

import numpy as np
import pytest

from vslamtools.bal import BALProblem, median, perturb_point3
from vslamtools.reprojection import cam_projection_with_distortion
from vslamtools.rotation import angle_axis_rotate_point, quaternion_to_angle_axis

CAMERAS = [
    [0.01, 0.02, -0.03, 0.1, -0.2, 0.3, 500.0, 0.001, -0.0005],
    [-0.05, 0.04, 0.02, -0.4, 0.1, 0.2, 480.0, 0.0, 0.0],
]
POINTS = [
    [1.0, 2.0, -10.0],
    [-3.0, 0.5, -12.0],
    [2.5, -1.0, -8.0],
]
OBSERVATIONS = [
    (0, 0, -1.5, 2.25),
    (0, 1, 3.5, -0.75),
    (1, 1, 0.5, 1.0),
    (1, 2, -2.0, 0.125),
]


def _write_bal(path):
    lines = ["2 3 4"]
    lines += [f"{c} {p} {u} {v}" for c, p, u, v in OBSERVATIONS]
    for block in CAMERAS + POINTS:
        lines += [repr(x) for x in block]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def bal_file(tmp_path):
    return _write_bal(tmp_path / "problem.txt")


def test_median_odd_and_even():
    assert median([3.0, 1.0, 2.0]) == 2.0
    assert median([4.0, 1.0, 3.0, 2.0]) == 3.0


def test_median_empty_raises():
    with pytest.raises(ValueError):
        median([])


def test_perturb_point3_zero_sigma_is_identity():
    pt = np.array([1.0, -2.0, 3.0])
    assert np.allclose(perturb_point3(0.0, pt, random.Random(1)), pt)


def test_perturb_point3_reproducible():
    a = perturb_point3(0.5, [0.0, 0.0, 0.0], random.Random(5))
    b = perturb_point3(0.5, [0.0, 0.0, 0.0], random.Random(5))
    assert np.array_equal(a, b)
    assert np.linalg.norm(a) > 0


def test_load_reads_everything(bal_file):
    problem = BALProblem.load(bal_file)
    assert problem.num_cameras == 2
    assert problem.num_points == 3
    assert problem.num_observations == 4
    assert problem.num_parameters == 27
    assert problem.camera_block_size == 9
    assert list(problem.camera_index) == [o[0] for o in OBSERVATIONS]
    assert list(problem.point_index) == [o[1] for o in OBSERVATIONS]
    assert np.allclose(problem.observations, [o[2:] for o in OBSERVATIONS])
    assert np.allclose(problem.cameras, CAMERAS)
    assert np.allclose(problem.points, POINTS)


def test_load_truncated_raises(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("2 3 4\n0 0 1.0\n")
    with pytest.raises(ValueError):
        BALProblem.load(path)


def test_load_with_quaternions(bal_file):
    problem = BALProblem.load(bal_file, use_quaternions=True)
    assert problem.camera_block_size == 10
    assert problem.num_parameters == 29
    for cam, original in zip(problem.cameras, CAMERAS):
        assert np.allclose(quaternion_to_angle_axis(cam[:4]), original[:3])
        assert np.allclose(cam[4:], original[3:])
    assert np.allclose(problem.points, POINTS)


def test_observation_accessors_are_views(bal_file):
    problem = BALProblem.load(bal_file)
    assert np.allclose(problem.camera_for_observation(2), CAMERAS[1])
    assert np.allclose(problem.point_for_observation(3), POINTS[2])
    problem.point_for_observation(0)[2] = -20.0
    assert problem.points[0][2] == -20.0


@pytest.mark.parametrize("quat", [False, True])
def test_write_to_file_round_trip(bal_file, tmp_path, quat):
    problem = BALProblem.load(bal_file, use_quaternions=quat)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    again = BALProblem.load(out, use_quaternions=quat)
    assert again.num_cameras == problem.num_cameras
    assert np.array_equal(again.camera_index, problem.camera_index)
    assert np.allclose(again.observations, problem.observations)
    assert np.allclose(again.parameters, problem.parameters)


def test_write_to_ply_file(bal_file, tmp_path):
    problem = BALProblem.load(bal_file)
    out = tmp_path / "cloud.ply"
    problem.write_to_ply_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "ply"
    assert lines[2] == "element vertex 5"
    assert lines[9] == "end_header"
    assert len(lines) == 15
    assert all(line.endswith(" 0 255 0") for line in lines[10:12])
    assert all(line.endswith(" 255 255 255") for line in lines[12:])
    first_point = [float(x) for x in lines[12].split()[:3]]
    assert np.allclose(first_point, POINTS[0])


@pytest.mark.parametrize("quat", [False, True])
def test_center_round_trip(bal_file, quat):
    problem = BALProblem.load(bal_file, use_quaternions=quat)
    for cam in problem.cameras:
        aa, center = problem.camera_to_angle_axis_and_center(cam)
        cb = problem.camera_block_size
        translation = cam[cb - 6: cb - 3]
        assert np.allclose(angle_axis_rotate_point(aa, center) + translation, 0.0)
        back = problem.angle_axis_and_center_to_camera(aa, center)
        assert np.allclose(back, cam[: cb - 3])


def _projections(problem):
    return [
        cam_projection_with_distortion(
            problem.camera_for_observation(i), problem.point_for_observation(i)
        )
        for i in range(problem.num_observations)
    ]


def test_normalize(bal_file):
    problem = BALProblem.load(bal_file)
    before = _projections(problem)
    problem.normalize()
    pts = problem.points
    for axis in range(3):
        assert median(pts[:, axis]) == pytest.approx(0.0, abs=1e-9)
    assert median(np.abs(pts).sum(axis=1)) == pytest.approx(100.0)
    assert np.allclose(_projections(problem), before)


def test_perturb_zero_sigma_keeps_problem(bal_file):
    problem = BALProblem.load(bal_file)
    original = problem.parameters.copy()
    problem.perturb(0.0, 0.0, 0.0, random.Random(0))
    assert np.allclose(problem.parameters, original)


def test_perturb_negative_sigma_raises(bal_file):
    problem = BALProblem.load(bal_file)
    with pytest.raises(ValueError):
        problem.perturb(0.1, -0.5, 0.5)


def test_perturb_is_reproducible_and_keeps_intrinsics(bal_file):
    a = BALProblem.load(bal_file)
    b = BALProblem.load(bal_file)
    a.perturb(0.1, 0.5, 0.5, random.Random(42))
    b.perturb(0.1, 0.5, 0.5, random.Random(42))
    assert np.array_equal(a.parameters, b.parameters)
    assert not np.allclose(a.points, POINTS)
    assert np.allclose(a.cameras[:, 6:], np.asarray(CAMERAS)[:, 6:])
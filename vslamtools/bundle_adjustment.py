"""Bundle adjustment of BAL problems with a robust sparse least-squares solver."""

from __future__ import annotations

import sys

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import coo_matrix

from vslamtools.bal import BALProblem

_EPS = float(np.finfo(float).eps)


def _rotate(angle_axis: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Rotate each point by its own angle-axis vector."""
    theta2 = np.einsum("ij,ij->i", angle_axis, angle_axis)
    big = theta2 > _EPS
    theta = np.sqrt(np.where(big, theta2, 1.0))
    w = angle_axis / theta[:, None]
    cos_t = np.cos(theta)[:, None]
    sin_t = np.sin(theta)[:, None]
    dot = np.einsum("ij,ij->i", w, points)[:, None]
    full = points * cos_t + np.cross(w, points) * sin_t + w * dot * (1.0 - cos_t)
    approx = points + np.cross(angle_axis, points)
    return np.where(big[:, None], full, approx)


def _residuals(x, problem: BALProblem) -> np.ndarray:
    nc = problem.num_cameras
    cameras = x[: 9 * nc].reshape(nc, 9)[problem.camera_index]
    points = x[9 * nc:].reshape(-1, 3)[problem.point_index]
    p = _rotate(cameras[:, :3], points) + cameras[:, 3:6]
    xp = -p[:, 0] / p[:, 2]
    yp = -p[:, 1] / p[:, 2]
    r2 = xp * xp + yp * yp
    scale = cameras[:, 6] * (1.0 + r2 * (cameras[:, 7] + cameras[:, 8] * r2))
    predicted = np.column_stack((scale * xp, scale * yp))
    return (predicted - problem.observations).ravel()


def _jacobian_sparsity(problem: BALProblem) -> coo_matrix:
    n = problem.num_observations
    obs = np.arange(n)
    rows = []
    cols = []
    for r in range(2):
        row = 2 * obs + r
        cam_cols = problem.camera_index[:, None] * 9 + np.arange(9)
        pt_cols = 9 * problem.num_cameras + problem.point_index[:, None] * 3 + np.arange(3)
        rows.append(np.repeat(row, 12))
        cols.append(np.hstack((cam_cols, pt_cols)).ravel())
    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    return coo_matrix(
        (np.ones(rows.size), (rows, cols)), shape=(2 * n, problem.num_parameters)
    )


def solve_ba(problem: BALProblem):
    """Refine cameras and points in place, minimising Huber-robust reprojection error.

    Returns the optimiser's result object.
    """
    if problem.use_quaternions:
        raise ValueError("bundle adjustment expects angle-axis cameras")
    if problem.num_observations == 0:
        raise ValueError("problem has no observations")

    print("bal problem file loaded...")
    print(
        f"bal problem have {problem.num_cameras} cameras and "
        f"{problem.num_points} points. "
    )
    print(f"Forming {problem.num_observations} observations. ")
    print("Solving BA ... ")

    result = least_squares(
        _residuals,
        problem.parameters.copy(),
        jac_sparsity=_jacobian_sparsity(problem),
        method="trf",
        loss="huber",
        f_scale=1.0,
        x_scale="jac",
        verbose=2,
        args=(problem,),
    )
    problem.parameters[:] = result.x
    print(result.message)
    return result


def main(argv=None) -> int:
    """Load a BAL file, perturb it, solve it and write before/after point clouds."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: bundle_adjustment bal_data.txt")
        return 1

    problem = BALProblem.load(args[0])
    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5)
    problem.write_to_ply_file("initial.ply")
    solve_ba(problem)
    problem.write_to_ply_file("final.ply")
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""Bundle adjustment with a Levenberg-Marquardt solver on a camera/point graph."""

from __future__ import annotations

import dataclasses
import sys
from dataclasses import dataclass, field

import numpy as np
from scipy.linalg import block_diag
from scipy.sparse import coo_matrix

from vslamtools.bal import BALProblem
from vslamtools.lie import so3_exp, so3_log

_HUBER_DELTA = 1.0
_NUMERIC_DELTA = 1e-6
_MAX_TRIALS = 10
_TAU = 1e-5


def _project_batch(rotations, translations, intrinsics, points) -> np.ndarray:
    """Project points with per-row rotation, translation and (focal, k1, k2)."""
    pc = np.einsum("nij,nj->ni", rotations, points) + translations
    pc = -pc / pc[:, 2:3]
    # The normalised point keeps its third coordinate, so r2 includes it.
    r2 = np.einsum("ij,ij->i", pc, pc)
    focal, k1, k2 = intrinsics[:, 0], intrinsics[:, 1], intrinsics[:, 2]
    scale = focal * (1.0 + r2 * (k1 + k2 * r2))
    return scale[:, None] * pc[:, :2]


@dataclass(eq=False)
class PoseAndIntrinsics:
    """Camera rotation, translation, focal length and radial distortion."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    focal: float = 0.0
    k1: float = 0.0
    k2: float = 0.0

    @classmethod
    def from_array(cls, data) -> "PoseAndIntrinsics":
        """Build from a 9-value BAL camera block."""
        data = np.asarray(data, dtype=float)
        if data.size < 9:
            raise ValueError("a camera block has nine values")
        return cls(
            rotation=so3_exp(data[:3]),
            translation=data[3:6].copy(),
            focal=float(data[6]),
            k1=float(data[7]),
            k2=float(data[8]),
        )

    def to_array(self) -> np.ndarray:
        """Return the 9-value BAL camera block."""
        return np.concatenate(
            (so3_log(self.rotation), self.translation, [self.focal, self.k1, self.k2])
        )

    def project(self, point) -> np.ndarray:
        """Project a 3D point into the image."""
        return _project_batch(
            self.rotation[None],
            self.translation[None],
            np.array([[self.focal, self.k1, self.k2]]),
            np.asarray(point, dtype=float)[None, :3],
        )[0]

    def apply_update(self, update) -> None:
        """Apply a 9-dimensional increment; rotation is updated on the left."""
        u = np.asarray(update, dtype=float)
        self.rotation = so3_exp(u[:3]) @ self.rotation
        self.translation = self.translation + u[3:6]
        self.focal += float(u[6])
        self.k1 += float(u[7])
        self.k2 += float(u[8])


def _huber(e2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return the Huber cost and its first derivative for squared errors."""
    d2 = _HUBER_DELTA * _HUBER_DELTA
    inlier = e2 <= d2
    sqrt_e = np.sqrt(e2)
    cost = np.where(inlier, e2, 2.0 * sqrt_e * _HUBER_DELTA - d2)
    weight = np.where(inlier, 1.0, _HUBER_DELTA / np.where(inlier, 1.0, sqrt_e))
    return cost, weight


class _Graph:
    """Observation edges between camera vertices and marginalised point vertices."""

    def __init__(self, problem: BALProblem) -> None:
        self.ci = problem.camera_index
        self.pi = problem.point_index
        self.measurements = problem.observations
        self.nc = problem.num_cameras
        self.np = problem.num_points
        n = len(self.ci)
        self.hcp_rows = (self.ci[:, None, None] * 9 + np.arange(9)[None, :, None]) + np.zeros(
            (n, 9, 3), dtype=int
        )
        self.hcp_cols = (self.pi[:, None, None] * 3 + np.arange(3)[None, None, :]) + np.zeros(
            (n, 9, 3), dtype=int
        )
        p = np.arange(self.np)
        self.hpp_rows = (p[:, None, None] * 3 + np.arange(3)[None, :, None]) + np.zeros(
            (self.np, 3, 3), dtype=int
        )
        self.hpp_cols = (p[:, None, None] * 3 + np.arange(3)[None, None, :]) + np.zeros(
            (self.np, 3, 3), dtype=int
        )

    @staticmethod
    def stack(poses):
        rotations = np.stack([p.rotation for p in poses]) if poses else np.zeros((0, 3, 3))
        rest = np.array(
            [[*p.translation, p.focal, p.k1, p.k2] for p in poses], dtype=float
        ).reshape(-1, 6)
        return rotations, rest

    def errors(self, rotations, rest, points) -> np.ndarray:
        return (
            _project_batch(
                rotations[self.ci], rest[self.ci, :3], rest[self.ci, 3:], points[self.pi]
            )
            - self.measurements
        )

    def chi2(self, err: np.ndarray) -> float:
        cost, _ = _huber(np.einsum("ij,ij->i", err, err))
        return float(cost.sum())

    def jacobians(self, rotations, rest, points):
        d = _NUMERIC_DELTA
        n = len(self.ci)
        jc = np.empty((n, 2, 9))
        jp = np.empty((n, 2, 3))
        for k, axis in enumerate(np.eye(3)):
            plus = np.einsum("ij,cjk->cik", so3_exp(d * axis), rotations)
            minus = np.einsum("ij,cjk->cik", so3_exp(-d * axis), rotations)
            jc[:, :, k] = (
                self.errors(plus, rest, points) - self.errors(minus, rest, points)
            ) / (2 * d)
        for k in range(6):
            plus, minus = rest.copy(), rest.copy()
            plus[:, k] += d
            minus[:, k] -= d
            jc[:, :, 3 + k] = (
                self.errors(rotations, plus, points) - self.errors(rotations, minus, points)
            ) / (2 * d)
        for k in range(3):
            plus, minus = points.copy(), points.copy()
            plus[:, k] += d
            minus[:, k] -= d
            jp[:, :, k] = (
                self.errors(rotations, rest, plus) - self.errors(rotations, rest, minus)
            ) / (2 * d)
        return jc, jp


def solve_ba_levenberg(problem: BALProblem, iterations: int = 40) -> float:
    """Refine cameras and points in place; return the final robust chi2."""
    if problem.use_quaternions:
        raise ValueError("bundle adjustment expects angle-axis cameras")

    graph = _Graph(problem)
    poses = [PoseAndIntrinsics.from_array(c) for c in problem.cameras]
    points = problem.points.copy()
    nc, npts = graph.nc, graph.np

    rotations, rest = graph.stack(poses)
    cost = graph.chi2(graph.errors(rotations, rest, points))
    lam = None
    ni = 2.0

    for iteration in range(iterations):
        if problem.num_observations == 0:
            break
        err = graph.errors(rotations, rest, points)
        jc, jp = graph.jacobians(rotations, rest, points)
        _, w = _huber(np.einsum("ij,ij->i", err, err))

        hcc = np.zeros((nc, 9, 9))
        np.add.at(hcc, graph.ci, np.einsum("n,nai,naj->nij", w, jc, jc))
        hpp = np.zeros((npts, 3, 3))
        np.add.at(hpp, graph.pi, np.einsum("n,nai,naj->nij", w, jp, jp))
        gc = np.zeros((nc, 9))
        np.add.at(gc, graph.ci, np.einsum("n,nai,na->ni", w, jc, err))
        gp = np.zeros((npts, 3))
        np.add.at(gp, graph.pi, np.einsum("n,nai,na->ni", w, jp, err))
        hcp = coo_matrix(
            (
                np.einsum("n,nai,naj->nij", w, jc, jp).ravel(),
                (graph.hcp_rows.ravel(), graph.hcp_cols.ravel()),
            ),
            shape=(9 * nc, 3 * npts),
        ).tocsr()
        hcc_dense = block_diag(*hcc) if nc else np.zeros((0, 0))
        g = np.concatenate((gc.ravel(), gp.ravel()))

        if lam is None:
            diag = np.concatenate(
                (np.diagonal(hcc, axis1=1, axis2=2).ravel(),
                 np.diagonal(hpp, axis1=1, axis2=2).ravel())
            )
            lam = _TAU * float(diag.max()) if diag.size and diag.max() > 0 else _TAU

        accepted = False
        for _ in range(_MAX_TRIALS):
            try:
                hpp_inv_blocks = np.linalg.inv(hpp + lam * np.eye(3))
                hpp_inv = coo_matrix(
                    (hpp_inv_blocks.ravel(),
                     (graph.hpp_rows.ravel(), graph.hpp_cols.ravel())),
                    shape=(3 * npts, 3 * npts),
                ).tocsr()
                schur = hcc_dense + lam * np.eye(9 * nc) - (hcp @ hpp_inv @ hcp.T).toarray()
                rhs = -gc.ravel() + hcp @ (hpp_inv @ gp.ravel())
                dxc = np.linalg.solve(schur, rhs)
                dxp = hpp_inv @ (-gp.ravel() - hcp.T @ dxc)
            except np.linalg.LinAlgError:
                lam *= ni
                ni *= 2.0
                continue

            new_poses = [dataclasses.replace(p) for p in poses]
            for c, pose in enumerate(new_poses):
                pose.apply_update(dxc[9 * c: 9 * c + 9])
            new_points = points + dxp.reshape(-1, 3)
            new_rotations, new_rest = graph.stack(new_poses)
            new_cost = graph.chi2(graph.errors(new_rotations, new_rest, new_points))

            dx = np.concatenate((dxc, dxp))
            scale = float(dx @ (lam * dx - g)) + 1e-3
            rho = (cost - new_cost) / scale
            if np.isfinite(new_cost) and np.isfinite(rho) and rho > 0:
                poses, points = new_poses, new_points
                rotations, rest = new_rotations, new_rest
                cost = new_cost
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                ni = 2.0
                accepted = True
                break
            lam *= ni
            ni *= 2.0

        if not accepted:
            print(f"iteration= {iteration}\t no further improvement")
            break
        print(f"iteration= {iteration}\t chi2= {cost:.6f}\t lambda= {lam:g}")

    for camera, pose in zip(problem.cameras, poses):
        camera[:] = pose.to_array()
    problem.points[:] = points
    return cost


def main(argv=None) -> int:
    """Load a BAL file, perturb it, solve it and write before/after point clouds."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: graph_ba bal_data.txt")
        return 1

    problem = BALProblem.load(args[0])
    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5)
    problem.write_to_ply_file("initial.ply")
    solve_ba_levenberg(problem, 40)
    problem.write_to_ply_file("final.ply")
    return 0


if __name__ == "__main__":
    sys.exit(main())
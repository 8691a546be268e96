"""Bundle-adjustment-in-the-large (BAL) problem data."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from vslamtools.rotation import (
    angle_axis_rotate_point,
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
)
from vslamtools.sampling import rand_normal


def median(data) -> float:
    """Return the element at position ``n // 2`` of the sorted data."""
    arr = np.asarray(data, dtype=float).ravel()
    if arr.size == 0:
        raise ValueError("median of empty data")
    mid = arr.size // 2
    return float(np.partition(arr, mid)[mid])


def perturb_point3(sigma, point, rng: random.Random | None = None) -> np.ndarray:
    """Return ``point`` with Gaussian noise of standard deviation ``sigma`` added."""
    noise = np.array([rand_normal(rng) for _ in range(3)])
    return np.asarray(point, dtype=float)[:3] + noise * sigma


@dataclass
class BALProblem:
    """Cameras, points and observations of a BAL dataset.

    Cameras are stored as 9 values (angle-axis, translation, focal, k1, k2)
    or, with quaternions, 10 values (quaternion in place of angle-axis).
    """

    num_cameras: int
    num_points: int
    camera_index: np.ndarray
    point_index: np.ndarray
    observations: np.ndarray
    parameters: np.ndarray
    use_quaternions: bool = False
    point_block_size: int = field(default=3, init=False)

    def __post_init__(self) -> None:
        self.camera_index = np.asarray(self.camera_index, dtype=int)
        self.point_index = np.asarray(self.point_index, dtype=int)
        self.observations = np.asarray(self.observations, dtype=float).reshape(-1, 2)
        self.parameters = np.ascontiguousarray(self.parameters, dtype=float).ravel()
        expected = self.camera_block_size * self.num_cameras + 3 * self.num_points
        if self.parameters.size != expected:
            raise ValueError(
                f"expected {expected} parameters, got {self.parameters.size}"
            )

    @classmethod
    def load(cls, filename, use_quaternions: bool = False) -> "BALProblem":
        """Read a BAL problem from a text file."""
        tokens = iter(Path(filename).read_text().split())

        def take(kind):
            try:
                return kind(next(tokens))
            except (StopIteration, ValueError) as exc:
                raise ValueError(f"invalid BAL data file: {filename}") from exc

        num_cameras = take(int)
        num_points = take(int)
        num_observations = take(int)

        camera_index = []
        point_index = []
        observations = []
        for _ in range(num_observations):
            camera_index.append(take(int))
            point_index.append(take(int))
            observations.append((take(float), take(float)))

        num_parameters = 9 * num_cameras + 3 * num_points
        parameters = np.array([take(float) for _ in range(num_parameters)])

        if use_quaternions:
            cameras = parameters[: 9 * num_cameras].reshape(num_cameras, 9)
            converted = [
                np.concatenate((angle_axis_to_quaternion(cam[:3]), cam[3:]))
                for cam in cameras
            ]
            parameters = np.concatenate(
                converted + [parameters[9 * num_cameras:]]
            ) if num_cameras else parameters

        return cls(
            num_cameras=num_cameras,
            num_points=num_points,
            camera_index=np.array(camera_index, dtype=int),
            point_index=np.array(point_index, dtype=int),
            observations=np.array(observations, dtype=float).reshape(-1, 2),
            parameters=parameters,
            use_quaternions=use_quaternions,
        )

    @property
    def camera_block_size(self) -> int:
        return 10 if self.use_quaternions else 9

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    @property
    def num_parameters(self) -> int:
        return self.parameters.size

    @property
    def cameras(self) -> np.ndarray:
        """Camera blocks, one row per camera (a view into the parameters)."""
        end = self.camera_block_size * self.num_cameras
        return self.parameters[:end].reshape(self.num_cameras, self.camera_block_size)

    @property
    def points(self) -> np.ndarray:
        """Point blocks, one row per point (a view into the parameters)."""
        start = self.camera_block_size * self.num_cameras
        return self.parameters[start:].reshape(self.num_points, self.point_block_size)

    def camera_for_observation(self, i: int) -> np.ndarray:
        """The camera block seen by observation ``i`` (a writable view)."""
        return self.cameras[self.camera_index[i]]

    def point_for_observation(self, i: int) -> np.ndarray:
        """The point block seen by observation ``i`` (a writable view)."""
        return self.points[self.point_index[i]]

    def write_to_file(self, filename) -> None:
        """Write the problem in BAL text format, cameras in angle-axis form."""
        lines = [f"{self.num_cameras} {self.num_points} {self.num_observations}"]
        for cam_i, pt_i, (u, v) in zip(
            self.camera_index, self.point_index, self.observations
        ):
            lines.append(f"{cam_i} {pt_i} {u:g} {v:g}")
        for camera in self.cameras:
            if self.use_quaternions:
                block = np.concatenate(
                    (quaternion_to_angle_axis(camera[:4]), camera[4:10])
                )
            else:
                block = camera
            lines.extend(f"{value:.16g}" for value in block)
        for point in self.points:
            lines.extend(f"{value:.16g}" for value in point)
        Path(filename).write_text("\n".join(lines) + "\n")

    def write_to_ply_file(self, filename) -> None:
        """Write camera centres (green) and points (white) as an ASCII PLY file."""
        lines = [
            "ply",
            "format ascii 1.0",
            f"element vertex {self.num_cameras + self.num_points}",
            "property float x",
            "property float y",
            "property float z",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "end_header",
        ]
        for camera in self.cameras:
            _, center = self.camera_to_angle_axis_and_center(camera)
            lines.append(f"{center[0]:g} {center[1]:g} {center[2]:g} 0 255 0")
        for point in self.points:
            coords = "".join(f"{value:g} " for value in point)
            lines.append(f"{coords} 255 255 255")
        Path(filename).write_text("\n".join(lines) + "\n")

    def camera_to_angle_axis_and_center(self, camera):
        """Return the angle-axis rotation and optical centre of a camera block."""
        camera = np.asarray(camera, dtype=float)
        if self.use_quaternions:
            angle_axis = quaternion_to_angle_axis(camera[:4])
        else:
            angle_axis = camera[:3].copy()
        translation = camera[self.camera_block_size - 6: self.camera_block_size - 3]
        # c = -R^T t
        center = -angle_axis_rotate_point(-angle_axis, translation)
        return angle_axis, center

    def angle_axis_and_center_to_camera(self, angle_axis, center) -> np.ndarray:
        """Return the rotation and translation entries of a camera block."""
        angle_axis = np.asarray(angle_axis, dtype=float)
        if self.use_quaternions:
            rotation = angle_axis_to_quaternion(angle_axis)
        else:
            rotation = angle_axis[:3].copy()
        # t = -R c
        translation = -angle_axis_rotate_point(angle_axis, center)
        return np.concatenate((rotation, translation))

    def _set_pose(self, camera: np.ndarray, angle_axis, center) -> None:
        camera[: self.camera_block_size - 3] = self.angle_axis_and_center_to_camera(
            angle_axis, center
        )

    def normalize(self) -> None:
        """Centre the points on their median and scale their median deviation to 100."""
        points = self.points
        med = np.array([median(points[:, i]) for i in range(3)])
        mad = median(np.abs(points - med).sum(axis=1))
        scale = 100.0 / mad
        points[:] = scale * (points - med)
        for camera in self.cameras:
            angle_axis, center = self.camera_to_angle_axis_and_center(camera)
            self._set_pose(camera, angle_axis, scale * (center - med))

    def perturb(
        self,
        rotation_sigma: float,
        translation_sigma: float,
        point_sigma: float,
        rng: random.Random | None = None,
    ) -> None:
        """Add Gaussian noise to points, camera rotations and translations."""
        if point_sigma < 0.0 or rotation_sigma < 0.0 or translation_sigma < 0.0:
            raise ValueError("noise standard deviations must be non-negative")

        points = self.points
        if point_sigma > 0:
            for point in points:
                point[:] = perturb_point3(point_sigma, point, rng)

        cb = self.camera_block_size
        for camera in self.cameras:
            angle_axis, center = self.camera_to_angle_axis_and_center(camera)
            if rotation_sigma > 0.0:
                angle_axis = perturb_point3(rotation_sigma, angle_axis, rng)
            self._set_pose(camera, angle_axis, center)
            if translation_sigma > 0.0:
                camera[cb - 6: cb - 3] = perturb_point3(
                    translation_sigma, camera[cb - 6: cb - 3], rng
                )
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from trimesh import transformations

MESH = "mesh"
GAUSSIAN_SPLATS = "gaussian-splats"


def rotation_x(angle: float) -> np.ndarray:
    return transformations.rotation_matrix(angle, [1.0, 0.0, 0.0])[:3, :3]


def euler_xyz(x: float, y: float, z: float) -> np.ndarray:
    """Rotation matrix for intrinsic X, then Y, then Z rotations."""
    return transformations.euler_matrix(x, y, z, axes="rxyz")[:3, :3]


@dataclass
class Bounds:
    minimum: np.ndarray
    maximum: np.ndarray

    @classmethod
    def from_points(cls, points: np.ndarray) -> Optional["Bounds"]:
        if points is None or len(points) == 0:
            return None
        finite = points[np.all(np.isfinite(points), axis=1)]
        if len(finite) == 0:
            return None
        return cls(minimum=finite.min(axis=0), maximum=finite.max(axis=0))

    @classmethod
    def cube(cls, side: float, center=(0.0, 0.0, 0.0)) -> "Bounds":
        half = side / 2.0
        c = np.asarray(center, dtype=np.float64)
        return cls(minimum=c - half, maximum=c + half)

    @property
    def size(self) -> np.ndarray:
        return self.maximum - self.minimum

    @property
    def center(self) -> np.ndarray:
        return (self.minimum + self.maximum) / 2.0

    @property
    def max_dimension(self) -> float:
        return float(np.max(self.size))

    @property
    def diagonal(self) -> float:
        return float(np.linalg.norm(self.size))

    def is_valid(self) -> bool:
        return bool(np.all(np.isfinite(self.minimum)) and np.all(np.isfinite(self.maximum)) and np.all(self.size >= 0))


@dataclass
class SceneObject:
    """
    A loaded model in the viewer scene: local points (mesh vertices or splat
    centres) plus a rotation / uniform scale / translation transform.
    """

    kind: str
    points: np.ndarray
    faces: Optional[np.ndarray] = None
    colors: Optional[np.ndarray] = None
    source_name: str = ""
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    scale: float = 1.0
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    wireframe: bool = False

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)

    @property
    def point_count(self) -> int:
        return int(self.points.shape[0])

    @property
    def is_splat(self) -> bool:
        return self.kind == GAUSSIAN_SPLATS

    def world_points(self) -> np.ndarray:
        return (self.points @ self.rotation.T) * self.scale + self.position

    def bounds(self) -> Optional[Bounds]:
        return Bounds.from_points(self.world_points())

    def set_rotation(self, x: float = 0.0, y: float = 0.0, z: float = 0.0) -> None:
        self.rotation = euler_xyz(x, y, z)

    def rotate_x(self, angle: float) -> None:
        self.rotation = self.rotation @ rotation_x(angle)

    def multiply_scale(self, factor: float) -> None:
        self.scale *= float(factor)

    def translate(self, offset) -> None:
        self.position = self.position + np.asarray(offset, dtype=np.float64)

    def reset_transform(self) -> None:
        self.rotation = np.eye(3)
        self.scale = 1.0
        self.position = np.zeros(3)


@dataclass
class CameraPose:
    position: np.ndarray
    target: np.ndarray

    def copy(self) -> "CameraPose":
        return CameraPose(position=np.array(self.position, dtype=np.float64), target=np.array(self.target, dtype=np.float64))


@dataclass
class Camera:
    fov: float = 50.0
    aspect: float = 16.0 / 9.0
    near: float = 0.1
    far: float = 5000.0
    position: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0, 5.0]))
    target: np.ndarray = field(default_factory=lambda: np.zeros(3))
    min_distance: float = 0.1
    max_distance: float = 5000.0
    auto_rotate: bool = True
    auto_rotate_speed: float = 0.3

    @property
    def fov_radians(self) -> float:
        return math.radians(self.fov)

    def pose(self) -> CameraPose:
        return CameraPose(position=np.array(self.position, dtype=np.float64), target=np.array(self.target, dtype=np.float64))

    def apply(self, pose: CameraPose) -> None:
        self.position = np.array(pose.position, dtype=np.float64)
        self.target = np.array(pose.target, dtype=np.float64)

    def view_matrix(self) -> np.ndarray:
        """World-to-camera matrix looking from ``position`` at ``target`` with +Y up."""
        forward = self.target - self.position
        norm = np.linalg.norm(forward)
        forward = forward / norm if norm > 0 else np.array([0.0, 0.0, -1.0])
        up = np.array([0.0, 1.0, 0.0])
        if abs(float(np.dot(forward, up))) > 0.999:
            up = np.array([0.0, 0.0, -1.0])
        right = np.cross(forward, up)
        right /= np.linalg.norm(right)
        true_up = np.cross(right, forward)
        view = np.eye(4)
        view[0, :3] = right
        view[1, :3] = true_up
        view[2, :3] = -forward
        view[:3, 3] = -view[:3, :3] @ self.position
        return view

    def project(self, points: np.ndarray) -> tuple:
        """Project world points to normalised device coordinates; returns (xy, depth, visible)."""
        homogeneous = np.hstack([points, np.ones((len(points), 1))])
        cam = homogeneous @ self.view_matrix().T
        depth = -cam[:, 2]
        focal = 1.0 / math.tan(self.fov_radians / 2.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            x = cam[:, 0] * focal / (self.aspect * depth)
            y = cam[:, 1] * focal / depth
        visible = (depth > self.near) & (depth < self.far) & np.isfinite(x) & np.isfinite(y)
        return np.stack([x, y], axis=1), depth, visible

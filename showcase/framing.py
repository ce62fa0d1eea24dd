"""
Orientation, scale and camera auto-framing for loaded models.

The pipeline mirrors what the viewer does after a model arrives:

1. ``apply_orientation`` picks a per-format default rotation.
2. ``detect_inversion`` votes on whether the model is upside down.
3. ``normalize_scale`` / ``normalize_splat_scale`` bring it to a viewable size.
4. ``frame_camera`` recentres it and computes the camera pose, clipping planes
   and orbit limits.
5. ``CameraAnimation`` eases the camera from its current pose to the framed one.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

from .scene import Bounds, Camera, CameraPose, SceneObject

logger = logging.getLogger(__name__)

HALF_TURN = math.pi
QUARTER_TURN = math.pi / 2.0


@dataclass(frozen=True)
class MeshFramingConfig:
    default_box_size: float = 20.0
    min_size: float = 1.0
    max_size: float = 1000.0
    target_size: float = 10.0
    partial_threshold: float = 0.1
    imbalance_ratio: float = 10.0
    partial_safety: float = 3.0
    imbalanced_safety: float = 2.0
    standard_safety: float = 1.5
    min_distance: float = 2.0
    max_distance: float = 1000.0
    center_tolerance: float = 0.01
    direction: Tuple[float, float, float] = (0.5, 0.5, 0.5)


@dataclass(frozen=True)
class StandardFormatConfig:
    """Normalisation applied once when a standard-format mesh is loaded."""

    min_size: float = 10.0
    max_size: float = 30.0
    target_size: float = 20.0
    in_range_factor: float = 1.5
    aerial_ratio: float = 0.2


@dataclass(frozen=True)
class SplatFramingConfig:
    default_box_size: float = 20.0
    ideal_size: float = 10.0
    shrink_above: float = 20.0
    grow_below: float = 5.0
    grow_floor: float = 0.1
    min_factor: float = 0.01
    max_grow_factor: float = 10.0
    safety: float = 2.0
    default_distance: float = 20.0
    min_distance: float = 5.0
    max_distance: float = 100.0
    center_tolerance: float = 0.1
    direction: Tuple[float, float, float] = (1.0, 0.8, 1.0)


@dataclass(frozen=True)
class InversionConfig:
    centroid_ratio: float = -0.25
    sample_divisor: int = 100
    max_samples: int = 500
    min_samples: int = 10
    band: float = 0.2
    skew_ratio: float = 1.5
    splat_min_extent: float = 1.0
    filename_hints: Tuple[str, ...] = ("upside", "inverted", "flipped", "倒")
    min_votes: int = 1


@dataclass(frozen=True)
class FramingConfig:
    mesh: MeshFramingConfig = field(default_factory=MeshFramingConfig)
    standard: StandardFormatConfig = field(default_factory=StandardFormatConfig)
    splat: SplatFramingConfig = field(default_factory=SplatFramingConfig)
    inversion: InversionConfig = field(default_factory=InversionConfig)
    animation_duration: float = 1.0
    animation_fps: int = 60
    near_divisor: float = 100.0
    min_near: float = 0.01
    far_multiplier: float = 100.0
    min_far: float = 5000.0
    orbit_min_factor: float = 0.1
    orbit_max_factor: float = 5.0


@dataclass
class InversionVerdict:
    votes: Dict[str, bool]
    min_votes: int = 1

    @property
    def vote_count(self) -> int:
        return sum(1 for fired in self.votes.values() if fired)

    @property
    def inverted(self) -> bool:
        return self.vote_count >= self.min_votes


@dataclass
class FramingResult:
    pose: CameraPose
    distance: float
    near: float
    far: float
    min_distance: float
    max_distance: float
    bounds: Bounds
    partial: bool = False
    imbalanced: bool = False


def compute_bounds(obj: SceneObject, default_box_size: float = 20.0) -> Bounds:
    bounds = obj.bounds()
    if bounds is None or not bounds.is_valid():
        logger.debug("Using default %s unit box for %s", default_box_size, obj.source_name or obj.kind)
        return Bounds.cube(default_box_size)
    return bounds


def orientation_for(fmt: str, size: np.ndarray, config: StandardFormatConfig = StandardFormatConfig()) -> Tuple[float, float, float]:
    """Default Euler rotation (x, y, z) for a standard-format model."""
    fmt = (fmt or "").lower()
    if fmt in ("glb", "gltf", "fbx"):
        rotation = (0.0, HALF_TURN, 0.0)
    else:
        rotation = (-QUARTER_TURN, 0.0, 0.0)
    # Flat, wide models are usually aerial captures; lay them down regardless of format.
    if size[1] < size[0] * config.aerial_ratio and size[1] < size[2] * config.aerial_ratio:
        rotation = (-QUARTER_TURN, 0.0, 0.0)
    return rotation


def apply_orientation(obj: SceneObject, fmt: str, config: StandardFormatConfig = StandardFormatConfig()) -> Tuple[float, float, float]:
    size = compute_bounds(obj).size
    rotation = orientation_for(fmt, size, config)
    obj.set_rotation(*rotation)
    return rotation


def _sample_skew(points: np.ndarray, bounds: Bounds, config: InversionConfig) -> bool:
    if len(points) == 0:
        return False
    stride = max(1, len(points) // config.sample_divisor)
    samples = points[::stride][: config.max_samples + 1, 1]
    if len(samples) <= config.min_samples:
        return False
    center_y = bounds.center[1]
    band = bounds.size[1] * config.band
    bottom = int(np.count_nonzero(samples < center_y - band))
    top = int(np.count_nonzero(samples > center_y + band))
    return bottom > top * config.skew_ratio


def detect_inversion(obj: SceneObject, config: InversionConfig = InversionConfig(), filename: str = "") -> InversionVerdict:
    """Collect independent upside-down signals for ``obj``."""
    points = obj.world_points()
    finite = points[np.all(np.isfinite(points), axis=1)] if len(points) else points
    bounds = Bounds.from_points(finite)
    votes: Dict[str, bool] = {}

    if bounds is not None:
        if obj.is_splat:
            y_min, y_max = float(bounds.minimum[1]), float(bounds.maximum[1])
            votes["extent_skew"] = y_min < -y_max and abs(y_min) > config.splat_min_extent
        else:
            size_y = float(bounds.size[1])
            votes["centroid"] = size_y > 0 and float(bounds.center[1]) / size_y < config.centroid_ratio
            votes["vertex_skew"] = _sample_skew(finite, bounds, config)

    name = (filename or obj.source_name or "").lower()
    votes["filename"] = any(hint in name for hint in config.filename_hints)

    verdict = InversionVerdict(votes=votes, min_votes=config.min_votes)
    if verdict.inverted:
        logger.info("Model %s looks inverted (%s)", obj.source_name or obj.kind, verdict.votes)
    return verdict


def correct_inversion(obj: SceneObject, verdict: InversionVerdict) -> bool:
    if not verdict.inverted:
        return False
    obj.rotate_x(HALF_TURN)
    return True


def normalize_scale(
    obj: SceneObject,
    *,
    min_size: float,
    max_size: float,
    target_size: float,
    in_range_factor: float = 1.0,
) -> float:
    """Scale ``obj`` toward ``target_size`` when it falls outside [min_size, max_size]."""
    max_dim = compute_bounds(obj).max_dimension
    if max_dim <= 0 or not math.isfinite(max_dim):
        return 1.0
    factor = target_size / max_dim if (max_dim < min_size or max_dim > max_size) else in_range_factor
    if factor != 1.0:
        obj.multiply_scale(factor)
    return factor


def normalize_splat_scale(obj: SceneObject, config: SplatFramingConfig = SplatFramingConfig()) -> float:
    max_dim = compute_bounds(obj, config.default_box_size).max_dimension
    if max_dim <= 0 or not math.isfinite(max_dim):
        return 1.0
    factor = 1.0
    if max_dim > config.shrink_above:
        factor = min(max(config.ideal_size / max_dim, config.min_factor), 1.0)
    elif config.grow_floor < max_dim < config.grow_below:
        factor = min(config.ideal_size / max_dim, config.max_grow_factor)
    if factor != 1.0:
        obj.multiply_scale(factor)
    return factor


def recenter(obj: SceneObject, tolerance: float = 0.01, default_box_size: float = 20.0) -> bool:
    center = compute_bounds(obj, default_box_size).center
    if np.all(np.abs(center) <= tolerance):
        return False
    obj.translate(-center)
    return True


def _ratio(a: float, b: float) -> float:
    if b == 0:
        return math.inf if a > 0 else 0.0
    return a / b


def _is_imbalanced(size: np.ndarray, limit: float) -> bool:
    x, y, z = (float(v) for v in size)
    return any(r > limit for r in (_ratio(x, y), _ratio(y, x), _ratio(z, y), _ratio(y, z)))


def _view_direction(size: np.ndarray, imbalanced: bool, base: Tuple[float, float, float]) -> np.ndarray:
    if not imbalanced:
        return np.asarray(base, dtype=np.float64)
    xz = _ratio(float(size[0]), float(size[2]))
    if xz > 5:
        angle_x, angle_z = 0.3, 0.7
    elif xz < 0.2:
        angle_x, angle_z = 0.7, 0.3
    else:
        angle_x, angle_z = 0.5, 0.5
    return np.array([angle_x, 0.5, angle_z])


def _fit_distance(diagonal: float, fov: float, safety: float) -> float:
    return abs(diagonal / (2.0 * math.tan(fov / 2.0))) * safety


def _apply_limits(camera: Camera, distance: float, config: FramingConfig) -> Tuple[float, float, float, float]:
    camera.near = max(distance / config.near_divisor, config.min_near)
    camera.far = max(distance * config.far_multiplier, config.min_far)
    camera.min_distance = distance * config.orbit_min_factor
    camera.max_distance = distance * config.orbit_max_factor
    return camera.near, camera.far, camera.min_distance, camera.max_distance


def frame_mesh(obj: SceneObject, camera: Camera, config: FramingConfig = FramingConfig()) -> FramingResult:
    cfg = config.mesh
    recenter(obj, cfg.center_tolerance, cfg.default_box_size)
    bounds = compute_bounds(obj, cfg.default_box_size)
    size = bounds.size
    partial = bool(np.any(size < cfg.partial_threshold))
    imbalanced = _is_imbalanced(size, cfg.imbalance_ratio)

    max_dim = bounds.max_dimension
    if max_dim < cfg.min_size or max_dim > cfg.max_size:
        normalize_scale(obj, min_size=cfg.min_size, max_size=cfg.max_size, target_size=cfg.target_size)
        bounds = compute_bounds(obj, cfg.default_box_size)

    safety = cfg.partial_safety if partial else cfg.imbalanced_safety if imbalanced else cfg.standard_safety
    distance = _fit_distance(bounds.diagonal, camera.fov_radians, safety)
    distance = min(max(distance, cfg.min_distance), cfg.max_distance)

    direction = _view_direction(bounds.size, imbalanced, cfg.direction)
    pose = CameraPose(position=bounds.center + distance * direction, target=bounds.center.copy())
    near, far, orbit_min, orbit_max = _apply_limits(camera, distance, config)
    logger.debug("Framed mesh at distance %.3f (partial=%s, imbalanced=%s)", distance, partial, imbalanced)
    return FramingResult(pose, distance, near, far, orbit_min, orbit_max, bounds, partial, imbalanced)


def frame_splat(obj: SceneObject, camera: Camera, config: FramingConfig = FramingConfig()) -> FramingResult:
    cfg = config.splat
    recenter(obj, cfg.center_tolerance, cfg.default_box_size)
    bounds = compute_bounds(obj, cfg.default_box_size)
    distance = _fit_distance(bounds.diagonal, camera.fov_radians, cfg.safety)
    if not math.isfinite(distance) or distance <= 0:
        distance = cfg.default_distance
    distance = min(max(distance, cfg.min_distance), cfg.max_distance)

    direction = np.asarray(cfg.direction, dtype=np.float64)
    direction = direction / np.linalg.norm(direction)
    pose = CameraPose(position=bounds.center + distance * direction, target=bounds.center.copy())
    near, far, orbit_min, orbit_max = _apply_limits(camera, distance, config)
    return FramingResult(pose, distance, near, far, orbit_min, orbit_max, bounds)


def frame_camera(obj: SceneObject, camera: Camera, config: FramingConfig = FramingConfig()) -> FramingResult:
    if obj.is_splat:
        return frame_splat(obj, camera, config)
    return frame_mesh(obj, camera, config)


def prepare_model(
    obj: SceneObject,
    fmt: str,
    config: FramingConfig = FramingConfig(),
    filename: Optional[str] = None,
) -> InversionVerdict:
    """One-time orientation and scale normalisation for a freshly loaded model."""
    if obj.is_splat:
        factor = normalize_splat_scale(obj, config.splat)
    else:
        apply_orientation(obj, fmt, config.standard)
    verdict = detect_inversion(obj, config.inversion, filename or obj.source_name)
    correct_inversion(obj, verdict)
    if not obj.is_splat:
        standard = config.standard
        factor = normalize_scale(
            obj,
            min_size=standard.min_size,
            max_size=standard.max_size,
            target_size=standard.target_size,
            in_range_factor=standard.in_range_factor,
        )
    logger.debug("Prepared %s model %s (scale x%.4f)", fmt, obj.source_name, factor)
    return verdict


def ease_out_cubic(t: float) -> float:
    t = min(max(t, 0.0), 1.0)
    return 1.0 - (1.0 - t) ** 3


class CameraAnimation:
    """Eases a camera from ``start`` to ``end`` over ``duration`` seconds."""

    def __init__(self, start: CameraPose, end: CameraPose, duration: float = 1.0, fps: int = 60) -> None:
        self.start = start.copy()
        self.end = end.copy()
        self.duration = duration
        self.fps = fps

    def pose_at(self, elapsed: float) -> CameraPose:
        progress = 1.0 if self.duration <= 0 else elapsed / self.duration
        eased = ease_out_cubic(progress)
        return CameraPose(
            position=self.start.position + (self.end.position - self.start.position) * eased,
            target=self.start.target + (self.end.target - self.start.target) * eased,
        )

    def frames(self) -> Iterator[CameraPose]:
        count = max(1, int(math.ceil(self.duration * self.fps)))
        for frame in range(1, count + 1):
            yield self.pose_at(self.duration * frame / count)

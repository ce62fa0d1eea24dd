from __future__ import annotations

import asyncio
import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import numpy as np
import trimesh
from matplotlib import colors as mcolors

from .formats import normalize_format
from .scene import GAUSSIAN_SPLATS, MESH, SceneObject, euler_xyz
from .splat_codecs import SplatDecodeError, decode_container

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

DEFAULT_SOG_COLOR = "#cccccc"


class LoadError(RuntimeError):
    pass


class UnsupportedFormatError(LoadError):
    pass


class LoadCancelledError(LoadError):
    pass


class CancellationToken:
    """Cooperative cancellation flag shared between a load and its owner."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise LoadCancelledError(self.reason or "cancelled")


@dataclass
class ModelSource:
    data: bytes
    filename: str
    format: str
    model_id: Optional[int] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], model_id: Optional[int] = None, fmt: Optional[str] = None) -> "ModelSource":
        path = Path(path)
        return cls(
            data=path.read_bytes(),
            filename=path.name,
            format=normalize_format(fmt or path.suffix),
            model_id=model_id,
        )


@dataclass
class LoadedModel:
    type: str
    object: SceneObject
    modelId: Optional[int]
    format: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "modelId": self.modelId,
            "format": self.format,
            "pointCount": self.object.point_count,
        }


@dataclass
class LoadResult:
    ok: bool
    value: Optional[LoadedModel] = None
    error: Optional[LoadError] = None

    @classmethod
    def success(cls, value: LoadedModel) -> "LoadResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LoadError) -> "LoadResult":
        return cls(ok=False, error=error)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, LoadCancelledError)


class ModelLoader(Protocol):
    formats: tuple

    async def load(self, source: ModelSource, progress: Optional[ProgressCallback], token: CancellationToken) -> LoadedModel:
        ...


def _report(progress: Optional[ProgressCallback], value: float) -> None:
    if progress is not None:
        progress(float(min(max(value, 0.0), 100.0)))


def _rgba_from_visual(geometry, count: int) -> Optional[np.ndarray]:
    vertex_colors = getattr(geometry.visual, "vertex_colors", None) if hasattr(geometry, "visual") else None
    if vertex_colors is None:
        vertex_colors = getattr(geometry, "colors", None)
    if vertex_colors is None:
        return None
    vertex_colors = np.asarray(vertex_colors)
    if vertex_colors.ndim != 2 or len(vertex_colors) != count:
        return None
    if vertex_colors.shape[1] == 3:
        vertex_colors = np.hstack([vertex_colors, np.full((count, 1), 255)])
    return vertex_colors.astype(np.uint8)


def _flatten_scene(scene: trimesh.Scene):
    """Concatenate every geometry instance of ``scene`` into world-space arrays."""
    points: List[np.ndarray] = []
    faces: List[np.ndarray] = []
    colors: List[Optional[np.ndarray]] = []
    offset = 0
    for node_name in scene.graph.nodes_geometry:
        transform, geometry_name = scene.graph[node_name]
        geometry = scene.geometry.get(geometry_name)
        vertices = getattr(geometry, "vertices", None)
        if vertices is None or len(vertices) == 0:
            continue
        vertices = trimesh.transform_points(np.asarray(vertices, dtype=np.float64), transform)
        points.append(vertices)
        geometry_faces = getattr(geometry, "faces", None)
        if geometry_faces is not None and len(geometry_faces):
            faces.append(np.asarray(geometry_faces, dtype=np.int64) + offset)
        colors.append(_rgba_from_visual(geometry, len(vertices)))
        offset += len(vertices)
    if not points:
        return None, None, None
    merged_faces = np.vstack(faces) if faces else None
    merged_colors = np.vstack(colors) if all(c is not None for c in colors) else None
    return np.vstack(points), merged_faces, merged_colors


class MeshLoader:
    """glb / gltf / obj / stl / fbx through trimesh."""

    formats = ("glb", "gltf", "obj", "stl", "fbx")

    async def load(self, source: ModelSource, progress: Optional[ProgressCallback], token: CancellationToken) -> LoadedModel:
        token.raise_if_cancelled()
        try:
            scene = await asyncio.to_thread(
                trimesh.load,
                io.BytesIO(source.data),
                file_type=source.format,
                force="scene",
            )
        except Exception as exc:
            raise LoadError(f"Failed to parse {source.format.upper()} model '{source.filename}': {exc}") from exc
        token.raise_if_cancelled()
        points, faces, colors = _flatten_scene(scene)
        if points is None:
            raise LoadError(f"Model '{source.filename}' contains no geometry")
        _report(progress, 100)
        obj = SceneObject(kind=MESH, points=points, faces=faces, colors=colors, source_name=source.filename)
        return LoadedModel(type=MESH, object=obj, modelId=source.model_id, format=source.format)


def _sog_color(value: Any) -> np.ndarray:
    if isinstance(value, int) and not isinstance(value, bool):
        value = f"#{value & 0xFFFFFF:06x}"
    try:
        rgba = mcolors.to_rgba(value or DEFAULT_SOG_COLOR)
    except ValueError:
        rgba = mcolors.to_rgba(DEFAULT_SOG_COLOR)
    return (np.asarray(rgba) * 255).round().astype(np.uint8)


def _sog_object_points(entry: Dict[str, Any]) -> Optional[np.ndarray]:
    geometry = entry.get("geometry") or {}
    vertices = geometry.get("vertices")
    if not vertices:
        return None
    points = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    transform = entry.get("transform") or {}
    if transform.get("scale") is not None:
        points = points * np.asarray(transform["scale"], dtype=np.float64)
    if transform.get("rotation") is not None:
        points = points @ euler_xyz(*transform["rotation"][:3]).T
    if transform.get("position") is not None:
        points = points + np.asarray(transform["position"], dtype=np.float64)
    return points


class SogLoader:
    """JSON scene description with inline mesh geometry."""

    formats = ("sog",)

    async def load(self, source: ModelSource, progress: Optional[ProgressCallback], token: CancellationToken) -> LoadedModel:
        token.raise_if_cancelled()
        try:
            payload = json.loads(source.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LoadError(f"invalid SOG file: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("objects"), list):
            raise LoadError("invalid SOG file")

        points: List[np.ndarray] = []
        faces: List[np.ndarray] = []
        colors: List[np.ndarray] = []
        offset = 0
        for entry in payload["objects"]:
            if not isinstance(entry, dict) or entry.get("type") != "mesh":
                continue
            try:
                object_points = _sog_object_points(entry)
            except (TypeError, ValueError) as exc:
                raise LoadError(f"invalid SOG geometry: {exc}") from exc
            if object_points is None:
                continue
            indices = (entry.get("geometry") or {}).get("indices")
            if indices:
                faces.append(np.asarray(indices, dtype=np.int64).reshape(-1, 3) + offset)
            color = _sog_color((entry.get("material") or {}).get("color"))
            colors.append(np.tile(color, (len(object_points), 1)))
            points.append(object_points)
            offset += len(object_points)

        _report(progress, 100)
        obj = SceneObject(
            kind=MESH,
            points=np.vstack(points) if points else np.zeros((0, 3)),
            faces=np.vstack(faces) if faces else None,
            colors=np.vstack(colors) if colors else None,
            source_name=source.filename,
        )
        return LoadedModel(type=MESH, object=obj, modelId=source.model_id, format=source.format)


class PlySplatLoader:
    """Gaussian-splat PLY; only vertex positions (splat centres) are kept."""

    formats = ("ply",)

    async def load(self, source: ModelSource, progress: Optional[ProgressCallback], token: CancellationToken) -> LoadedModel:
        token.raise_if_cancelled()
        try:
            geometry = await asyncio.to_thread(trimesh.load, io.BytesIO(source.data), file_type="ply")
        except Exception as exc:
            raise LoadError(f"Failed to parse PLY '{source.filename}': {exc}") from exc
        token.raise_if_cancelled()
        if isinstance(geometry, trimesh.Scene):
            points, _, colors = _flatten_scene(geometry)
        else:
            vertices = getattr(geometry, "vertices", None)
            points = np.asarray(vertices, dtype=np.float64) if vertices is not None and len(vertices) else None
            colors = _rgba_from_visual(geometry, len(points)) if points is not None else None
        if points is None:
            raise LoadError(f"PLY '{source.filename}' contains no vertices")
        _report(progress, 100)
        obj = SceneObject(kind=GAUSSIAN_SPLATS, points=points, colors=colors, source_name=source.filename)
        return LoadedModel(type=GAUSSIAN_SPLATS, object=obj, modelId=source.model_id, format=source.format)


class SplatContainerLoader:
    formats = ("splat", "ksplat", "spz")

    async def load(self, source: ModelSource, progress: Optional[ProgressCallback], token: CancellationToken) -> LoadedModel:
        token.raise_if_cancelled()
        try:
            splats = await asyncio.to_thread(decode_container, source.data, source.format)
        except SplatDecodeError as exc:
            raise LoadError(f"Failed to decode {source.format.upper()} '{source.filename}': {exc}") from exc
        token.raise_if_cancelled()
        _report(progress, 100)
        obj = SceneObject(kind=GAUSSIAN_SPLATS, points=splats.centers, colors=splats.colors, source_name=source.filename)
        return LoadedModel(type=GAUSSIAN_SPLATS, object=obj, modelId=source.model_id, format=source.format)


@dataclass
class LoaderRegistry:
    loaders: Dict[str, ModelLoader] = field(default_factory=dict)

    def register(self, loader: ModelLoader, formats: Optional[tuple] = None) -> None:
        for fmt in formats or loader.formats:
            self.loaders[normalize_format(fmt)] = loader

    def loader_for(self, fmt: str) -> ModelLoader:
        key = normalize_format(fmt)
        loader = self.loaders.get(key)
        if loader is None:
            raise UnsupportedFormatError(f"Unsupported model format: {fmt or 'unknown'}")
        return loader

    def supports(self, fmt: str) -> bool:
        return normalize_format(fmt) in self.loaders

    async def load(
        self,
        source: ModelSource,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> LoadResult:
        token = token or CancellationToken()
        try:
            loader = self.loader_for(source.format)
            model = await loader.load(source, progress, token)
            token.raise_if_cancelled()
        except LoadError as exc:
            if isinstance(exc, LoadCancelledError):
                logger.debug("Load of %s cancelled", source.filename)
            else:
                logger.warning("Failed to load %s: %s", source.filename, exc)
            return LoadResult.failure(exc)
        except Exception as exc:
            logger.exception("Loader for %s raised unexpectedly", source.filename)
            error = LoadError(f"Failed to load '{source.filename}': {exc}")
            error.__cause__ = exc
            return LoadResult.failure(error)
        return LoadResult.success(model)


def default_registry() -> LoaderRegistry:
    registry = LoaderRegistry()
    registry.register(MeshLoader())
    registry.register(SogLoader())
    registry.register(PlySplatLoader())
    registry.register(SplatContainerLoader())
    return registry

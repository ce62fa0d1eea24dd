from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

import matplotlib
import numpy as np

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.collections import LineCollection

from .scene import Camera, SceneObject

logger = logging.getLogger(__name__)

DEFAULT_POINT_COLOR = "#4a90d9"
BACKGROUND_COLOR = "#1a1a1a"
MAX_DRAWN_POINTS = 200_000


class Renderer(Protocol):
    def render(self, scene_object: SceneObject, camera: Camera) -> None:
        ...


class SnapshotRenderer:
    """
    Off-screen renderer that projects a scene object through the camera and
    writes the result as a PNG.

    Each ``render`` call overwrites ``output_path`` unless ``keep_frames`` is
    set, in which case frames are written as ``<stem>_0001.png`` and so on.
    """

    def __init__(
        self,
        output_path: Union[str, Path],
        width: int = 800,
        height: int = 450,
        dpi: int = 100,
        keep_frames: bool = False,
        background: str = BACKGROUND_COLOR,
    ) -> None:
        self.output_path = Path(output_path)
        self.width = width
        self.height = height
        self.dpi = dpi
        self.keep_frames = keep_frames
        self.background = background
        self.frame_count = 0
        self.last_path: Optional[Path] = None

    def _frame_path(self) -> Path:
        if not self.keep_frames:
            return self.output_path
        return self.output_path.with_name(f"{self.output_path.stem}_{self.frame_count:04d}{self.output_path.suffix}")

    def _point_colors(self, scene_object: SceneObject, mask: np.ndarray):
        colors = scene_object.colors
        if colors is None or len(colors) != scene_object.point_count:
            return DEFAULT_POINT_COLOR
        return np.asarray(colors, dtype=np.float64)[mask] / 255.0

    def render(self, scene_object: SceneObject, camera: Camera) -> Path:
        camera.aspect = self.width / float(self.height)
        points = scene_object.world_points()
        xy, depth, visible = camera.project(points) if len(points) else (np.zeros((0, 2)), np.zeros(0), np.zeros(0, bool))

        mask = visible.copy()
        if np.count_nonzero(mask) > MAX_DRAWN_POINTS:
            keep = np.flatnonzero(mask)[:: int(np.ceil(np.count_nonzero(mask) / MAX_DRAWN_POINTS))]
            mask = np.zeros_like(mask)
            mask[keep] = True

        fig = plt.figure(figsize=(self.width / self.dpi, self.height / self.dpi), dpi=self.dpi)
        try:
            ax = fig.add_axes([0, 0, 1, 1])
            ax.set_facecolor(self.background)
            fig.patch.set_facecolor(self.background)
            ax.set_xlim(-1, 1)
            ax.set_ylim(-1, 1)
            ax.axis("off")

            if scene_object.wireframe and scene_object.faces is not None and len(scene_object.faces):
                self._draw_edges(ax, scene_object, xy, visible)
            elif np.any(mask):
                # Far points first so nearer ones are drawn on top.
                order = np.argsort(-depth[mask])
                colors = self._point_colors(scene_object, mask)
                if not isinstance(colors, str):
                    colors = colors[order]
                size = 0.5 if scene_object.is_splat else 1.5
                ax.scatter(xy[mask][order, 0], xy[mask][order, 1], s=size, c=colors, linewidths=0)

            self.frame_count += 1
            path = self._frame_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(path, dpi=self.dpi, facecolor=self.background)
        finally:
            plt.close(fig)

        self.last_path = path
        logger.debug("Rendered %s visible points to %s", int(np.count_nonzero(mask)), path)
        return path

    def _draw_edges(self, ax, scene_object: SceneObject, xy: np.ndarray, visible: np.ndarray) -> None:
        faces = scene_object.faces
        face_visible = visible[faces].all(axis=1)
        segments = []
        for a, b, c in faces[face_visible]:
            segments.append(xy[[a, b, c, a]])
        if not segments:
            return
        ax.add_collection(LineCollection(segments, colors=DEFAULT_POINT_COLOR, linewidths=0.3))

    def clear(self, scene_object: SceneObject) -> None:
        logger.debug("Released %s from snapshot renderer", scene_object.source_name or scene_object.kind)

"""
Viewer-side state machine.

``ViewerController`` owns everything the browser viewer kept in module-level
variables: the catalog listing, the current index, the loaded-model cache, the
camera and the load in flight. Loads are cancellable; a newer request
supersedes an older one unless the controller is configured to drop it.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional

import httpx

from .formats import format_from_filename, is_splat_format, normalize_format
from .framing import CameraAnimation, FramingConfig, frame_camera, prepare_model
from .loaders import (
    CancellationToken,
    LoadCancelledError,
    LoadedModel,
    LoadError,
    LoaderRegistry,
    ModelSource,
    ProgressCallback,
    UnsupportedFormatError,
    default_registry,
)
from .scene import GAUSSIAN_SPLATS, Camera

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:3000"


class CatalogFetchError(LoadError):
    pass


class ViewState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    ERRORED = "errored"


class LoadPolicy(str, Enum):
    SUPERSEDE = "supersede"
    DROP = "drop"


@dataclass
class Overlay:
    message: str
    level: str = "error"
    dismiss_after: float = 8.0
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at >= self.dismiss_after


@dataclass(frozen=True)
class ControllerConfig:
    policy: LoadPolicy = LoadPolicy.SUPERSEDE
    cleanup_timeout: float = 3.0
    overlay_dismiss: float = 8.0
    animate: bool = True
    framing: FramingConfig = field(default_factory=FramingConfig)


class CatalogClient:
    """Async client for the catalog API and its static assets."""

    def __init__(self, api_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        base = api_url or os.getenv("SHOWCASE_API_URL", DEFAULT_API_URL)
        self.base_url = base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _get_json(self, path: str) -> List[Dict[str, Any]]:
        try:
            resp = await self._client.get(f"{self.base_url}{path}")
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise CatalogFetchError(f"Failed to fetch {path}: {exc}") from exc

    async def list_models(self) -> List[Dict[str, Any]]:
        return await self._get_json("/api/models")

    async def list_backgrounds(self) -> List[Dict[str, Any]]:
        return await self._get_json("/api/backgrounds")

    async def fetch_asset(
        self,
        uri: str,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> bytes:
        url = uri if uri.startswith(("http://", "https://")) else f"{self.base_url}/{uri.lstrip('/')}"
        chunks: List[bytes] = []
        received = 0
        try:
            async with self._client.stream("GET", url) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or 0)
                async for chunk in resp.aiter_bytes():
                    if token is not None:
                        token.raise_if_cancelled()
                    chunks.append(chunk)
                    received += len(chunk)
                    if progress is not None and total:
                        progress(min(100.0, received * 100.0 / total))
        except httpx.HTTPError as exc:
            raise CatalogFetchError(f"Failed to fetch {uri}: {exc}") from exc
        return b"".join(chunks)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _record_format(record: Dict[str, Any]) -> str:
    return normalize_format(record.get("format")) or format_from_filename(record.get("path"))


class ViewerController:
    def __init__(
        self,
        catalog: CatalogClient,
        registry: Optional[LoaderRegistry] = None,
        renderer=None,
        config: Optional[ControllerConfig] = None,
        camera: Optional[Camera] = None,
        on_error: Optional[Callable[[Overlay], None]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.catalog = catalog
        self.registry = registry or default_registry()
        self.renderer = renderer
        self.config = config or ControllerConfig()
        self.camera = camera or Camera()
        self.on_error = on_error
        self.on_progress = on_progress

        self.models: List[Dict[str, Any]] = []
        self.backgrounds: List[Dict[str, Any]] = []
        self.current_index = 0
        self.current: Optional[LoadedModel] = None
        self.cache: Dict[Any, LoadedModel] = {}
        self.state = ViewState.IDLE
        self.overlay: Optional[Overlay] = None
        self._token: Optional[CancellationToken] = None

    async def init(self) -> Optional[LoadedModel]:
        try:
            models = await self.catalog.list_models()
        except CatalogFetchError as exc:
            self._fail(exc)
            return None
        self.models = sorted(models, key=lambda record: record.get("order") or 0)
        try:
            self.backgrounds = await self.catalog.list_backgrounds()
        except CatalogFetchError as exc:
            logger.warning("Continuing without backgrounds: %s", exc)
            self.backgrounds = []
        if not self.models:
            logger.info("Catalog is empty")
            return None
        self.current_index = 0
        return await self.load_model(self.models[0])

    async def load_model(self, record: Dict[str, Any]) -> Optional[LoadedModel]:
        if self.state == ViewState.LOADING and self._token is not None:
            if self.config.policy == LoadPolicy.DROP:
                logger.debug("Dropping load of %s while another load is running", record.get("id"))
                return None
            self._token.cancel("superseded")

        token = CancellationToken()
        self._token = token
        self.state = ViewState.LOADING
        self.overlay = None

        try:
            await self._release_current()
            model = await self._obtain(record, token)
            token.raise_if_cancelled()
            framing = frame_camera(model.object, self.camera, self.config.framing)
            await self._move_camera(model, framing.pose, token)
        except LoadCancelledError:
            logger.debug("Load of model %s superseded", record.get("id"))
            return None
        except LoadError as exc:
            if token is self._token:
                self._fail(exc)
            return None

        if token is not self._token:
            return None
        self.current = model
        self.state = ViewState.LOADED
        logger.info("Showing model %s (%s)", record.get("id"), model.format)
        return model

    async def _obtain(self, record: Dict[str, Any], token: CancellationToken) -> LoadedModel:
        fmt = _record_format(record)
        model_id = record.get("id")
        cached = self.cache.get(model_id)
        if cached is not None and not is_splat_format(fmt):
            cached.object.reset_transform()
            prepare_model(cached.object, cached.format, self.config.framing)
            return cached

        if not self.registry.supports(fmt):
            raise UnsupportedFormatError(f"Unsupported model format: {fmt or 'unknown'}")
        path = record.get("path") or ""
        data = await self.catalog.fetch_asset(path, self._progress, token)
        source = ModelSource(data=data, filename=PurePosixPath(path).name, format=fmt, model_id=model_id)
        result = await self.registry.load(source, self._progress, token)
        if not result.ok:
            raise result.error
        model = result.value
        prepare_model(model.object, fmt, self.config.framing)
        if model.type != GAUSSIAN_SPLATS and model_id is not None:
            self.cache[model_id] = model
        return model

    def _progress(self, value: float) -> None:
        if self.on_progress is not None:
            self.on_progress(value)

    async def _move_camera(self, model: LoadedModel, pose, token: CancellationToken) -> None:
        if not self.config.animate:
            self.camera.apply(pose)
            self._render(model)
            return
        animation = CameraAnimation(
            self.camera.pose(),
            pose,
            duration=self.config.framing.animation_duration,
            fps=self.config.framing.animation_fps,
        )
        for frame in animation.frames():
            token.raise_if_cancelled()
            self.camera.apply(frame)
            self._render(model)
            await asyncio.sleep(0)

    def _render(self, model: LoadedModel) -> None:
        if self.renderer is not None:
            self.renderer.render(model.object, self.camera)

    async def _release_current(self) -> None:
        previous, self.current = self.current, None
        if previous is None:
            return
        try:
            await asyncio.wait_for(self._release(previous), timeout=self.config.cleanup_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Cleanup of model %s did not finish within %ss; continuing",
                previous.modelId,
                self.config.cleanup_timeout,
            )

    async def _release(self, model: LoadedModel) -> None:
        clear = getattr(self.renderer, "clear", None)
        if clear is None:
            return
        outcome = clear(model.object)
        if inspect.isawaitable(outcome):
            await outcome

    def _fail(self, exc: Exception) -> None:
        self.state = ViewState.ERRORED
        self.current = None
        self.overlay = Overlay(message=str(exc), dismiss_after=self.config.overlay_dismiss)
        logger.error("Model load failed: %s", exc)
        if self.on_error is not None:
            self.on_error(self.overlay)

    def active_overlay(self, now: Optional[float] = None) -> Optional[Overlay]:
        if self.overlay is not None and self.overlay.is_expired(now):
            self.overlay = None
        return self.overlay

    async def select(self, index: int) -> Optional[LoadedModel]:
        if not 0 <= index < len(self.models):
            raise IndexError(f"Model index {index} out of range")
        self.current_index = index
        return await self.load_model(self.models[index])

    async def next_model(self) -> Optional[LoadedModel]:
        if not self.models:
            return None
        return await self.select((self.current_index + 1) % len(self.models))

    async def previous_model(self) -> Optional[LoadedModel]:
        if not self.models:
            return None
        return await self.select((self.current_index - 1) % len(self.models))

    async def reset_camera(self) -> bool:
        if self.current is None:
            return False
        token = self._token or CancellationToken()
        framing = frame_camera(self.current.object, self.camera, self.config.framing)
        try:
            await self._move_camera(self.current, framing.pose, token)
        except LoadCancelledError:
            return False
        return True

    def toggle_auto_rotate(self) -> bool:
        self.camera.auto_rotate = not self.camera.auto_rotate
        return self.camera.auto_rotate

    def toggle_wireframe(self) -> bool:
        # Splat renderers have no wireframe mode.
        if self.current is None or self.current.object.is_splat:
            return False
        self.current.object.wireframe = not self.current.object.wireframe
        self._render(self.current)
        return self.current.object.wireframe

    def background_for(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        background_id = record.get("backgroundId")
        if background_id in (None, ""):
            return None
        for background in self.backgrounds:
            if str(background.get("id")) == str(background_id):
                return background
        return None

    @property
    def current_record(self) -> Optional[Dict[str, Any]]:
        if not self.models:
            return None
        return self.models[self.current_index]

    async def dispose(self) -> None:
        if self._token is not None:
            self._token.cancel("disposed")
        await self._release_current()
        self.cache.clear()
        self.state = ViewState.IDLE

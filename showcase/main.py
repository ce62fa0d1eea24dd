from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .asset_storage import AssetStaticFiles, AssetStorage
from .catalog import (
    _UNSET,
    BackgroundCatalog,
    CatalogValidationError,
    ModelCatalog,
    RecordNotFoundError,
    parse_record_id,
)
from .collection_store import CollectionStoreError, JsonCollectionStore
from .config import Settings, configure_logging
from .seed import seed_sample_catalog

logger = logging.getLogger(__name__)

router = APIRouter()


class ReorderModelBody(BaseModel):
    modelId: Optional[Union[int, str]] = None
    newPosition: Optional[Union[int, str]] = None


class ReorderBackgroundBody(BaseModel):
    backgroundId: Optional[Union[int, str]] = None
    newPosition: Optional[Union[int, str]] = None


class BatchDeleteBody(BaseModel):
    format: Optional[str] = None


def _models(request: Request) -> ModelCatalog:
    return request.app.state.model_catalog


def _backgrounds(request: Request) -> BackgroundCatalog:
    return request.app.state.background_catalog


def _path_id(raw_id: str) -> int:
    try:
        return parse_record_id(raw_id, "id")
    except CatalogValidationError:
        # Non-numeric ids can never match a stored record.
        raise HTTPException(status_code=404, detail="Record not found")


def _form_file(form, key: str) -> Optional[StarletteUploadFile]:
    value = form.get(key)
    if isinstance(value, StarletteUploadFile) and value.filename:
        return value
    return None


def _form_text(form, key: str) -> Optional[str]:
    value = form.get(key)
    return value if isinstance(value, str) else None


def _run(action: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except CatalogValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (CollectionStoreError, OSError):
        logger.exception("Failed to %s", action)
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/api/models")
async def list_models(request: Request) -> List[Dict[str, Any]]:
    return _run("read models data", _models(request).list)


@router.post("/api/models", status_code=201)
async def create_model(
    request: Request,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    order: Optional[str] = Form(None),
    modelFile: Optional[UploadFile] = File(None),
    thumbnailFile: Optional[UploadFile] = File(None),
):
    return _run(
        "add model",
        _models(request).create,
        name=name,
        description=description,
        order=order,
        model_file=modelFile,
        thumbnail_file=thumbnailFile,
    )


@router.post("/api/models/reorder")
async def reorder_models(request: Request, body: ReorderModelBody):
    return _run("reorder models", _models(request).reorder, body.modelId, body.newPosition)


@router.post("/api/models/batch-delete")
async def batch_delete_models(request: Request, body: BatchDeleteBody):
    return _run("batch delete models", _models(request).batch_delete, body.format)


@router.put("/api/models/{model_id}")
async def update_model(request: Request, model_id: str):
    record_id = _path_id(model_id)
    # The raw form keeps an explicitly empty description distinct from an absent one.
    form = await request.form()
    background_id = form.get("backgroundId")
    return _run(
        "update model",
        _models(request).update,
        record_id,
        name=_form_text(form, "name"),
        description=_form_text(form, "description"),
        order=_form_text(form, "order"),
        thumbnail_file=_form_file(form, "thumbnailFile"),
        background_id=background_id if isinstance(background_id, str) else _UNSET,
    )


@router.delete("/api/models/{model_id}")
async def delete_model(request: Request, model_id: str):
    return _run("delete model", _models(request).delete, _path_id(model_id))


@router.get("/api/backgrounds")
async def list_backgrounds(request: Request) -> List[Dict[str, Any]]:
    return _run("read backgrounds data", _backgrounds(request).list)


@router.post("/api/backgrounds", status_code=201)
async def create_background(
    request: Request,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    order: Optional[str] = Form(None),
    backgroundFile: Optional[UploadFile] = File(None),
):
    return _run(
        "add background",
        _backgrounds(request).create,
        name=name,
        description=description,
        order=order,
        background_file=backgroundFile,
    )


@router.post("/api/backgrounds/reorder")
async def reorder_backgrounds(request: Request, body: ReorderBackgroundBody):
    return _run("reorder backgrounds", _backgrounds(request).reorder, body.backgroundId, body.newPosition)


@router.put("/api/backgrounds/{background_id}")
async def update_background(request: Request, background_id: str):
    record_id = _path_id(background_id)
    form = await request.form()
    return _run(
        "update background",
        _backgrounds(request).update,
        record_id,
        name=_form_text(form, "name"),
        description=_form_text(form, "description"),
        order=_form_text(form, "order"),
        background_file=_form_file(form, "backgroundFile"),
    )


@router.delete("/api/backgrounds/{background_id}")
async def delete_background(request: Request, background_id: str):
    return _run("delete background", _backgrounds(request).delete, _path_id(background_id))


@router.get("/public/index.html", include_in_schema=False)
async def legacy_index_redirect():
    return RedirectResponse(url="/index.html")


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"message": f"{location}: {message}" if location else message},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    assets = AssetStorage(public_dir=settings.public_dir)
    assets.ensure_dirs()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    models_store = JsonCollectionStore(settings.models_file)
    backgrounds_store = JsonCollectionStore(settings.backgrounds_file)
    if settings.seed_sample_data:
        seed_sample_catalog(models_store, backgrounds_store, assets)
    elif not backgrounds_store.exists():
        backgrounds_store.replace([])

    app = FastAPI(title="Model Showcase", version="0.1.0")
    app.state.settings = settings
    app.state.model_catalog = ModelCatalog(models_store, assets)
    app.state.background_catalog = BackgroundCatalog(backgrounds_store, assets)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)

    app.mount("/models", AssetStaticFiles(directory=assets.models_dir), name="models")
    app.mount("/images", AssetStaticFiles(directory=assets.images_dir), name="images")
    if settings.admin_dir.exists():
        app.mount("/admin", StaticFiles(directory=settings.admin_dir, html=True), name="admin")
    if settings.public_dir.exists():
        app.mount("/", AssetStaticFiles(directory=settings.public_dir, html=True), name="public")

    logger.info("Serving catalog from %s", settings.data_dir)
    return app


def run(settings: Optional[Settings] = None) -> None:
    import uvicorn

    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("showcase.main:create_app", factory=True, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()

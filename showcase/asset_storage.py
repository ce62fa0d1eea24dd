from __future__ import annotations

import logging
import os
import random
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

from fastapi.staticfiles import StaticFiles

logger = logging.getLogger(__name__)

ASSET_MEDIA_TYPES = {
    "gltf": "model/gltf+json",
    "glb": "model/gltf-binary",
    "obj": "model/obj",
    "stl": "model/stl",
    "ply": "model/ply",
    "fbx": "model/fbx",
    "sog": "application/json",
    "splat": "application/octet-stream",
    "ksplat": "application/octet-stream",
    "spz": "application/octet-stream",
}


def media_type_for(path: os.PathLike | str) -> Optional[str]:
    suffix = Path(path).suffix.lower().lstrip(".")
    return ASSET_MEDIA_TYPES.get(suffix)


class AssetStaticFiles(StaticFiles):
    """StaticFiles with explicit Content-Type values for 3D asset formats."""

    def file_response(self, full_path, stat_result, scope, status_code=200):
        response = super().file_response(full_path, stat_result, scope, status_code)
        media_type = media_type_for(full_path)
        if media_type:
            response.headers["content-type"] = media_type
        return response


@dataclass
class StoredAsset:
    uri: str
    path: Path
    original_name: str


class AssetStorage:
    """
    Writes uploaded files under ``public/models`` and ``public/images`` and
    maps the public URIs stored in records back to files on disk.
    """

    def __init__(self, public_dir: Path) -> None:
        self.public_dir = public_dir
        self.models_dir = public_dir / "models"
        self.images_dir = public_dir / "images"

    def ensure_dirs(self) -> None:
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.images_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def unique_filename(fieldname: str, original_name: str) -> str:
        suffix = Path(original_name or "").suffix
        stamp = int(time.time() * 1000)
        nonce = random.randint(0, 10**9)
        return f"{fieldname}-{stamp}-{nonce}{suffix}"

    def save_upload(self, fieldname: str, source: BinaryIO, original_name: str, directory: Path) -> StoredAsset:
        directory.mkdir(parents=True, exist_ok=True)
        filename = self.unique_filename(fieldname, original_name)
        target = directory / filename
        with target.open("wb") as out_file:
            shutil.copyfileobj(source, out_file)
        uri = f"/{directory.relative_to(self.public_dir).as_posix()}/{filename}"
        logger.info("Stored %s upload '%s' as %s", fieldname, original_name, uri)
        return StoredAsset(uri=uri, path=target, original_name=original_name)

    def save_model_file(self, source: BinaryIO, original_name: str) -> StoredAsset:
        return self.save_upload("modelFile", source, original_name, self.models_dir)

    def save_thumbnail(self, source: BinaryIO, original_name: str) -> StoredAsset:
        return self.save_upload("thumbnailFile", source, original_name, self.images_dir)

    def save_background(self, source: BinaryIO, original_name: str) -> StoredAsset:
        return self.save_upload("backgroundFile", source, original_name, self.images_dir)

    def path_for_uri(self, uri: str) -> Optional[Path]:
        if not isinstance(uri, str) or not uri.strip():
            return None
        relative = PurePosixPath(uri.strip().lstrip("/"))
        if any(part == ".." for part in relative.parts):
            logger.warning("Refusing asset URI outside public directory: %s", uri)
            return None
        candidate = (self.public_dir / relative).resolve()
        root = self.public_dir.resolve()
        if root != candidate and root not in candidate.parents:
            logger.warning("Refusing asset URI outside public directory: %s", uri)
            return None
        return candidate

    def exists_uri(self, uri: str) -> bool:
        path = self.path_for_uri(uri)
        return bool(path and path.is_file())

    def delete_uri(self, uri: str) -> bool:
        path = self.path_for_uri(uri)
        if path is None or not path.is_file():
            return False
        path.unlink()
        logger.info("Deleted asset %s", uri)
        return True

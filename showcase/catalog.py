from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Protocol

from .asset_storage import AssetStorage
from .collection_store import (
    JsonCollectionStore,
    Record,
    find_index,
    move_record,
    next_id,
    place_record,
    renumber,
    sort_by_order,
)
from .formats import SUPPORTED_FORMATS, format_from_filename, is_supported, normalize_format

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class CatalogError(RuntimeError):
    pass


class CatalogValidationError(CatalogError):
    pass


class RecordNotFoundError(CatalogError):
    pass


class UploadLike(Protocol):
    filename: Optional[str]
    file: BinaryIO


@dataclass
class IncomingFile:
    """Minimal upload object for callers outside the HTTP layer."""

    filename: str
    file: BinaryIO


def _has_file(upload: Optional[UploadLike]) -> bool:
    return upload is not None and bool(getattr(upload, "filename", None))


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()


def parse_order(value: Any) -> Optional[int]:
    """Parse an ``order`` field; ``None`` or blank means "not provided"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text)) if "." in text else int(text)
    except (ValueError, OverflowError) as exc:
        raise CatalogValidationError(f"Invalid order value: {value!r}") from exc


def parse_record_id(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise CatalogValidationError(f"Invalid {field_name}")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise CatalogValidationError(f"Invalid {field_name}") from exc


def parse_background_id(value: Any) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    try:
        return int(text)
    except ValueError as exc:
        raise CatalogValidationError(f"Invalid backgroundId: {value!r}") from exc


class _Catalog:
    kind = "record"
    id_field = "id"

    def __init__(self, store: JsonCollectionStore, assets: AssetStorage) -> None:
        self.store = store
        self.assets = assets

    def list(self) -> List[Record]:
        return self.store.get()

    def get(self, record_id: int) -> Record:
        records = self.store.get()
        index = find_index(records, record_id)
        if index == -1:
            raise RecordNotFoundError(f"{self.kind.capitalize()} not found")
        return records[index]

    def _asset_uris(self, record: Record) -> Iterable[str]:
        raise NotImplementedError

    def _discard_assets(self, removed: List[Record], survivors: List[Record]) -> None:
        still_used = {uri for record in survivors for uri in self._asset_uris(record)}
        for record in removed:
            for uri in self._asset_uris(record):
                if uri in still_used:
                    logger.debug("Keeping shared asset %s", uri)
                    continue
                self.assets.delete_uri(uri)

    def _discard_new_assets(self, uris: Iterable[str]) -> None:
        for uri in uris:
            try:
                self.assets.delete_uri(uri)
            except OSError:
                logger.warning("Failed to clean up asset %s after an error", uri)

    def delete(self, record_id: int) -> Dict[str, str]:
        def apply(records: List[Record]) -> Record:
            index = find_index(records, record_id)
            if index == -1:
                raise RecordNotFoundError(f"{self.kind.capitalize()} not found")
            removed = records.pop(index)
            renumber(records)
            return removed

        removed = self.store.mutate(apply)
        self._discard_assets([removed], self.store.get())
        logger.info("Deleted %s %s", self.kind, record_id)
        return {"message": f"{self.kind.capitalize()} deleted"}

    def reorder(self, record_id: Any, new_position: Any) -> List[Record]:
        target_id = parse_record_id(record_id, f"{self.kind}Id")
        if isinstance(new_position, bool):
            raise CatalogValidationError("Invalid newPosition")
        try:
            target = int(str(new_position).strip())
        except (TypeError, ValueError) as exc:
            raise CatalogValidationError("Invalid newPosition") from exc

        def apply(records: List[Record]) -> List[Record]:
            index = find_index(records, target_id)
            if index == -1:
                raise RecordNotFoundError(f"{self.kind.capitalize()} not found")
            if not 0 <= target < len(records):
                raise CatalogValidationError(
                    f"newPosition must be between 0 and {len(records) - 1}"
                )
            move_record(records, index, target)
            renumber(records)
            return records

        return self.store.mutate(apply)


class ModelCatalog(_Catalog):
    kind = "model"

    def _asset_uris(self, record: Record) -> Iterable[str]:
        return [uri for uri in (record.get("path"), record.get("thumbnail")) if isinstance(uri, str) and uri]

    def create(
        self,
        *,
        name: Optional[str],
        description: Optional[str],
        order: Any,
        model_file: Optional[UploadLike],
        thumbnail_file: Optional[UploadLike],
    ) -> Record:
        clean_name = _clean_text(name)
        if not clean_name or not _has_file(model_file) or not _has_file(thumbnail_file):
            raise CatalogValidationError("Missing required fields")
        fmt = format_from_filename(model_file.filename)
        if not is_supported(fmt):
            raise CatalogValidationError(
                f"Unsupported model format '{fmt or model_file.filename}'. "
                f"Supported: {', '.join(SUPPORTED_FORMATS)}"
            )
        try:
            requested_order = parse_order(order)
        except CatalogValidationError:
            requested_order = None
        if requested_order is not None and requested_order < 1:
            requested_order = None

        stored_model = self.assets.save_model_file(model_file.file, model_file.filename)
        stored_thumb = self.assets.save_thumbnail(thumbnail_file.file, thumbnail_file.filename)

        def apply(records: List[Record]) -> Record:
            record = {
                "id": next_id(records),
                "name": clean_name,
                "description": _clean_text(description) or "",
                "path": stored_model.uri,
                "format": fmt,
                "thumbnail": stored_thumb.uri,
                "order": requested_order or len(records) + 1,
                "backgroundId": None,
            }
            records.append(record)
            sort_by_order(records)
            renumber(records)
            return record

        try:
            record = self.store.mutate(apply)
        except Exception:
            self._discard_new_assets([stored_model.uri, stored_thumb.uri])
            raise
        logger.info("Created model %s (%s) '%s'", record["id"], fmt, clean_name)
        return record

    def update(
        self,
        record_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        order: Any = None,
        thumbnail_file: Optional[UploadLike] = None,
        background_id: Any = _UNSET,
    ) -> Record:
        clean_name = _clean_text(name)
        new_order = parse_order(order)
        new_background = _UNSET if background_id is _UNSET else parse_background_id(background_id)
        stored_thumb = None
        if _has_file(thumbnail_file):
            stored_thumb = self.assets.save_thumbnail(thumbnail_file.file, thumbnail_file.filename)

        def apply(records: List[Record]) -> tuple:
            index = find_index(records, record_id)
            if index == -1:
                raise RecordNotFoundError("Model not found")
            existing = records[index]
            updated = dict(existing)
            if clean_name:
                updated["name"] = clean_name
            if description is not None:
                updated["description"] = _clean_text(description)
            if new_background is not _UNSET:
                updated["backgroundId"] = new_background
            old_thumbnail = None
            if stored_thumb is not None:
                old_thumbnail = existing.get("thumbnail")
                updated["thumbnail"] = stored_thumb.uri
            if new_order is None:
                records[index] = updated
            else:
                records.pop(index)
                place_record(records, updated, new_order)
            renumber(records)
            return updated, old_thumbnail

        try:
            updated, old_thumbnail = self.store.mutate(apply)
        except Exception:
            if stored_thumb is not None:
                self._discard_new_assets([stored_thumb.uri])
            raise
        if old_thumbnail and old_thumbnail != updated.get("thumbnail"):
            survivors = self.store.get()
            if not any(old_thumbnail in self._asset_uris(record) for record in survivors):
                self.assets.delete_uri(old_thumbnail)
        logger.info("Updated model %s", record_id)
        return updated

    def batch_delete(self, fmt: Optional[str]) -> Dict[str, Any]:
        raw = fmt.strip() if isinstance(fmt, str) else ""
        wanted = normalize_format(raw)
        if not wanted:
            raise CatalogValidationError("format is required")
        # Only the exact lowercase sentinel wipes the collection.
        delete_all = raw == "all"

        def apply(records: List[Record]) -> List[Record]:
            if delete_all:
                removed = list(records)
            else:
                removed = [record for record in records if normalize_format(record.get("format")) == wanted]
            if not removed:
                raise RecordNotFoundError(f"No models found with format '{fmt}'")
            removed_ids = {id(record) for record in removed}
            records[:] = [record for record in records if id(record) not in removed_ids]
            renumber(records)
            return removed

        removed = self.store.mutate(apply)
        survivors = self.store.get()
        self._discard_assets(removed, survivors)
        logger.info("Batch deleted %s model(s) with format '%s'", len(removed), wanted)
        return {
            "message": f"Deleted {len(removed)} model(s)",
            "deletedCount": len(removed),
            "remainingCount": len(survivors),
        }


class BackgroundCatalog(_Catalog):
    kind = "background"

    def _asset_uris(self, record: Record) -> Iterable[str]:
        uri = record.get("path")
        return [uri] if isinstance(uri, str) and uri else []

    def create(
        self,
        *,
        name: Optional[str],
        description: Optional[str],
        order: Any,
        background_file: Optional[UploadLike],
    ) -> Record:
        clean_name = _clean_text(name)
        if not clean_name or not _has_file(background_file):
            raise CatalogValidationError("Missing required fields")
        try:
            requested_order = parse_order(order)
        except CatalogValidationError:
            requested_order = None
        if requested_order is not None and requested_order < 1:
            requested_order = None

        stored = self.assets.save_background(background_file.file, background_file.filename)

        def apply(records: List[Record]) -> Record:
            record = {
                "id": next_id(records),
                "name": clean_name,
                "description": _clean_text(description) or "",
                "path": stored.uri,
                "order": requested_order or len(records) + 1,
            }
            records.append(record)
            sort_by_order(records)
            renumber(records)
            return record

        try:
            record = self.store.mutate(apply)
        except Exception:
            self._discard_new_assets([stored.uri])
            raise
        logger.info("Created background %s '%s'", record["id"], clean_name)
        return record

    def update(
        self,
        record_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        order: Any = None,
        background_file: Optional[UploadLike] = None,
    ) -> Record:
        clean_name = _clean_text(name)
        new_order = parse_order(order)
        stored = None
        if _has_file(background_file):
            stored = self.assets.save_background(background_file.file, background_file.filename)

        def apply(records: List[Record]) -> tuple:
            index = find_index(records, record_id)
            if index == -1:
                raise RecordNotFoundError("Background not found")
            existing = records[index]
            updated = dict(existing)
            if clean_name:
                updated["name"] = clean_name
            if description is not None:
                updated["description"] = _clean_text(description)
            old_path = None
            if stored is not None:
                old_path = existing.get("path")
                updated["path"] = stored.uri
            if new_order is None:
                records[index] = updated
            else:
                records.pop(index)
                place_record(records, updated, new_order)
            renumber(records)
            return updated, old_path

        try:
            updated, old_path = self.store.mutate(apply)
        except Exception:
            if stored is not None:
                self._discard_new_assets([stored.uri])
            raise
        if old_path and old_path != updated.get("path"):
            self.assets.delete_uri(old_path)
        logger.info("Updated background %s", record_id)
        return updated

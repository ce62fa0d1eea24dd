from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
T = TypeVar("T")


class CollectionStoreError(RuntimeError):
    pass


class JsonCollectionStore:
    """
    A single JSON array on disk holding a whole collection.

    Every mutation is a read-modify-write performed under one lock and
    persisted through a temporary file that replaces the original atomically,
    so a crash mid-write leaves the previous array intact.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _read_records(self) -> List[Record]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CollectionStoreError(f"Failed to read {self.path.name}: {exc}") from exc
        if not isinstance(payload, list):
            raise CollectionStoreError(f"{self.path.name} does not hold a JSON array.")
        return [record for record in payload if isinstance(record, dict)]

    def _write_records(self, records: List[Record]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(records, indent=2, ensure_ascii=False))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise CollectionStoreError(f"Failed to write {self.path.name}: {exc}") from exc

    def get(self) -> List[Record]:
        with self._lock:
            return self._read_records()

    def mutate(self, fn: Callable[[List[Record]], T]) -> T:
        """Apply ``fn`` to the current records and persist them unless it raises."""
        with self._lock:
            records = self._read_records()
            result = fn(records)
            self._write_records(records)
            return result

    def replace(self, records: List[Record]) -> None:
        with self._lock:
            self._write_records(list(records))

    def exists(self) -> bool:
        return self.path.exists()


def next_id(records: List[Record]) -> int:
    ids = [_safe_int(record.get("id")) for record in records]
    return max(ids) + 1 if ids else 1


def find_index(records: List[Record], record_id: int) -> int:
    for index, record in enumerate(records):
        if _safe_int(record.get("id")) == record_id:
            return index
    return -1


def sort_by_order(records: List[Record]) -> None:
    records.sort(key=lambda record: _safe_int(record.get("order")))


def renumber(records: List[Record]) -> None:
    for index, record in enumerate(records):
        record["order"] = index + 1


def place_record(records: List[Record], record: Record, order: Optional[int]) -> None:
    """Insert ``record`` at 1-based position ``order``, clamped to the list; ``None`` appends."""
    if order is None:
        records.append(record)
        return
    records.insert(min(max(order - 1, 0), len(records)), record)


def move_record(records: List[Record], index: int, target: int) -> None:
    """Move ``records[index]`` to ``target``; the block in between shifts by one."""
    if not 0 <= index < len(records):
        raise IndexError(f"index {index} out of range")
    if not 0 <= target < len(records):
        raise IndexError(f"target {target} out of range")
    record = records.pop(index)
    records.insert(target, record)


def _safe_int(value: Any) -> int:
    try:
        if isinstance(value, bool):
            return 0
        return int(value)
    except (TypeError, ValueError):
        return 0

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from showcase.collection_store import (  # noqa: E402
    CollectionStoreError,
    JsonCollectionStore,
    find_index,
    move_record,
    next_id,
    place_record,
    renumber,
    sort_by_order,
)


def _records(*ids):
    return [{"id": record_id, "order": index + 1} for index, record_id in enumerate(ids)]


def test_missing_file_reads_as_empty_list(tmp_path: Path):
    store = JsonCollectionStore(tmp_path / "models.json")
    assert store.get() == []
    assert store.exists() is False


def test_mutate_persists_and_returns_value(tmp_path: Path):
    path = tmp_path / "data" / "models.json"
    store = JsonCollectionStore(path)

    def add(records):
        records.append({"id": next_id(records), "name": "Cube"})
        return len(records)

    assert store.mutate(add) == 1
    assert store.mutate(add) == 2
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert [record["id"] for record in on_disk] == [1, 2]
    # No temp files are left behind next to the collection.
    assert sorted(p.name for p in path.parent.iterdir()) == ["models.json"]


def test_concurrent_mutations_do_not_lose_updates(tmp_path: Path):
    store = JsonCollectionStore(tmp_path / "models.json")
    start = threading.Barrier(16)

    def add(records):
        records.append({"id": next_id(records), "order": len(records) + 1})

    def worker():
        start.wait()
        for _ in range(5):
            store.mutate(add)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = store.get()
    assert len(records) == 80
    assert sorted(r["id"] for r in records) == list(range(1, 81))


def test_mutate_writes_nothing_when_callback_raises(tmp_path: Path):
    path = tmp_path / "models.json"
    store = JsonCollectionStore(path)
    store.replace([{"id": 1, "name": "Original"}])

    def broken(records):
        records[0]["name"] = "Changed"
        raise ValueError("boom")

    with pytest.raises(ValueError):
        store.mutate(broken)
    assert store.get() == [{"id": 1, "name": "Original"}]


def test_invalid_json_raises_store_error(tmp_path: Path):
    path = tmp_path / "models.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(CollectionStoreError):
        JsonCollectionStore(path).get()


def test_non_array_payload_raises_store_error(tmp_path: Path):
    path = tmp_path / "models.json"
    path.write_text('{"id": 1}', encoding="utf-8")
    with pytest.raises(CollectionStoreError):
        JsonCollectionStore(path).get()


def test_replace_keeps_unicode_readable(tmp_path: Path):
    path = tmp_path / "models.json"
    JsonCollectionStore(path).replace([{"id": 1, "name": "模型"}])
    assert "模型" in path.read_text(encoding="utf-8")


def test_next_id_is_max_plus_one():
    assert next_id([]) == 1
    assert next_id([{"id": 4}, {"id": 2}]) == 5


def test_find_index_handles_string_ids():
    records = [{"id": "3"}, {"id": 7}]
    assert find_index(records, 3) == 0
    assert find_index(records, 7) == 1
    assert find_index(records, 9) == -1


def test_sort_then_renumber_makes_order_dense():
    records = [{"id": 1, "order": 10}, {"id": 2, "order": 3}, {"id": 3, "order": 3}]
    sort_by_order(records)
    renumber(records)
    assert [(r["id"], r["order"]) for r in records] == [(2, 1), (3, 2), (1, 3)]


def test_move_record_shifts_block_between_positions():
    records = _records(1, 2, 3, 4)
    move_record(records, 0, 2)
    assert [r["id"] for r in records] == [2, 3, 1, 4]
    move_record(records, 3, 0)
    assert [r["id"] for r in records] == [4, 2, 3, 1]


def test_move_record_rejects_out_of_range_target():
    records = _records(1, 2)
    with pytest.raises(IndexError):
        move_record(records, 0, 2)


def test_place_record_clamps_position():
    records = _records(1, 2, 3)
    place_record(records, {"id": 9}, 2)
    assert [r["id"] for r in records] == [1, 9, 2, 3]
    place_record(records, {"id": 10}, 0)
    assert records[0]["id"] == 10
    place_record(records, {"id": 11}, 99)
    assert records[-1]["id"] == 11
    place_record(records, {"id": 12}, None)
    assert records[-1]["id"] == 12

from __future__ import annotations

import io
import random
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from showcase.asset_storage import AssetStorage  # noqa: E402
from showcase.catalog import (  # noqa: E402
    BackgroundCatalog,
    CatalogValidationError,
    IncomingFile,
    ModelCatalog,
    RecordNotFoundError,
    parse_order,
)
from showcase.collection_store import JsonCollectionStore  # noqa: E402


def _upload(name: str, payload: bytes = b"data") -> IncomingFile:
    return IncomingFile(filename=name, file=io.BytesIO(payload))


def _models(tmp_path: Path) -> ModelCatalog:
    assets = AssetStorage(public_dir=tmp_path / "public")
    assets.ensure_dirs()
    return ModelCatalog(JsonCollectionStore(tmp_path / "data" / "models.json"), assets)


def _backgrounds(tmp_path: Path) -> BackgroundCatalog:
    assets = AssetStorage(public_dir=tmp_path / "public")
    assets.ensure_dirs()
    return BackgroundCatalog(JsonCollectionStore(tmp_path / "data" / "backgrounds.json"), assets)


def _create(catalog: ModelCatalog, name: str, filename: str = "cube.glb", order=None):
    return catalog.create(
        name=name,
        description=f"{name} description",
        order=order,
        model_file=_upload(filename),
        thumbnail_file=_upload("thumb.png"),
    )


def test_create_first_model_gets_id_and_order_one(tmp_path: Path):
    catalog = _models(tmp_path)
    record = _create(catalog, "Cube")

    assert record["id"] == 1
    assert record["order"] == 1
    assert record["format"] == "glb"
    assert record["backgroundId"] is None
    assert record["path"].startswith("/models/modelFile-")
    assert record["path"].endswith(".glb")
    assert record["thumbnail"].startswith("/images/thumbnailFile-")
    assert catalog.assets.exists_uri(record["path"])
    assert catalog.list() == [record]


def test_create_lowercases_format_from_extension(tmp_path: Path):
    catalog = _models(tmp_path)
    record = _create(catalog, "Scan", filename="Scan.PLY")
    assert record["format"] == "ply"


def test_create_requires_name_and_both_files(tmp_path: Path):
    catalog = _models(tmp_path)
    with pytest.raises(CatalogValidationError):
        catalog.create(name="  ", description="", order=None, model_file=_upload("a.glb"), thumbnail_file=_upload("t.png"))
    with pytest.raises(CatalogValidationError):
        catalog.create(name="A", description="", order=None, model_file=None, thumbnail_file=_upload("t.png"))
    assert list((tmp_path / "public" / "models").iterdir()) == []
    assert list((tmp_path / "public" / "images").iterdir()) == []


def test_create_rejects_unsupported_format_without_writing_files(tmp_path: Path):
    catalog = _models(tmp_path)
    with pytest.raises(CatalogValidationError):
        _create(catalog, "Notes", filename="notes.txt")
    assert list((tmp_path / "public" / "models").iterdir()) == []
    assert catalog.list() == []


def test_create_with_taken_order_lands_after_existing_record(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    _create(catalog, "B")
    _create(catalog, "C", order="1")
    _create(catalog, "D", order="99")

    names = [(r["name"], r["order"]) for r in catalog.list()]
    assert names == [("A", 1), ("C", 2), ("B", 3), ("D", 4)]


def test_create_with_unparseable_order_appends(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    record = _create(catalog, "B", order="soon")
    assert record["order"] == 2


def test_reorder_moves_record_and_renumbers(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    _create(catalog, "B")

    records = catalog.reorder(1, 1)

    assert [r["id"] for r in records] == [2, 1]
    assert [r["order"] for r in records] == [1, 2]
    assert catalog.list() == records


def test_reorder_validates_position_and_id(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    _create(catalog, "B")
    with pytest.raises(CatalogValidationError):
        catalog.reorder(1, 2)
    with pytest.raises(CatalogValidationError):
        catalog.reorder(1, "first")
    with pytest.raises(RecordNotFoundError):
        catalog.reorder(99, 0)
    assert [r["id"] for r in catalog.list()] == [1, 2]


def test_update_merges_fields(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    _create(catalog, "B")

    updated = catalog.update(2, name="  ", description="", order="1", background_id="3")

    assert updated["name"] == "B"
    assert updated["description"] == ""
    assert updated["backgroundId"] == 3
    assert [(r["id"], r["order"]) for r in catalog.list()] == [(2, 1), (1, 2)]

    cleared = catalog.update(2, background_id="")
    assert cleared["backgroundId"] is None
    assert cleared["description"] == ""


def test_update_keeps_fields_that_are_absent(tmp_path: Path):
    catalog = _models(tmp_path)
    original = _create(catalog, "A")
    updated = catalog.update(1)
    assert updated == original


def test_update_rejects_non_integer_order(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A")
    with pytest.raises(CatalogValidationError):
        catalog.update(1, order="abc")


def test_update_unknown_model_is_not_found(tmp_path: Path):
    catalog = _models(tmp_path)
    with pytest.raises(RecordNotFoundError):
        catalog.update(5, name="Ghost")


def test_update_replaces_thumbnail_and_deletes_old_file(tmp_path: Path):
    catalog = _models(tmp_path)
    record = _create(catalog, "A")
    old_thumb = record["thumbnail"]

    updated = catalog.update(1, thumbnail_file=_upload("new.png", b"png"))

    assert updated["thumbnail"] != old_thumb
    assert catalog.assets.exists_uri(updated["thumbnail"])
    assert not catalog.assets.exists_uri(old_thumb)


def test_delete_removes_files_and_renumbers(tmp_path: Path):
    catalog = _models(tmp_path)
    first = _create(catalog, "A")
    _create(catalog, "B")

    result = catalog.delete(1)

    assert result == {"message": "Model deleted"}
    assert not catalog.assets.exists_uri(first["path"])
    assert not catalog.assets.exists_uri(first["thumbnail"])
    assert [(r["id"], r["order"]) for r in catalog.list()] == [(2, 1)]
    with pytest.raises(RecordNotFoundError):
        catalog.delete(1)


def test_delete_keeps_assets_shared_with_other_records(tmp_path: Path):
    catalog = _models(tmp_path)
    shared = tmp_path / "public" / "models" / "cube.glb"
    shared.write_bytes(b"glb")
    catalog.store.replace(
        [
            {"id": 1, "name": "A", "path": "/models/cube.glb", "format": "glb", "thumbnail": "", "order": 1},
            {"id": 2, "name": "B", "path": "/models/cube.glb", "format": "glb", "thumbnail": "", "order": 2},
        ]
    )

    catalog.delete(1)
    assert shared.exists()
    catalog.delete(2)
    assert not shared.exists()


def test_batch_delete_by_format_is_case_insensitive(tmp_path: Path):
    catalog = _models(tmp_path)
    glb = _create(catalog, "A", filename="a.glb")
    _create(catalog, "B", filename="b.obj")
    _create(catalog, "C", filename="c.glb")

    result = catalog.batch_delete("GLB")

    assert result["deletedCount"] == 2
    assert result["remainingCount"] == 1
    assert not catalog.assets.exists_uri(glb["path"])
    assert [(r["name"], r["order"]) for r in catalog.list()] == [("B", 1)]


def test_batch_delete_all_and_error_cases(tmp_path: Path):
    catalog = _models(tmp_path)
    _create(catalog, "A", filename="a.glb")
    _create(catalog, "B", filename="b.stl")

    with pytest.raises(CatalogValidationError):
        catalog.batch_delete("  ")
    with pytest.raises(RecordNotFoundError):
        catalog.batch_delete("fbx")

    with pytest.raises(RecordNotFoundError):
        catalog.batch_delete("ALL")
    assert len(catalog.list()) == 2

    result = catalog.batch_delete("all")
    assert result["deletedCount"] == 2
    assert catalog.list() == []


def test_parse_order_variants():
    assert parse_order(None) is None
    assert parse_order("") is None
    assert parse_order("3") == 3
    assert parse_order("2.0") == 2
    assert parse_order(0) == 0
    with pytest.raises(CatalogValidationError):
        parse_order("x")
    with pytest.raises(CatalogValidationError):
        parse_order("1.0e999")


def test_background_lifecycle(tmp_path: Path):
    catalog = _backgrounds(tmp_path)
    first = catalog.create(name="Sky", description="", order=None, background_file=_upload("sky.jpg"))
    second = catalog.create(name="Sea", description="Blue", order=None, background_file=_upload("sea.jpg"))

    assert first["path"].startswith("/images/backgroundFile-")
    assert (first["id"], first["order"]) == (1, 1)
    assert (second["id"], second["order"]) == (2, 2)
    assert "format" not in first

    replaced = catalog.update(1, background_file=_upload("sky2.jpg"))
    assert replaced["path"] != first["path"]
    assert not catalog.assets.exists_uri(first["path"])

    records = catalog.reorder(2, 0)
    assert [r["id"] for r in records] == [2, 1]

    catalog.delete(2)
    assert [(r["id"], r["order"]) for r in catalog.list()] == [(1, 1)]


def test_background_create_requires_file(tmp_path: Path):
    catalog = _backgrounds(tmp_path)
    with pytest.raises(CatalogValidationError):
        catalog.create(name="Sky", description="", order=None, background_file=None)


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_orders_stay_dense_across_random_operation_sequences(tmp_path: Path, seed: int):
    rng = random.Random(seed)
    catalog = _models(tmp_path)

    for step in range(40):
        records = catalog.list()
        action = rng.choice(["create", "create", "delete", "reorder", "update"])
        if action == "create" or not records:
            order = rng.choice([None, "", "0", str(rng.randint(1, len(records) + 3))])
            _create(catalog, f"M{step}", order=order)
        elif action == "delete":
            catalog.delete(rng.choice(records)["id"])
        elif action == "reorder":
            catalog.reorder(rng.choice(records)["id"], rng.randrange(len(records)))
        else:
            catalog.update(rng.choice(records)["id"], order=str(rng.randint(0, len(records) + 2)))

        records = catalog.list()
        assert [r["order"] for r in records] == list(range(1, len(records) + 1))
        assert len({r["id"] for r in records}) == len(records)

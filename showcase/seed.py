from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import trimesh

from .asset_storage import AssetStorage
from .collection_store import JsonCollectionStore

logger = logging.getLogger(__name__)

SAMPLE_CUBE_NAME = "cube.glb"

SAMPLE_MODELS = [
    ("Red Cube", "A simple red cube sample model.", "#ff0000", "thumb1.svg"),
    ("Green Cube", "A simple green cube sample model.", "#00aa00", "thumb2.svg"),
    ("Blue Cube", "A simple blue cube sample model.", "#0000ff", "thumb3.svg"),
    ("Purple Cube", "A simple purple cube sample model.", "#aa00aa", "thumb4.svg"),
]


def svg_thumbnail(color: str, text: str) -> str:
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" width="200" height="200" viewBox="0 0 200 200">\n'
        f'  <rect width="200" height="200" fill="{color}" />\n'
        f'  <text x="100" y="100" font-family="Arial" font-size="24" text-anchor="middle" fill="white">{text}</text>\n'
        "</svg>\n"
    )


def _write_cube(path: Path) -> None:
    cube = trimesh.creation.box(extents=(1.0, 1.0, 1.0))
    cube.visual.face_colors = [204, 51, 51, 255]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cube.export(file_type="glb"))


def seed_sample_catalog(
    models_store: JsonCollectionStore,
    backgrounds_store: JsonCollectionStore,
    assets: AssetStorage,
    *,
    force: bool = False,
) -> List[Dict]:
    """
    Write the sample cube catalog when no model store exists yet.

    Returns the records written, or an empty list when the store was left alone.
    """
    assets.ensure_dirs()
    if not backgrounds_store.exists():
        backgrounds_store.replace([])

    if models_store.exists() and not force:
        return []

    _write_cube(assets.models_dir / SAMPLE_CUBE_NAME)
    records = []
    for index, (name, description, color, thumb_name) in enumerate(SAMPLE_MODELS, start=1):
        (assets.images_dir / thumb_name).write_text(svg_thumbnail(color, f"Model {index}"), encoding="utf-8")
        records.append(
            {
                "id": index,
                "name": name,
                "description": description,
                "path": f"/models/{SAMPLE_CUBE_NAME}",
                "format": "glb",
                "thumbnail": f"/images/{thumb_name}",
                "order": index,
                "backgroundId": None,
            }
        )
    models_store.replace(records)
    logger.info("Seeded %s sample models into %s", len(records), models_store.path)
    return records

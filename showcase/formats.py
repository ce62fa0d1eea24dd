from __future__ import annotations

from enum import Enum
from pathlib import PurePosixPath
from typing import Optional


class LoaderFamily(str, Enum):
    PLY_SPLAT = "ply-splat"
    SPLAT_CONTAINER = "splat-container"
    STANDARD_MESH = "standard-mesh"


FORMAT_FAMILIES = {
    "ply": LoaderFamily.PLY_SPLAT,
    "splat": LoaderFamily.SPLAT_CONTAINER,
    "ksplat": LoaderFamily.SPLAT_CONTAINER,
    "spz": LoaderFamily.SPLAT_CONTAINER,
    "glb": LoaderFamily.STANDARD_MESH,
    "gltf": LoaderFamily.STANDARD_MESH,
    "obj": LoaderFamily.STANDARD_MESH,
    "stl": LoaderFamily.STANDARD_MESH,
    "fbx": LoaderFamily.STANDARD_MESH,
    "sog": LoaderFamily.STANDARD_MESH,
}

SUPPORTED_FORMATS = tuple(FORMAT_FAMILIES)
SPLAT_FAMILIES = {LoaderFamily.PLY_SPLAT, LoaderFamily.SPLAT_CONTAINER}


def normalize_format(value: Optional[str]) -> str:
    return (value or "").strip().lower().lstrip(".")


def format_from_filename(filename: Optional[str]) -> str:
    return normalize_format(PurePosixPath(filename or "").suffix)


def family_for(fmt: Optional[str]) -> Optional[LoaderFamily]:
    return FORMAT_FAMILIES.get(normalize_format(fmt))


def is_supported(fmt: Optional[str]) -> bool:
    return family_for(fmt) is not None


def is_splat_format(fmt: Optional[str]) -> bool:
    return family_for(fmt) in SPLAT_FAMILIES

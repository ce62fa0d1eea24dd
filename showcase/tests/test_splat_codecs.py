from __future__ import annotations

import gzip
import struct
import sys
from pathlib import Path

import numpy as np
import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from showcase.splat_codecs import (  # noqa: E402
    SPLAT_RECORD_DTYPE,
    SPZ_MAGIC,
    SplatDecodeError,
    decode_container,
    decode_ksplat,
    decode_splat,
    decode_spz,
)

CENTERS = np.array([[0.0, 0.5, -0.25], [1.0, -1.0, 0.75], [-0.5, 0.25, 0.125]])
COLORS = np.array([[255, 0, 0, 255], [0, 255, 0, 128], [0, 0, 255, 64]], dtype=np.uint8)


def _splat_bytes(centers=CENTERS, colors=COLORS) -> bytes:
    records = np.zeros(len(centers), dtype=SPLAT_RECORD_DTYPE)
    records["position"] = centers
    records["scale"] = 0.01
    records["color"] = colors
    records["rotation"] = [128, 128, 128, 255]
    return records.tobytes()


def _ksplat_bytes(level: int, centers=CENTERS, colors=COLORS, partial: bool = False) -> bytes:
    count = len(centers)
    header = bytearray(4096)
    struct.pack_into("<BB", header, 0, 0, 1)
    struct.pack_into("<IIII", header, 4, 1, 1, count, count)
    struct.pack_into("<H", header, 20, level)

    section = bytearray(1024)
    bucket_center = np.array([0.25, -0.25, 0.5])
    block_size = 4.0
    scale_range = 32767
    if level == 0:
        bytes_per_splat = 44
        struct.pack_into("<IIII", section, 0, count, count, 0, 0)
        buckets = b""
    else:
        bytes_per_splat = 24
        struct.pack_into("<IIII", section, 0, count, count, 256, 1)
        struct.pack_into("<f", section, 16, block_size)
        struct.pack_into("<H", section, 20, 12)
        struct.pack_into("<I", section, 24, scale_range)
        struct.pack_into("<II", section, 32, 0 if partial else 1, 1 if partial else 0)
        meta = struct.pack("<I", count) if partial else b""
        buckets = meta + struct.pack("<3f", *bucket_center)

    body = bytearray()
    factor = (block_size / 2.0) / scale_range
    for center, color in zip(centers, colors):
        row = bytearray(bytes_per_splat)
        if level == 0:
            struct.pack_into("<3f", row, 0, *center)
            row[40:44] = bytes(color)
        else:
            quantized = np.round((center - bucket_center) / factor + scale_range).astype(int)
            struct.pack_into("<3H", row, 0, *quantized)
            row[20:24] = bytes(color)
        body.extend(row)
    return bytes(header + section + buckets + body)


def _spz_bytes(version: int, centers=CENTERS, fractional_bits: int = 12, magic: int = SPZ_MAGIC) -> bytes:
    count = len(centers)
    payload = bytearray(struct.pack("<IIIBBBB", magic, version, count, 0, fractional_bits, 0, 0))
    if version == 1:
        payload.extend(np.asarray(centers, dtype="<f2").tobytes())
    else:
        for value in np.asarray(centers).ravel():
            fixed = int(round(value * (1 << fractional_bits))) & 0xFFFFFF
            payload.extend(bytes([fixed & 0xFF, (fixed >> 8) & 0xFF, (fixed >> 16) & 0xFF]))
    payload.extend(bytes([200] * count))
    payload.extend(bytes([128] * count * 3))
    payload.extend(bytes([0] * count * 3))
    payload.extend(bytes([0] * count * 3))
    return gzip.compress(bytes(payload))


def test_decode_splat_records():
    data = decode_splat(_splat_bytes())
    assert data.count == 3
    assert np.allclose(data.centers, CENTERS)
    assert data.colors.tolist() == COLORS.tolist()


def test_decode_splat_rejects_truncated_payload():
    with pytest.raises(SplatDecodeError):
        decode_splat(_splat_bytes()[:-5])
    with pytest.raises(SplatDecodeError):
        decode_splat(b"")


def test_decode_ksplat_uncompressed():
    data = decode_ksplat(_ksplat_bytes(level=0))
    assert np.allclose(data.centers, CENTERS)
    assert data.colors.tolist() == COLORS.tolist()


def test_decode_ksplat_compressed_full_bucket():
    data = decode_ksplat(_ksplat_bytes(level=1))
    assert np.allclose(data.centers, CENTERS, atol=1e-3)
    assert data.colors.tolist() == COLORS.tolist()


def test_decode_ksplat_compressed_partial_bucket():
    data = decode_ksplat(_ksplat_bytes(level=1, partial=True))
    assert np.allclose(data.centers, CENTERS, atol=1e-3)


def test_decode_ksplat_rejects_short_or_unknown_level():
    with pytest.raises(SplatDecodeError):
        decode_ksplat(b"\x00" * 100)
    with pytest.raises(SplatDecodeError):
        decode_ksplat(_ksplat_bytes(level=7))
    with pytest.raises(SplatDecodeError):
        decode_ksplat(_ksplat_bytes(level=0)[:-10])


def test_decode_spz_fixed_point_positions():
    data = decode_spz(_spz_bytes(version=2))
    assert np.allclose(data.centers, CENTERS, atol=1 / 4096)
    assert data.colors.shape == (3, 4)
    assert data.colors[:, 3].tolist() == [200, 200, 200]


def test_decode_spz_float16_positions():
    data = decode_spz(_spz_bytes(version=1))
    assert np.allclose(data.centers, CENTERS, atol=1e-3)


def test_decode_spz_rejects_bad_input():
    with pytest.raises(SplatDecodeError):
        decode_spz(b"not gzip")
    with pytest.raises(SplatDecodeError):
        decode_spz(_spz_bytes(version=2, magic=0x12345678))
    with pytest.raises(SplatDecodeError):
        decode_spz(_spz_bytes(version=9))


def test_decode_container_dispatches_by_format():
    assert decode_container(_splat_bytes(), "SPLAT").count == 3
    with pytest.raises(SplatDecodeError):
        decode_container(b"", "ply")


def test_decode_ksplat_rejects_more_sections_than_reserved():
    header = bytearray(4096)
    struct.pack_into("<BB", header, 0, 0, 1)
    struct.pack_into("<IIII", header, 4, 0, 1, 3, 3)
    with pytest.raises(SplatDecodeError):
        decode_container(bytes(header), "ksplat")


def test_decode_ksplat_rejects_truncated_bucket_table():
    data = bytearray(_ksplat_bytes(level=1))
    struct.pack_into("<I", data, 4096 + 12, 1000)
    struct.pack_into("<H", data, 4096 + 20, 0)
    with pytest.raises(SplatDecodeError):
        decode_ksplat(bytes(data))

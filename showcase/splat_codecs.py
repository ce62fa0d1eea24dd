"""
Decoders for gaussian-splat container formats.

Only what the viewer needs is decoded: splat centres and, where the format
stores them directly, RGBA colours. Scales, rotations and spherical harmonics
are skipped.
"""
from __future__ import annotations

import gzip
import logging
import zlib
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

SPLAT_RECORD_DTYPE = np.dtype(
    [
        ("position", "<f4", (3,)),
        ("scale", "<f4", (3,)),
        ("color", "u1", (4,)),
        ("rotation", "u1", (4,)),
    ]
)

SPZ_MAGIC = 0x5053474E
SPZ_HEADER_BYTES = 16
SPZ_COLOR_SCALE = 0.15
SH_C0 = 0.28209479177387814

KSPLAT_HEADER_BYTES = 4096
KSPLAT_SECTION_HEADER_BYTES = 1024
# level -> (bytes per centre, colour offset, bytes per SH component, base bytes per splat, default scale range)
KSPLAT_LEVELS = {
    0: (12, 40, 4, 44, 1),
    1: (6, 20, 2, 24, 32767),
    2: (6, 20, 1, 24, 32767),
}
SH_COMPONENTS = {0: 0, 1: 9, 2: 24}


class SplatDecodeError(ValueError):
    pass


@dataclass
class SplatData:
    centers: np.ndarray
    colors: Optional[np.ndarray] = None

    @property
    def count(self) -> int:
        return int(self.centers.shape[0])


def decode_splat(data: bytes) -> SplatData:
    if len(data) == 0 or len(data) % SPLAT_RECORD_DTYPE.itemsize != 0:
        raise SplatDecodeError(
            f"SPLAT payload of {len(data)} bytes is not a multiple of {SPLAT_RECORD_DTYPE.itemsize}"
        )
    records = np.frombuffer(data, dtype=SPLAT_RECORD_DTYPE)
    return SplatData(
        centers=records["position"].astype(np.float64),
        colors=records["color"].copy(),
    )


def decode_spz(data: bytes) -> SplatData:
    try:
        raw = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise SplatDecodeError(f"SPZ payload is not gzip data: {exc}") from exc
    if len(raw) < SPZ_HEADER_BYTES:
        raise SplatDecodeError("SPZ payload is shorter than its header")

    magic, version, count = np.frombuffer(raw, dtype="<u4", count=3)
    sh_degree, fractional_bits = raw[12], raw[13]
    if int(magic) != SPZ_MAGIC:
        raise SplatDecodeError("SPZ magic number mismatch")
    if not 1 <= int(version) <= 3:
        raise SplatDecodeError(f"Unsupported SPZ version {int(version)}")
    count = int(count)

    offset = SPZ_HEADER_BYTES
    if int(version) == 1:
        position_bytes = count * 6
        _require(raw, offset + position_bytes, "SPZ positions")
        centers = np.frombuffer(raw, dtype="<f2", count=count * 3, offset=offset).astype(np.float64).reshape(-1, 3)
    else:
        position_bytes = count * 9
        _require(raw, offset + position_bytes, "SPZ positions")
        packed = np.frombuffer(raw, dtype=np.uint8, count=position_bytes, offset=offset).reshape(-1, 3).astype(np.int32)
        fixed = packed[:, 0] | (packed[:, 1] << 8) | (packed[:, 2] << 16)
        fixed = np.where(fixed & 0x800000, fixed - (1 << 24), fixed)
        centers = (fixed.astype(np.float64) / float(1 << int(fractional_bits))).reshape(-1, 3)
    offset += position_bytes

    colors = None
    alpha_end = offset + count
    color_end = alpha_end + count * 3
    if len(raw) >= color_end:
        alpha = np.frombuffer(raw, dtype=np.uint8, count=count, offset=offset)
        stored = np.frombuffer(raw, dtype=np.uint8, count=count * 3, offset=alpha_end).reshape(-1, 3)
        dc = (stored.astype(np.float64) / 255.0 - 0.5) / SPZ_COLOR_SCALE
        rgb = np.clip((0.5 + SH_C0 * dc) * 255.0, 0, 255).astype(np.uint8)
        colors = np.hstack([rgb, alpha.reshape(-1, 1)])
    logger.debug("Decoded SPZ v%s with %s splats (sh degree %s)", int(version), count, int(sh_degree))
    return SplatData(centers=centers, colors=colors)


def decode_ksplat(data: bytes) -> SplatData:
    _require(data, KSPLAT_HEADER_BYTES, "KSPLAT header")
    header_u32 = np.frombuffer(data, dtype="<u4", count=5)
    max_section_count = int(header_u32[1])
    section_count = int(header_u32[2])
    compression_level = int(np.frombuffer(data, dtype="<u2", count=1, offset=20)[0])
    if compression_level not in KSPLAT_LEVELS:
        raise SplatDecodeError(f"Unsupported KSPLAT compression level {compression_level}")
    bytes_per_center, color_offset, sh_component_bytes, base_bytes, default_range = KSPLAT_LEVELS[compression_level]

    if section_count > max_section_count:
        raise SplatDecodeError(f"KSPLAT declares {section_count} sections but reserves headers for {max_section_count}")
    data_offset = KSPLAT_HEADER_BYTES + max_section_count * KSPLAT_SECTION_HEADER_BYTES
    _require(data, data_offset, "KSPLAT section headers")

    centers_parts = []
    color_parts = []
    for section in range(section_count):
        header_offset = KSPLAT_HEADER_BYTES + section * KSPLAT_SECTION_HEADER_BYTES
        sec_u32 = np.frombuffer(data, dtype="<u4", count=10, offset=header_offset)
        splat_count = int(sec_u32[0])
        max_splat_count = int(sec_u32[1])
        bucket_size = int(sec_u32[2])
        bucket_count = int(sec_u32[3])
        bucket_block_size = float(np.frombuffer(data, dtype="<f4", count=1, offset=header_offset + 16)[0])
        bucket_storage_bytes = int(np.frombuffer(data, dtype="<u2", count=1, offset=header_offset + 20)[0])
        scale_range = int(sec_u32[6]) or default_range
        full_bucket_count = int(sec_u32[8])
        partial_bucket_count = int(sec_u32[9])
        sh_degree = int(np.frombuffer(data, dtype="<u2", count=1, offset=header_offset + 40)[0])

        bytes_per_splat = base_bytes + SH_COMPONENTS.get(sh_degree, 0) * sh_component_bytes
        bucket_meta_bytes = partial_bucket_count * 4
        buckets_bytes = bucket_storage_bytes * bucket_count + bucket_meta_bytes
        if compression_level > 0:
            _require(data, data_offset + bucket_meta_bytes + bucket_count * 12, f"KSPLAT section {section} buckets")
        splat_base = data_offset + buckets_bytes
        _require(data, splat_base + bytes_per_splat * splat_count, f"KSPLAT section {section}")

        rows = np.frombuffer(
            data, dtype=np.uint8, count=bytes_per_splat * splat_count, offset=splat_base
        ).reshape(-1, bytes_per_splat) if splat_count else np.zeros((0, bytes_per_splat), dtype=np.uint8)

        if compression_level == 0:
            centers = rows[:, :12].copy().view("<f4").astype(np.float64).reshape(-1, 3)
        else:
            quantized = rows[:, :6].copy().view("<u2").astype(np.float64).reshape(-1, 3)
            bucket_centers = np.frombuffer(
                data, dtype="<f4", count=bucket_count * 3, offset=data_offset + bucket_meta_bytes
            ).astype(np.float64).reshape(-1, 3)
            partial_lengths = np.frombuffer(data, dtype="<u4", count=partial_bucket_count, offset=data_offset)
            bucket_index = _bucket_indices(splat_count, bucket_size, full_bucket_count, partial_lengths)
            if len(bucket_centers) == 0 or bucket_index.max(initial=-1) >= len(bucket_centers):
                raise SplatDecodeError(f"KSPLAT section {section} references missing buckets")
            scale_factor = (bucket_block_size / 2.0) / float(scale_range)
            centers = (quantized - scale_range) * scale_factor + bucket_centers[bucket_index]

        centers_parts.append(centers)
        color_parts.append(rows[:, color_offset : color_offset + 4].copy())
        data_offset += bytes_per_splat * max_splat_count + buckets_bytes

    if not centers_parts:
        return SplatData(centers=np.zeros((0, 3)), colors=None)
    return SplatData(centers=np.vstack(centers_parts), colors=np.vstack(color_parts))


def _bucket_indices(splat_count: int, bucket_size: int, full_bucket_count: int, partial_lengths: np.ndarray) -> np.ndarray:
    indices = np.empty(splat_count, dtype=np.int64)
    full_splats = min(splat_count, full_bucket_count * bucket_size)
    if full_splats:
        indices[:full_splats] = np.arange(full_splats) // max(bucket_size, 1)
    cursor = full_splats
    bucket = full_bucket_count
    for length in partial_lengths:
        end = min(splat_count, cursor + int(length))
        indices[cursor:end] = bucket
        cursor = end
        bucket += 1
    if cursor < splat_count:
        raise SplatDecodeError("KSPLAT bucket lengths do not cover every splat")
    return indices


def _require(data: bytes, size: int, label: str) -> None:
    if len(data) < size:
        raise SplatDecodeError(f"{label} truncated: need {size} bytes, have {len(data)}")


DECODERS = {
    "splat": decode_splat,
    "ksplat": decode_ksplat,
    "spz": decode_spz,
}


def decode_container(data: bytes, fmt: str) -> SplatData:
    decoder = DECODERS.get(fmt.lower())
    if decoder is None:
        raise SplatDecodeError(f"No splat decoder for format '{fmt}'")
    try:
        return decoder(data)
    except SplatDecodeError:
        raise
    except ValueError as exc:
        raise SplatDecodeError(f"Malformed {fmt} payload: {exc}") from exc

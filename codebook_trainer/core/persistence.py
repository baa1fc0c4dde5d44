from __future__ import annotations

import contextlib
import json
import logging
import os
import struct
import tempfile
from pathlib import Path

import numpy as np

from .config import AggregationMode
from .constants import CODEBOOK_MAGIC, FORMAT_VERSION, PITCH_MAPPING_MAGIC
from .types import Codebook, CodebookHeader, PitchMapping, PitchStatistics, StageSummary

logger = logging.getLogger(__name__)

# magic, version, mode code, lsf order, vector dim, entries, items, mappings, snapshot bytes
CODEBOOK_HEADER = struct.Struct("<4sHHIIIIII")
# magic, version, reserved, voiced counts (source, target), statistics, pair count
PITCH_HEADER = struct.Struct("<4sHHII8dI")
ENTRY_DTYPE = np.dtype("<f4")


def _atomic_write(path: Path, payload: bytes) -> Path:
    path = Path(path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(handle, "wb") as stream:
            stream.write(payload)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(temp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise
    return path


def _snapshot_bytes(header: CodebookHeader) -> bytes:
    payload = {
        "source_tag": header.source_tag,
        "target_tag": header.target_tag,
        "elimination": [
            {
                "name": stage.name,
                "input_count": stage.input_count,
                "eliminated": stage.eliminated,
                "clusters": stage.clusters,
            }
            for stage in header.elimination
        ],
        "parameters": header.parameters,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_codebook(codebook: Codebook) -> bytes:
    header = codebook.header
    snapshot = _snapshot_bytes(header)
    entries = np.column_stack([codebook.source, codebook.target, codebook.weights]).astype(ENTRY_DTYPE)
    prefix = CODEBOOK_HEADER.pack(
        CODEBOOK_MAGIC,
        FORMAT_VERSION,
        header.aggregation_mode.code,
        header.lsf_order,
        header.vector_dim,
        len(codebook),
        header.total_items,
        header.total_mappings,
        len(snapshot),
    )
    return prefix + snapshot + entries.tobytes()


def write_codebook(path: Path, codebook: Codebook) -> Path:
    written = _atomic_write(path, encode_codebook(codebook))
    logger.info("wrote codebook with %d entries to %s", len(codebook), written)
    return written


def read_codebook(path: Path) -> Codebook:
    data = Path(path).read_bytes()
    if len(data) < CODEBOOK_HEADER.size or data[:4] != CODEBOOK_MAGIC:
        raise ValueError(f"not a codebook file: {path}")
    (
        _,
        version,
        mode_code,
        lsf_order,
        vector_dim,
        entry_count,
        total_items,
        total_mappings,
        snapshot_size,
    ) = CODEBOOK_HEADER.unpack_from(data)
    if version != FORMAT_VERSION:
        raise ValueError(f"unsupported codebook version {version} in {path}")

    offset = CODEBOOK_HEADER.size
    snapshot = json.loads(data[offset : offset + snapshot_size].decode("utf-8"))
    offset += snapshot_size
    width = 2 * vector_dim + 1
    expected = offset + entry_count * width * ENTRY_DTYPE.itemsize
    if len(data) != expected:
        raise ValueError(f"truncated codebook file {path}: {len(data)} bytes, expected {expected}")
    entries = np.frombuffer(data, dtype=ENTRY_DTYPE, count=entry_count * width, offset=offset)
    entries = entries.reshape(entry_count, width).astype(np.float64)

    header = CodebookHeader(
        aggregation_mode=AggregationMode.from_code(mode_code),
        source_tag=snapshot["source_tag"],
        target_tag=snapshot["target_tag"],
        lsf_order=lsf_order,
        total_items=total_items,
        total_mappings=total_mappings,
        total_entries=entry_count,
        elimination=tuple(StageSummary(**stage) for stage in snapshot["elimination"]),
        parameters=snapshot["parameters"],
    )
    return Codebook(
        header=header,
        source=entries[:, :vector_dim],
        target=entries[:, vector_dim : 2 * vector_dim],
        weights=entries[:, -1],
    )


def encode_pitch_mapping(mapping: PitchMapping) -> bytes:
    pairs = np.column_stack([mapping.source_f0, mapping.target_f0]).astype(ENTRY_DTYPE)
    prefix = PITCH_HEADER.pack(
        PITCH_MAPPING_MAGIC,
        FORMAT_VERSION,
        0,
        mapping.source.voiced_count,
        mapping.target.voiced_count,
        mapping.source.mean_hz,
        mapping.source.std_hz,
        mapping.source.mean_log,
        mapping.source.std_log,
        mapping.target.mean_hz,
        mapping.target.std_hz,
        mapping.target.mean_log,
        mapping.target.std_log,
        pairs.shape[0],
    )
    return prefix + pairs.tobytes()


def write_pitch_mapping(path: Path, mapping: PitchMapping) -> Path:
    written = _atomic_write(path, encode_pitch_mapping(mapping))
    logger.info("wrote pitch mapping with %d voiced pairs to %s", mapping.source_f0.size, written)
    return written


def read_pitch_mapping(path: Path) -> PitchMapping:
    data = Path(path).read_bytes()
    if len(data) < PITCH_HEADER.size or data[:4] != PITCH_MAPPING_MAGIC:
        raise ValueError(f"not a pitch mapping file: {path}")
    fields = PITCH_HEADER.unpack_from(data)
    version, source_count, target_count = fields[1], fields[3], fields[4]
    if version != FORMAT_VERSION:
        raise ValueError(f"unsupported pitch mapping version {version} in {path}")
    stats = fields[5:13]
    pair_count = fields[13]
    pairs = np.frombuffer(data, dtype=ENTRY_DTYPE, count=pair_count * 2, offset=PITCH_HEADER.size)
    pairs = pairs.reshape(pair_count, 2).astype(np.float64)
    return PitchMapping(
        source=PitchStatistics(*stats[:4], voiced_count=source_count),
        target=PitchStatistics(*stats[4:], voiced_count=target_count),
        source_f0=pairs[:, 0],
        target_f0=pairs[:, 1],
    )

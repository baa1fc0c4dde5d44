from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Sequence

import numpy as np

from .config import AggregationMode
from .constants import CATEGORY_NONE, CHANNEL_KEYS

SCALAR_CHANNELS: tuple[str, ...] = CHANNEL_KEYS[1:]


def vector_dimension(lsf_order: int) -> int:
    return int(lsf_order) + len(SCALAR_CHANNELS)


def channel_slice(channel: str, lsf_order: int) -> slice:
    if channel == "lsf":
        return slice(0, lsf_order)
    if channel not in SCALAR_CHANNELS:
        raise ValueError(f"unknown feature channel: {channel}")
    offset = lsf_order + SCALAR_CHANNELS.index(channel)
    return slice(offset, offset + 1)


def _readonly(values: Any, dtype: Any = np.float64) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class LabelSpan:
    start: float
    end: float
    label: str

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)


@dataclass(frozen=True)
class ItemFeatures:
    lsfs: np.ndarray
    f0: np.ndarray
    energy: np.ndarray
    frame_times: np.ndarray
    skip_size: float

    def __post_init__(self) -> None:
        lsfs = _readonly(self.lsfs)
        if lsfs.ndim != 2:
            raise ValueError(f"lsfs must be a (frames, order) matrix, got shape {lsfs.shape}")
        object.__setattr__(self, "lsfs", lsfs)
        for name in ("f0", "energy", "frame_times"):
            values = _readonly(getattr(self, name))
            if values.shape != (lsfs.shape[0],):
                raise ValueError(f"{name} must have one value per frame ({lsfs.shape[0]}), got shape {values.shape}")
            object.__setattr__(self, name, values)
        object.__setattr__(self, "skip_size", float(self.skip_size))

    @property
    def frame_count(self) -> int:
        return int(self.lsfs.shape[0])

    @property
    def lsf_order(self) -> int:
        return int(self.lsfs.shape[1])


@dataclass(frozen=True)
class TrainingItem:
    name: str
    path: Path
    features: ItemFeatures
    labels: tuple[LabelSpan, ...] = ()


class AdaptationSet:
    """Training items of one style, ordered by name."""

    def __init__(self, items: Sequence[TrainingItem], folder: Path | None = None):
        self._items = tuple(sorted(items, key=lambda item: (item.name, str(item.path))))
        self.folder = folder

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[TrainingItem]:
        return iter(self._items)

    def __getitem__(self, index: int) -> TrainingItem:
        return self._items[index]

    @property
    def names(self) -> list[str]:
        return [item.name for item in self._items]


@dataclass(frozen=True)
class FrameMapping:
    source: np.ndarray
    target: np.ndarray
    weight: float = 1.0


@dataclass(frozen=True)
class MappingTable:
    """Column-wise store of frame mappings in source-traversal order."""

    source: np.ndarray
    target: np.ndarray
    weights: np.ndarray
    item_index: np.ndarray
    frame_index: np.ndarray
    label_index: np.ndarray
    label_category: np.ndarray
    lsf_order: int

    def __post_init__(self) -> None:
        dim = vector_dimension(self.lsf_order)
        count = int(np.asarray(self.weights).shape[0])
        for name in ("source", "target"):
            matrix = np.asarray(getattr(self, name), dtype=np.float64).reshape(-1, dim)
            if matrix.shape[0] != count:
                raise ValueError(f"{name} has {matrix.shape[0]} rows, expected {count}")
            object.__setattr__(self, name, matrix)
        object.__setattr__(self, "weights", np.asarray(self.weights, dtype=np.float64))
        for name in ("item_index", "frame_index", "label_index", "label_category"):
            column = np.asarray(getattr(self, name), dtype=np.int64)
            if column.shape != (count,):
                raise ValueError(f"{name} must have {count} entries, got shape {column.shape}")
            object.__setattr__(self, name, column)

    @classmethod
    def empty(cls, lsf_order: int) -> "MappingTable":
        dim = vector_dimension(lsf_order)
        no_rows = np.zeros(0, dtype=np.int64)
        return cls(
            source=np.zeros((0, dim)),
            target=np.zeros((0, dim)),
            weights=np.zeros(0),
            item_index=no_rows,
            frame_index=no_rows,
            label_index=no_rows,
            label_category=no_rows,
            lsf_order=lsf_order,
        )

    @classmethod
    def concatenate(cls, tables: Sequence["MappingTable"], lsf_order: int) -> "MappingTable":
        if not tables:
            return cls.empty(lsf_order)
        return cls(
            source=np.concatenate([table.source for table in tables], axis=0),
            target=np.concatenate([table.target for table in tables], axis=0),
            weights=np.concatenate([table.weights for table in tables]),
            item_index=np.concatenate([table.item_index for table in tables]),
            frame_index=np.concatenate([table.frame_index for table in tables]),
            label_index=np.concatenate([table.label_index for table in tables]),
            label_category=np.concatenate([table.label_category for table in tables]),
            lsf_order=lsf_order,
        )

    def __len__(self) -> int:
        return int(self.weights.shape[0])

    def __iter__(self) -> Iterator[FrameMapping]:
        for index in range(len(self)):
            yield self.mapping(index)

    def mapping(self, index: int) -> FrameMapping:
        return FrameMapping(
            source=self.source[index].copy(),
            target=self.target[index].copy(),
            weight=float(self.weights[index]),
        )

    def channel(self, name: str, side: str = "source") -> np.ndarray:
        if side not in ("source", "target"):
            raise ValueError(f"side must be 'source' or 'target', got {side!r}")
        matrix = self.source if side == "source" else self.target
        return matrix[:, channel_slice(name, self.lsf_order)]

    def channels(self, names: Sequence[str], side: str = "source") -> np.ndarray:
        return np.concatenate([self.channel(name, side) for name in names], axis=1)

    def subset(self, mask: np.ndarray) -> "MappingTable":
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise ValueError(f"mask must have {len(self)} entries, got shape {mask.shape}")
        return MappingTable(
            source=self.source[mask],
            target=self.target[mask],
            weights=self.weights[mask],
            item_index=self.item_index[mask],
            frame_index=self.frame_index[mask],
            label_index=self.label_index[mask],
            label_category=self.label_category[mask],
            lsf_order=self.lsf_order,
        )

    @property
    def has_labels(self) -> bool:
        return bool(np.any(self.label_category != CATEGORY_NONE))


@dataclass(frozen=True)
class StageSummary:
    name: str
    input_count: int
    eliminated: int
    clusters: int = 0

    @property
    def remaining(self) -> int:
        return self.input_count - self.eliminated


@dataclass(frozen=True)
class CodebookHeader:
    aggregation_mode: AggregationMode
    source_tag: str
    target_tag: str
    lsf_order: int
    total_items: int
    total_mappings: int
    total_entries: int
    elimination: tuple[StageSummary, ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def vector_dim(self) -> int:
        return vector_dimension(self.lsf_order)


@dataclass(frozen=True)
class Codebook:
    header: CodebookHeader
    source: np.ndarray
    target: np.ndarray
    weights: np.ndarray

    def __post_init__(self) -> None:
        dim = self.header.vector_dim
        object.__setattr__(self, "source", _readonly(np.asarray(self.source).reshape(-1, dim)))
        object.__setattr__(self, "target", _readonly(np.asarray(self.target).reshape(-1, dim)))
        object.__setattr__(self, "weights", _readonly(self.weights))
        if not self.source.shape[0] == self.target.shape[0] == self.weights.shape[0]:
            raise ValueError("codebook source, target and weights must have the same number of entries")

    def __len__(self) -> int:
        return int(self.weights.shape[0])

    def __iter__(self) -> Iterator[FrameMapping]:
        for index in range(len(self)):
            yield FrameMapping(source=self.source[index], target=self.target[index], weight=float(self.weights[index]))

    def channel(self, name: str, side: str = "source") -> np.ndarray:
        matrix = self.source if side == "source" else self.target
        return matrix[:, channel_slice(name, self.header.lsf_order)]


@dataclass(frozen=True)
class PitchStatistics:
    mean_hz: float
    std_hz: float
    mean_log: float
    std_log: float
    voiced_count: int


@dataclass(frozen=True)
class PitchMapping:
    source: PitchStatistics
    target: PitchStatistics
    source_f0: np.ndarray
    target_f0: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_f0", _readonly(self.source_f0))
        object.__setattr__(self, "target_f0", _readonly(self.target_f0))
        if self.source_f0.shape != self.target_f0.shape:
            raise ValueError("pitch mapping source and target F0 arrays must match in length")

from __future__ import annotations

import logging

import numpy as np

from .config import AggregationMode, CodebookTrainerConfig
from .elimination import EliminationResult
from .types import (
    Codebook,
    CodebookHeader,
    MappingTable,
    PitchMapping,
    PitchStatistics,
    channel_slice,
    vector_dimension,
)

logger = logging.getLogger(__name__)


def _mean_vector(vectors: np.ndarray, weights: np.ndarray, lsf_order: int) -> np.ndarray:
    mean = np.average(vectors, axis=0, weights=weights)
    column = channel_slice("f0", lsf_order).start
    voiced = vectors[:, column] > 0.0
    if np.any(voiced):
        mean[column] = np.average(vectors[voiced, column], weights=weights[voiced])
    else:
        mean[column] = 0.0
    return mean


def _groups_in_order(keys: np.ndarray) -> list[np.ndarray]:
    """Row indices per distinct key, ordered by each key's first row."""
    if keys.shape[0] == 0:
        return []
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    return [np.flatnonzero(inverse == group) for group in np.argsort(first, kind="stable")]


class CodebookBuilder:
    def __init__(self, config: CodebookTrainerConfig):
        self.config = config

    def build(self, table: MappingTable, result: EliminationResult, total_items: int) -> Codebook:
        survivors = table.subset(result.keep)
        mode = self.config.aggregation_mode

        if mode in (AggregationMode.FRAMES, AggregationMode.FRAME_GROUPS):
            source, target, weights = survivors.source, survivors.target, survivors.weights
        else:
            if mode is AggregationMode.LABELS:
                groups = self._label_groups(survivors)
            elif mode is AggregationMode.LABEL_GROUPS:
                groups = self._category_groups(survivors, self.config.label_group_neighbours)
            else:
                groups = [np.arange(len(survivors))] if len(survivors) else []
            source, target, weights = self._aggregate(survivors, groups)

        header = CodebookHeader(
            aggregation_mode=mode,
            source_tag=self.config.source_tag,
            target_tag=self.config.target_tag,
            lsf_order=table.lsf_order,
            total_items=int(total_items),
            total_mappings=len(table),
            total_entries=int(weights.shape[0]),
            elimination=result.stages,
            parameters=self.config.parameter_snapshot(),
        )
        logger.info(
            "codebook: %d entries (%s) from %d surviving of %d mappings",
            header.total_entries,
            mode.value,
            len(survivors),
            len(table),
        )
        return Codebook(header=header, source=source, target=target, weights=weights)

    @staticmethod
    def _aggregate(
        table: MappingTable,
        groups: list[np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        dim = vector_dimension(table.lsf_order)
        source = np.zeros((len(groups), dim), dtype=np.float64)
        target = np.zeros((len(groups), dim), dtype=np.float64)
        weights = np.zeros(len(groups), dtype=np.float64)
        for index, rows in enumerate(groups):
            row_weights = table.weights[rows]
            source[index] = _mean_vector(table.source[rows], row_weights, table.lsf_order)
            target[index] = _mean_vector(table.target[rows], row_weights, table.lsf_order)
            weights[index] = float(np.sum(row_weights))
        return source, target, weights

    @staticmethod
    def _label_groups(table: MappingTable) -> list[np.ndarray]:
        return _groups_in_order(np.column_stack([table.item_index, table.label_index]))

    @staticmethod
    def _category_groups(table: MappingTable, neighbours: int) -> list[np.ndarray]:
        groups: list[np.ndarray] = []
        for item_rows in _groups_in_order(table.item_index[:, np.newaxis]):
            label_index = table.label_index[item_rows]
            category = table.label_category[item_rows]
            for label_rows in _groups_in_order(label_index[:, np.newaxis]):
                center = label_index[label_rows[0]]
                members = (
                    (np.abs(label_index - center) <= neighbours)
                    & (category == category[label_rows[0]])
                )
                groups.append(item_rows[members])
        return groups


def _pitch_statistics(f0: np.ndarray) -> PitchStatistics:
    if f0.size == 0:
        return PitchStatistics(mean_hz=0.0, std_hz=0.0, mean_log=0.0, std_log=0.0, voiced_count=0)
    log_f0 = np.log(f0)
    return PitchStatistics(
        mean_hz=float(np.mean(f0)),
        std_hz=float(np.std(f0)),
        mean_log=float(np.mean(log_f0)),
        std_log=float(np.std(log_f0)),
        voiced_count=int(f0.size),
    )


def build_pitch_mapping(table: MappingTable) -> PitchMapping:
    """Global F0 statistics and voiced F0 pairs of the given frame mappings."""
    source_f0 = table.channel("f0", "source")[:, 0]
    target_f0 = table.channel("f0", "target")[:, 0]
    voiced = (source_f0 > 0.0) & (target_f0 > 0.0)
    return PitchMapping(
        source=_pitch_statistics(source_f0[voiced]),
        target=_pitch_statistics(target_f0[voiced]),
        source_f0=source_f0[voiced],
        target_f0=target_f0[voiced],
    )

from __future__ import annotations

import logging

import numpy as np
from scipy import ndimage

from .config import AggregationMode, CodebookTrainerConfig
from .constants import (
    CATEGORY_CONSONANT,
    CATEGORY_NONE,
    CATEGORY_SILENCE,
    CATEGORY_VOWEL,
    SILENCE_LABELS,
    VOWEL_LABELS,
)
from .errors import ItemError
from .mapping import IndexMap
from .types import AdaptationSet, ItemFeatures, MappingTable, TrainingItem

logger = logging.getLogger(__name__)


def label_category(label: str) -> int:
    name = label.strip()
    if name in SILENCE_LABELS or name.lower() in SILENCE_LABELS:
        return CATEGORY_SILENCE
    base = name.rstrip("0123456789")
    if base in VOWEL_LABELS or base.lower() in VOWEL_LABELS:
        return CATEGORY_VOWEL
    return CATEGORY_CONSONANT


def neighbourhood_average(features: ItemFeatures, size: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Centered moving average over ``size`` frames; F0 is averaged over voiced frames only."""
    if size <= 1:
        return features.lsfs.copy(), features.f0.copy(), features.energy.copy()

    lsfs = ndimage.uniform_filter1d(features.lsfs, size=size, axis=0, mode="nearest")
    energy = ndimage.uniform_filter1d(features.energy, size=size, mode="nearest")

    voiced = features.f0 > 0.0
    f0_mean = ndimage.uniform_filter1d(np.where(voiced, features.f0, 0.0), size=size, mode="nearest")
    voiced_share = ndimage.uniform_filter1d(voiced.astype(np.float64), size=size, mode="nearest")
    f0 = np.zeros_like(features.f0)
    f0[voiced] = f0_mean[voiced] / voiced_share[voiced]
    return lsfs, f0, energy


def _pack(lsfs: np.ndarray, f0: np.ndarray, energy: np.ndarray, duration: np.ndarray) -> np.ndarray:
    return np.column_stack([lsfs, f0, energy, duration]).astype(np.float64)


class FeatureAligner:
    def __init__(self, config: CodebookTrainerConfig):
        self.config = config

    def align_all(self, source_set: AdaptationSet, target_set: AdaptationSet, index_map: IndexMap) -> MappingTable:
        pairs = index_map.matched_pairs()
        lsf_order = source_set[pairs[0][0]].features.lsf_order if pairs else self.config.features.lsf.lp_order

        tables: list[MappingTable] = []
        for source_index, target_index in pairs:
            source = source_set[source_index]
            target = target_set[target_index]
            orders = {source.features.lsf_order, target.features.lsf_order}
            if orders != {lsf_order}:
                logger.warning("skipping %s", ItemError(source.path, f"LSF order {sorted(orders)} != {lsf_order}"))
                continue
            table = self.align(source, target, source_index)
            if len(table) == 0:
                logger.warning("skipping %s", ItemError(source.path, "no aligned frames"))
                continue
            tables.append(table)

        aligned = MappingTable.concatenate(tables, lsf_order)
        logger.info("aligned %d frame mappings from %d item pairs", len(aligned), len(tables))
        return aligned

    def align(self, source: TrainingItem, target: TrainingItem, item_index: int) -> MappingTable:
        if self.config.aggregation_mode.uses_labels:
            return self._align_labels(source, target, item_index)
        return self._align_frames(source, target, item_index)

    def _align_frames(self, source: TrainingItem, target: TrainingItem, item_index: int) -> MappingTable:
        size = self.config.frame_group_size if self.config.aggregation_mode is AggregationMode.FRAME_GROUPS else 1
        src_lsfs, src_f0, src_energy = neighbourhood_average(source.features, size)
        tgt_lsfs, tgt_f0, tgt_energy = neighbourhood_average(target.features, size)

        count = min(source.features.frame_count, target.features.frame_count)
        source_vectors = _pack(
            src_lsfs[:count],
            src_f0[:count],
            src_energy[:count],
            np.full(count, source.features.skip_size),
        )
        target_vectors = _pack(
            tgt_lsfs[:count],
            tgt_f0[:count],
            tgt_energy[:count],
            np.full(count, target.features.skip_size),
        )
        return MappingTable(
            source=source_vectors,
            target=target_vectors,
            weights=np.ones(count),
            item_index=np.full(count, item_index),
            frame_index=np.arange(count),
            label_index=np.full(count, -1),
            label_category=np.full(count, CATEGORY_NONE),
            lsf_order=source.features.lsf_order,
        )

    def _align_labels(self, source: TrainingItem, target: TrainingItem, item_index: int) -> MappingTable:
        lsf_order = source.features.lsf_order
        count = min(len(source.labels), len(target.labels))
        if len(source.labels) != len(target.labels):
            logger.warning(
                "%s has %d labels but %s has %d; pairing the first %d",
                source.name,
                len(source.labels),
                target.name,
                len(target.labels),
                count,
            )

        rows: list[MappingTable] = []
        for label_index in range(count):
            source_label = source.labels[label_index]
            target_label = target.labels[label_index]
            if source_label.label != target_label.label:
                logger.debug(
                    "%s label %d differs (%r vs %r), skipped",
                    source.name,
                    label_index,
                    source_label.label,
                    target_label.label,
                )
                continue

            times = source.features.frame_times
            source_frames = np.flatnonzero((times >= source_label.start) & (times < source_label.end))
            times = target.features.frame_times
            target_frames = np.flatnonzero((times >= target_label.start) & (times < target_label.end))
            pairs = min(source_frames.size, target_frames.size)
            if pairs == 0:
                continue
            source_frames = source_frames[np.rint(np.linspace(0, source_frames.size - 1, pairs)).astype(np.int64)]
            target_frames = target_frames[np.rint(np.linspace(0, target_frames.size - 1, pairs)).astype(np.int64)]

            src = source.features
            tgt = target.features
            rows.append(
                MappingTable(
                    source=_pack(
                        src.lsfs[source_frames],
                        src.f0[source_frames],
                        src.energy[source_frames],
                        np.full(pairs, source_label.duration),
                    ),
                    target=_pack(
                        tgt.lsfs[target_frames],
                        tgt.f0[target_frames],
                        tgt.energy[target_frames],
                        np.full(pairs, target_label.duration),
                    ),
                    weights=np.ones(pairs),
                    item_index=np.full(pairs, item_index),
                    frame_index=source_frames,
                    label_index=np.full(pairs, label_index),
                    label_category=np.full(pairs, label_category(source_label.label)),
                    lsf_order=lsf_order,
                )
            )
        return MappingTable.concatenate(rows, lsf_order)

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .config import (
    AggregationMode,
    CodebookTrainerConfig,
    DistanceMetric,
    GaussianEliminatorParams,
    KMeansEliminatorParams,
    KMeansStrategy,
    StandardDeviations,
)
from .errors import ConfigurationError


@dataclass(frozen=True)
class StylePairPreset:
    source_style: str
    target_style: str
    source_tag: str
    target_tag: str
    training_subset: str = "train_200"
    file_suffix: str = "_200"

    @property
    def name(self) -> str:
        return f"{self.source_style}2{self.target_style}"

    def source_folder(self, corpus_root: Path) -> Path:
        return Path(corpus_root) / self.source_style / self.training_subset

    def target_folder(self, corpus_root: Path) -> Path:
        return Path(corpus_root) / self.target_style / self.training_subset

    def output_folder(self, output_root: Path) -> Path:
        return Path(output_root) / self.name


STYLE_PAIR_PRESETS: dict[str, StylePairPreset] = {
    preset.name: preset
    for preset in (
        StylePairPreset(source_style="neutral", target_style="angry", source_tag="neutralF", target_tag="angryF"),
        StylePairPreset(source_style="neutral", target_style="happy", source_tag="neutralF", target_tag="happyF"),
        StylePairPreset(source_style="neutral", target_style="sad", source_tag="neutralF", target_tag="sadF"),
    )
}


def shared_settings() -> dict[str, Any]:
    """Training settings common to every style-pair preset."""
    return {
        "aggregation_mode": AggregationMode.FRAMES,
        "forced_analysis": False,
        "gaussian": GaussianEliminatorParams(
            active=True,
            check_lsf=True,
            check_f0=True,
            check_energy=True,
            check_duration=True,
            eliminate_too_similar_lsf=True,
            deviations=StandardDeviations(lsf=1.5, f0=1.0, energy=2.0, duration=1.0),
        ),
        "kmeans": KMeansEliminatorParams(
            active=True,
            strategy=KMeansStrategy.MEAN_DISTANCE_MISMATCH,
            distance_metric=DistanceMetric.NORMALIZED_EUCLIDEAN,
            global_variance=True,
            separate_clustering=False,
            num_clusters=30,
            num_clusters_lsf=30,
            num_clusters_f0=50,
            num_clusters_energy=5,
            num_clusters_duration=5,
            check_lsf=True,
            deviations=StandardDeviations(lsf=1.0, f0=1.0, energy=1.0, duration=1.0, general=0.1),
        ),
    }


def available_presets() -> list[str]:
    return sorted(STYLE_PAIR_PRESETS)


def get_preset(name: str) -> StylePairPreset:
    try:
        return STYLE_PAIR_PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown style-pair preset {name!r}; available: {', '.join(available_presets())}"
        ) from None


def build_preset_config(
    name: str,
    corpus_root: Path,
    output_root: Path,
    **overrides: Any,
) -> CodebookTrainerConfig:
    preset = get_preset(name)
    settings = {
        **shared_settings(),
        "source_tag": preset.source_tag,
        "target_tag": preset.target_tag,
        "file_suffix": preset.file_suffix,
        **overrides,
    }
    return CodebookTrainerConfig.default(
        source_folder=preset.source_folder(corpus_root),
        target_folder=preset.target_folder(corpus_root),
        output_folder=preset.output_folder(output_root),
        **settings,
    )


def export_preset_json(
    output_path: Path,
    config: CodebookTrainerConfig,
    metadata: Mapping[str, str] | None = None,
) -> Path:
    payload = {
        "format_version": 1,
        "created_at_utc": datetime.now(timezone.utc).isoformat(),
        "codebook_path": str(config.codebook_path),
        "pitch_mapping_path": str(config.pitch_mapping_path),
        "parameters": config.parameter_snapshot(),
        "metadata": dict(metadata or {}),
    }

    output_path = output_path.expanduser().resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return output_path

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .constants import (
    CHANNEL_KEYS,
    DEFAULT_CODEBOOK_EXTENSION,
    DEFAULT_LABEL_EXTENSION,
    DEFAULT_PITCH_MAPPING_EXTENSION,
)
from .errors import ConfigurationError

WINDOW_TYPES: tuple[str, ...] = ("hamming", "hann", "blackman", "bartlett", "boxcar")


class AggregationMode(str, Enum):
    FRAMES = "frames"
    FRAME_GROUPS = "frame_groups"
    LABELS = "labels"
    LABEL_GROUPS = "label_groups"
    SPEECH = "speech"

    @property
    def uses_labels(self) -> bool:
        return self in (AggregationMode.LABELS, AggregationMode.LABEL_GROUPS)

    @property
    def code(self) -> int:
        return list(AggregationMode).index(self)

    @classmethod
    def from_code(cls, code: int) -> "AggregationMode":
        members = list(cls)
        if not 0 <= code < len(members):
            raise ValueError(f"unknown aggregation mode code: {code}")
        return members[code]


class KMeansStrategy(str, Enum):
    LEAST_LIKELY = "least_likely"
    MEAN_DISTANCE_MISMATCH = "mean_distance_mismatch"
    SUBCLUSTER_MEAN_DISTANCE = "subcluster_mean_distance"


class DistanceMetric(str, Enum):
    EUCLIDEAN = "euclidean"
    NORMALIZED_EUCLIDEAN = "normalized_euclidean"


class PairingRule(str, Enum):
    EXACT = "exact"
    CASEFOLD = "casefold"


def _coerce_enum(enum_type: type[Enum], value: Any, field_name: str) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"invalid {field_name} {value!r}; expected one of: {choices}") from None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class LsfParams:
    lp_order: int = 20
    pre_coef: float = 0.97
    window_size: float = 0.020
    skip_size: float = 0.010
    window_type: str = "hamming"


@dataclass(frozen=True)
class PitchParams:
    window_size: float = 0.040
    skip_size: float = 0.005
    voicing_threshold: float = 0.30
    min_f0: float = 40.0
    max_f0: float = 400.0
    doubling_check: bool = False
    halving_check: bool = False
    center_clipping_ratio: float = 0.3


@dataclass(frozen=True)
class EnergyParams:
    window_size: float = 0.020
    skip_size: float = 0.010


@dataclass(frozen=True)
class FeatureParams:
    lsf: LsfParams = field(default_factory=LsfParams)
    pitch: PitchParams = field(default_factory=PitchParams)
    energy: EnergyParams = field(default_factory=EnergyParams)

    def fingerprint(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]

    def validate(self) -> None:
        if self.lsf.lp_order < 2:
            raise ConfigurationError(f"lp_order must be >= 2, got {self.lsf.lp_order}")
        if not 0.0 <= self.lsf.pre_coef < 1.0:
            raise ConfigurationError(f"pre_coef must be in [0, 1), got {self.lsf.pre_coef}")
        if self.lsf.window_type not in WINDOW_TYPES:
            raise ConfigurationError(f"unsupported window type {self.lsf.window_type!r}")
        for name, size in (
            ("lsf.window_size", self.lsf.window_size),
            ("lsf.skip_size", self.lsf.skip_size),
            ("pitch.window_size", self.pitch.window_size),
            ("pitch.skip_size", self.pitch.skip_size),
            ("energy.window_size", self.energy.window_size),
            ("energy.skip_size", self.energy.skip_size),
        ):
            if size <= 0.0:
                raise ConfigurationError(f"{name} must be positive, got {size}")
        if not 0.0 < self.pitch.min_f0 < self.pitch.max_f0:
            raise ConfigurationError(
                f"pitch range must satisfy 0 < min_f0 < max_f0, got [{self.pitch.min_f0}, {self.pitch.max_f0}]"
            )
        if not 0.0 <= self.pitch.voicing_threshold <= 1.0:
            raise ConfigurationError(f"voicing_threshold must be in [0, 1], got {self.pitch.voicing_threshold}")
        if not 0.0 <= self.pitch.center_clipping_ratio < 1.0:
            raise ConfigurationError(
                f"center_clipping_ratio must be in [0, 1), got {self.pitch.center_clipping_ratio}"
            )


@dataclass(frozen=True)
class StandardDeviations:
    lsf: float = 1.0
    f0: float = 1.0
    energy: float = 1.0
    duration: float = 1.0
    general: float = 1.0

    def for_channel(self, channel: str | None) -> float:
        if channel is None:
            return float(self.general)
        return float(getattr(self, channel))


def _gaussian_deviations() -> StandardDeviations:
    return StandardDeviations(lsf=1.5, f0=1.0, energy=2.0, duration=1.0, general=1.0)


def _kmeans_deviations() -> StandardDeviations:
    return StandardDeviations(lsf=1.0, f0=1.0, energy=1.0, duration=1.0, general=0.1)


@dataclass(frozen=True)
class GaussianEliminatorParams:
    active: bool = True
    check_lsf: bool = True
    check_f0: bool = True
    check_energy: bool = True
    check_duration: bool = True
    eliminate_too_similar_lsf: bool = True
    too_similar_threshold: float = 1.0e-3
    deviations: StandardDeviations = field(default_factory=_gaussian_deviations)

    def enabled_channels(self) -> tuple[str, ...]:
        return tuple(channel for channel in CHANNEL_KEYS if getattr(self, f"check_{channel}"))

    def validate(self) -> None:
        for channel in self.enabled_channels():
            if self.deviations.for_channel(channel) <= 0.0:
                raise ConfigurationError(f"gaussian deviation multiplier for {channel} must be positive")
        if self.too_similar_threshold < 0.0:
            raise ConfigurationError("too_similar_threshold must be >= 0")


@dataclass(frozen=True)
class KMeansEliminatorParams:
    active: bool = True
    strategy: KMeansStrategy = KMeansStrategy.MEAN_DISTANCE_MISMATCH
    distance_metric: DistanceMetric = DistanceMetric.NORMALIZED_EUCLIDEAN
    global_variance: bool = True
    separate_clustering: bool = False
    num_clusters: int = 30
    num_clusters_lsf: int = 30
    num_clusters_f0: int = 50
    num_clusters_energy: int = 5
    num_clusters_duration: int = 5
    check_lsf: bool = True
    check_f0: bool = False
    check_energy: bool = False
    check_duration: bool = False
    deviations: StandardDeviations = field(default_factory=_kmeans_deviations)
    elimination_likelihood: float = 0.20
    subcluster_count: int = 2
    subcluster_depth: int = 1
    min_subcluster_size: int = 10
    n_init: int = 4
    max_iter: int = 300

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", _coerce_enum(KMeansStrategy, self.strategy, "kmeans strategy"))
        object.__setattr__(
            self,
            "distance_metric",
            _coerce_enum(DistanceMetric, self.distance_metric, "distance metric"),
        )

    def enabled_channels(self) -> tuple[str, ...]:
        return tuple(channel for channel in CHANNEL_KEYS if getattr(self, f"check_{channel}"))

    def clusters_for(self, channel: str | None) -> int:
        if channel is None:
            return int(self.num_clusters)
        return int(getattr(self, f"num_clusters_{channel}"))

    def tolerance_for(self, channel: str | None) -> float:
        return self.deviations.for_channel(channel)

    def validate(self) -> None:
        if not self.active:
            return
        channels = self.enabled_channels()
        if not channels:
            raise ConfigurationError("kmeans eliminator is active but no channel is enabled")
        groups = channels if self.separate_clustering else (None,)
        for channel in groups:
            if self.clusters_for(channel) < 1:
                raise ConfigurationError(f"cluster count for {channel or 'joint'} clustering must be >= 1")
            if self.tolerance_for(channel) < 0.0:
                raise ConfigurationError(f"kmeans tolerance for {channel or 'joint'} clustering must be >= 0")
        if not 0.0 <= self.elimination_likelihood < 1.0:
            raise ConfigurationError(
                f"elimination_likelihood must be in [0, 1), got {self.elimination_likelihood}"
            )
        if self.subcluster_count < 2:
            raise ConfigurationError("subcluster_count must be >= 2")
        if self.subcluster_depth < 1:
            raise ConfigurationError("subcluster_depth must be >= 1")
        if self.n_init < 1 or self.max_iter < 1:
            raise ConfigurationError("n_init and max_iter must be >= 1")


@dataclass(frozen=True)
class CodebookTrainerConfig:
    source_folder: Path
    target_folder: Path
    output_folder: Path
    source_tag: str = "source"
    target_tag: str = "target"
    aggregation_mode: AggregationMode = AggregationMode.FRAMES
    frame_group_size: int = 3
    label_group_neighbours: int = 1
    pairing_rule: PairingRule = PairingRule.EXACT
    features: FeatureParams = field(default_factory=FeatureParams)
    gaussian: GaussianEliminatorParams = field(default_factory=GaussianEliminatorParams)
    kmeans: KMeansEliminatorParams = field(default_factory=KMeansEliminatorParams)
    codebook_extension: str = DEFAULT_CODEBOOK_EXTENSION
    pitch_mapping_extension: str = DEFAULT_PITCH_MAPPING_EXTENSION
    label_extension: str = DEFAULT_LABEL_EXTENSION
    file_suffix: str = ""
    forced_analysis: bool = False
    cache_dir: Path | None = None
    n_jobs: int = 1
    random_seed: int = 1337

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_folder", Path(self.source_folder))
        object.__setattr__(self, "target_folder", Path(self.target_folder))
        object.__setattr__(self, "output_folder", Path(self.output_folder))
        if self.cache_dir is not None:
            object.__setattr__(self, "cache_dir", Path(self.cache_dir))
        object.__setattr__(
            self,
            "aggregation_mode",
            _coerce_enum(AggregationMode, self.aggregation_mode, "aggregation mode"),
        )
        object.__setattr__(self, "pairing_rule", _coerce_enum(PairingRule, self.pairing_rule, "pairing rule"))

    @classmethod
    def default(
        cls,
        source_folder: Path,
        target_folder: Path,
        output_folder: Path,
        **overrides: Any,
    ) -> "CodebookTrainerConfig":
        return cls(
            source_folder=Path(source_folder).expanduser().resolve(),
            target_folder=Path(target_folder).expanduser().resolve(),
            output_folder=Path(output_folder).expanduser().resolve(),
            **overrides,
        )

    @property
    def base_name(self) -> str:
        return f"{self.source_tag}_X_{self.target_tag}{self.file_suffix}"

    @property
    def codebook_path(self) -> Path:
        return self.output_folder / f"{self.base_name}{self.codebook_extension}"

    @property
    def pitch_mapping_path(self) -> Path:
        return self.output_folder / f"{self.base_name}{self.pitch_mapping_extension}"

    @property
    def feature_cache_dir(self) -> Path:
        if self.cache_dir is not None:
            return self.cache_dir
        return self.output_folder / "cache"

    @property
    def ledger_path(self) -> Path:
        return self.feature_cache_dir / "training.duckdb"

    def ensure_directories(self) -> None:
        self.output_folder.mkdir(parents=True, exist_ok=True)
        self.feature_cache_dir.mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        for side, folder in (("source", self.source_folder), ("target", self.target_folder)):
            if not folder.is_dir():
                raise ConfigurationError(f"{side} training folder not found: {folder}")
        if not self.source_tag or not self.target_tag:
            raise ConfigurationError("source_tag and target_tag must be non-empty")
        if self.frame_group_size < 1 or self.frame_group_size % 2 == 0:
            raise ConfigurationError(f"frame_group_size must be a positive odd number, got {self.frame_group_size}")
        if self.label_group_neighbours < 0:
            raise ConfigurationError("label_group_neighbours must be >= 0")
        for name in ("codebook_extension", "pitch_mapping_extension", "label_extension"):
            value = getattr(self, name)
            if not value.startswith(".") or len(value) < 2:
                raise ConfigurationError(f"{name} must look like '.ext', got {value!r}")
        if self.codebook_extension == self.pitch_mapping_extension:
            raise ConfigurationError("codebook and pitch mapping extensions must differ")
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero")
        self.features.validate()
        self.gaussian.validate()
        self.kmeans.validate()

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    def parameter_snapshot(self) -> dict[str, Any]:
        """Training parameters without filesystem locations or worker counts."""
        snapshot = self.to_dict()
        for key in ("source_folder", "target_folder", "output_folder", "cache_dir", "n_jobs", "forced_analysis"):
            snapshot.pop(key, None)
        return snapshot

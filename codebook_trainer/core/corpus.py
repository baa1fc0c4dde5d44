from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from joblib import Parallel, delayed
from tqdm import tqdm

from .config import CodebookTrainerConfig
from .constants import AUDIO_FILE_EXTENSIONS
from .errors import ConfigurationError, ItemError
from .features import FeatureExtractor, ReferenceFeatureExtractor
from .storage import FeatureCache
from .types import AdaptationSet, ItemFeatures, LabelSpan, TrainingItem

logger = logging.getLogger(__name__)


def read_label_file(label_path: Path) -> tuple[LabelSpan, ...]:
    """Parse an Xwaves-style label file into consecutive spans.

    Each body line holds ``end_time [color] label``; a span starts where the
    previous one ended. Lines before a ``#`` separator form the header.
    """
    lines = Path(label_path).read_text(encoding="utf-8").splitlines()
    stripped = [line.strip() for line in lines]
    if "#" in stripped:
        lines = lines[stripped.index("#") + 1 :]

    spans: list[LabelSpan] = []
    start = 0.0
    for line_number, line in enumerate(lines, start=1):
        fields = line.split()
        if not fields:
            continue
        if len(fields) < 2:
            raise ValueError(f"{label_path}:{line_number}: expected 'end_time [color] label'")
        end = float(fields[0])
        if end < start:
            raise ValueError(f"{label_path}:{line_number}: label end {end} precedes start {start}")
        spans.append(LabelSpan(start=start, end=end, label=fields[-1]))
        start = end
    return tuple(spans)


def _extract_one(extractor: FeatureExtractor, audio_path: Path) -> ItemFeatures | ItemError:
    try:
        features = extractor.extract(audio_path)
    except (OSError, RuntimeError, ValueError) as exc:
        return ItemError(audio_path, f"feature extraction failed: {exc}")
    if features.frame_count == 0:
        return ItemError(audio_path, "no analysis frames")
    return features


@dataclass
class LoadReport:
    loaded: list[str] = field(default_factory=list)
    skipped: list[ItemError] = field(default_factory=list)
    cache_hits: int = 0
    extracted: int = 0


class CorpusLoader:
    def __init__(
        self,
        config: CodebookTrainerConfig,
        extractor: FeatureExtractor | None = None,
        cache: FeatureCache | None = None,
        show_progress: bool = False,
    ):
        self.config = config
        self.extractor = extractor or ReferenceFeatureExtractor(config.features)
        self.cache = cache
        self.show_progress = show_progress

    @staticmethod
    def discover(folder: Path) -> list[Path]:
        folder = Path(folder).expanduser().resolve()
        if not folder.is_dir():
            raise ConfigurationError(f"training folder not found: {folder}")
        paths = sorted(
            path for path in folder.iterdir() if path.is_file() and path.suffix.lower() in AUDIO_FILE_EXTENSIONS
        )
        if not paths:
            raise ConfigurationError(f"no recordings found in training folder: {folder}")
        return paths

    def load(self, folder: Path, report: LoadReport | None = None) -> AdaptationSet:
        report = report if report is not None else LoadReport()
        paths = self.discover(folder)
        outcomes = self._extract_all(paths, report)

        items: list[TrainingItem] = []
        for path in paths:
            outcome = outcomes[path]
            try:
                if isinstance(outcome, ItemError):
                    raise outcome
                labels = self._read_labels(path) if self.config.aggregation_mode.uses_labels else ()
            except ItemError as exc:
                logger.warning("skipping %s", exc)
                report.skipped.append(exc)
                continue
            items.append(TrainingItem(name=path.stem, path=path, features=outcome, labels=labels))
            report.loaded.append(path.stem)

        if not items:
            raise ConfigurationError(f"no usable recordings in training folder: {folder}")
        logger.info("loaded %d/%d recordings from %s", len(items), len(paths), folder)
        return AdaptationSet(items, folder=Path(folder))

    def _read_labels(self, audio_path: Path) -> tuple[LabelSpan, ...]:
        label_path = audio_path.with_suffix(self.config.label_extension)
        if not label_path.is_file():
            raise ItemError(audio_path, f"missing label file {label_path.name}")
        try:
            labels = read_label_file(label_path)
        except (OSError, ValueError) as exc:
            raise ItemError(audio_path, f"unreadable label file: {exc}") from exc
        if not labels:
            raise ItemError(audio_path, f"label file {label_path.name} has no labels")
        return labels

    def _extract_all(self, paths: list[Path], report: LoadReport) -> dict[Path, ItemFeatures | ItemError]:
        params_hash = self.config.features.fingerprint()
        outcomes: dict[Path, ItemFeatures | ItemError] = {}
        pending: list[Path] = []

        for path in paths:
            cached = None
            if self.cache is not None and not self.config.forced_analysis:
                cached = self.cache.lookup(path, params_hash)
            if cached is None:
                pending.append(path)
            else:
                outcomes[path] = cached
                report.cache_hits += 1

        if pending:
            results = Parallel(n_jobs=self.config.n_jobs)(
                delayed(_extract_one)(self.extractor, path)
                for path in tqdm(pending, desc="features", disable=not self.show_progress)
            )
            for path, outcome in zip(pending, results):
                if isinstance(outcome, ItemFeatures):
                    report.extracted += 1
                    if self.cache is not None:
                        self.cache.store(path, params_hash, outcome)
                outcomes[path] = outcome

        logger.debug("features: %d cached, %d extracted", report.cache_hits, len(pending))
        return outcomes

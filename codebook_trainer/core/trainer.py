from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import numpy as np

from .alignment import FeatureAligner
from .codebook import CodebookBuilder, build_pitch_mapping
from .config import CodebookTrainerConfig
from .corpus import CorpusLoader, LoadReport
from .elimination import OutlierEliminationPipeline
from .errors import ItemError
from .features import FeatureExtractor
from .mapping import IndexMap, IndexMapper
from .persistence import write_codebook, write_pitch_mapping
from .storage import FeatureCache
from .types import AdaptationSet, Codebook, PitchMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingResult:
    codebook: Codebook
    pitch_mapping: PitchMapping
    index_map: IndexMap
    codebook_path: Path
    pitch_mapping_path: Path
    skipped: tuple[ItemError, ...] = ()
    cache_hits: int = 0


class CodebookTrainer:
    """Parallel-corpus codebook training from two style folders."""

    def __init__(
        self,
        config: CodebookTrainerConfig,
        extractor: FeatureExtractor | None = None,
        cache: FeatureCache | None = None,
        use_cache: bool = True,
        show_progress: bool = False,
    ):
        self.config = config
        self.extractor = extractor
        self.cache = cache
        self.use_cache = use_cache
        self.show_progress = show_progress

    def run(self) -> TrainingResult:
        config = self.config
        config.validate()
        CorpusLoader.discover(config.source_folder)
        CorpusLoader.discover(config.target_folder)
        config.ensure_directories()

        cache = self.cache
        if cache is None and self.use_cache:
            cache = FeatureCache(config.feature_cache_dir, config.ledger_path)

        loader = CorpusLoader(config, self.extractor, cache, show_progress=self.show_progress)
        report = LoadReport()
        source_set = loader.load(config.source_folder, report)
        target_set = loader.load(config.target_folder, report)
        return self.train(source_set, target_set, report=report, cache=cache)

    def train(
        self,
        source_set: AdaptationSet,
        target_set: AdaptationSet,
        report: LoadReport | None = None,
        cache: FeatureCache | None = None,
    ) -> TrainingResult:
        config = self.config
        report = report if report is not None else LoadReport()

        index_map = IndexMapper(config.pairing_rule).build(source_set, target_set)
        table = FeatureAligner(config).align_all(source_set, target_set, index_map)
        elimination = OutlierEliminationPipeline.from_config(config).run(table)

        total_items = int(np.unique(table.item_index).size)
        codebook = CodebookBuilder(config).build(table, elimination, total_items=total_items)
        pitch_mapping = build_pitch_mapping(table.subset(elimination.keep))

        codebook_path = write_codebook(config.codebook_path, codebook)
        pitch_mapping_path = write_pitch_mapping(config.pitch_mapping_path, pitch_mapping)

        if cache is not None:
            run_id = datetime.now().strftime(f"{config.base_name}_%Y%m%d_%H%M%S_%f")
            cache.record_run(run_id, codebook.header, codebook_path)

        skipped = list(report.skipped)
        skipped.extend(ItemError(name, "no target recording with a matching name") for name in index_map.unmatched)
        logger.info(
            "training finished: %d entries, %d items skipped, %d cache hits",
            len(codebook),
            len(skipped),
            report.cache_hits,
        )
        return TrainingResult(
            codebook=codebook,
            pitch_mapping=pitch_mapping,
            index_map=index_map,
            codebook_path=codebook_path,
            pitch_mapping_path=pitch_mapping_path,
            skipped=tuple(skipped),
            cache_hits=report.cache_hits,
        )

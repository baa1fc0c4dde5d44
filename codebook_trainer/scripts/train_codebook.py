from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path

from codebook_trainer.core.config import AggregationMode, KMeansStrategy
from codebook_trainer.core.errors import ConfigurationError
from codebook_trainer.core.presets import available_presets, build_preset_config, export_preset_json
from codebook_trainer.core.trainer import CodebookTrainer

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a weighted codebook from a parallel style corpus.")
    parser.add_argument("presets", nargs="*", help=f"style-pair presets to train ({', '.join(available_presets())})")
    parser.add_argument("--corpus-root", type=Path, default=Path("corpus"), help="Folder holding <style>/<subset> recordings")
    parser.add_argument("--output-root", type=Path, default=Path("codebooks"), help="Folder receiving one subfolder per style pair")
    parser.add_argument("--mode", choices=[mode.value for mode in AggregationMode], default=None, help="Aggregation mode")
    parser.add_argument("--strategy", choices=[item.value for item in KMeansStrategy], default=None, help="K-means strategy")
    parser.add_argument("--no-gaussian", action="store_true", help="Disable the Gaussian elimination stage")
    parser.add_argument("--no-kmeans", action="store_true", help="Disable the K-means elimination stage")
    parser.add_argument("--forced-analysis", action="store_true", help="Ignore cached features and re-extract")
    parser.add_argument("--n-jobs", type=int, default=1, help="Feature extraction workers")
    parser.add_argument("--seed", type=int, default=1337, help="Random seed for clustering")
    parser.add_argument("--export-json", action="store_true", help="Write the parameter snapshot next to the codebook")
    parser.add_argument("--list-presets", action="store_true", help="List available presets and exit")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)

    if args.list_presets or not args.presets:
        print("\n".join(available_presets()))
        return 0

    for name in args.presets:
        print(f"== {name} ==")
        try:
            config = build_preset_config(
                name,
                corpus_root=args.corpus_root,
                output_root=args.output_root,
                forced_analysis=args.forced_analysis,
                n_jobs=args.n_jobs,
                random_seed=args.seed,
            )
            changes = {}
            if args.mode is not None:
                changes["aggregation_mode"] = AggregationMode(args.mode)
            if args.no_gaussian:
                changes["gaussian"] = dataclasses.replace(config.gaussian, active=False)
            kmeans = config.kmeans
            if args.strategy is not None:
                kmeans = dataclasses.replace(kmeans, strategy=KMeansStrategy(args.strategy))
            if args.no_kmeans:
                kmeans = dataclasses.replace(kmeans, active=False)
            changes["kmeans"] = kmeans
            config = dataclasses.replace(config, **changes)

            result = CodebookTrainer(config, show_progress=True).run()
        except ConfigurationError as exc:
            logger.error("%s: %s", name, exc)
            return 2

        if args.export_json:
            export_preset_json(config.codebook_path.with_suffix(".json"), config, metadata={"preset": name})

        print(
            {
                "codebook_path": str(result.codebook_path),
                "pitch_mapping_path": str(result.pitch_mapping_path),
                "entries": len(result.codebook),
                "skipped": len(result.skipped),
                "cache_hits": result.cache_hits,
                "elimination": [
                    {"stage": stage.name, "in": stage.input_count, "eliminated": stage.eliminated}
                    for stage in result.codebook.header.elimination
                ],
            }
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(run())

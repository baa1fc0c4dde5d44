from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

import duckdb
import joblib
import pandas as pd

from .types import CodebookHeader, ItemFeatures

logger = logging.getLogger(__name__)


class FeatureCache:
    """Content-addressed store of extracted item features.

    Entries are keyed by the resolved recording path, its modification state and
    the feature-parameter fingerprint. Feature arrays live in joblib files next to
    a duckdb index that also keeps a ledger of finished training runs.
    """

    def __init__(self, cache_dir: Path, db_path: Path | None = None):
        self.cache_dir = Path(cache_dir).expanduser().resolve()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path if db_path is not None else self.cache_dir / "training.duckdb"
        self._initialize_schema()

    def _connect(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(str(self.db_path))

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS feature_cache (
                    item_key VARCHAR PRIMARY KEY,
                    path VARCHAR NOT NULL,
                    mtime_ns BIGINT,
                    size_bytes BIGINT,
                    params_hash VARCHAR,
                    artifact_path VARCHAR,
                    frame_count INTEGER,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS training_runs (
                    run_id VARCHAR PRIMARY KEY,
                    source_tag VARCHAR,
                    target_tag VARCHAR,
                    aggregation_mode VARCHAR,
                    total_items INTEGER,
                    total_mappings INTEGER,
                    total_entries INTEGER,
                    elimination_json VARCHAR,
                    codebook_path VARCHAR,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

    @staticmethod
    def make_item_key(audio_path: Path, params_hash: str) -> str:
        audio_path = Path(audio_path).expanduser().resolve()
        stat = audio_path.stat()
        normalized = f"{audio_path}|{stat.st_mtime_ns}|{stat.st_size}|{params_hash}"
        return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:20]

    def lookup(self, audio_path: Path, params_hash: str) -> ItemFeatures | None:
        item_key = self.make_item_key(audio_path, params_hash)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT artifact_path FROM feature_cache WHERE item_key = ?",
                [item_key],
            ).fetchone()
        if row is None:
            return None
        artifact_path = Path(str(row[0]))
        if not artifact_path.exists():
            logger.debug("cache entry %s has no artifact at %s", item_key, artifact_path)
            return None
        try:
            features = joblib.load(str(artifact_path))
        except (OSError, EOFError, ValueError) as exc:
            logger.warning("discarding unreadable cache artifact %s: %s", artifact_path, exc)
            return None
        if not isinstance(features, ItemFeatures):
            return None
        return features

    def store(self, audio_path: Path, params_hash: str, features: ItemFeatures) -> str:
        audio_path = Path(audio_path).expanduser().resolve()
        stat = audio_path.stat()
        item_key = self.make_item_key(audio_path, params_hash)
        artifact_path = self.cache_dir / f"{item_key}.joblib"
        joblib.dump(features, artifact_path)

        with self._connect() as conn:
            conn.execute(
                "DELETE FROM feature_cache WHERE item_key = ? OR (path = ? AND params_hash = ?)",
                [item_key, str(audio_path), params_hash],
            )
            conn.execute(
                """
                INSERT INTO feature_cache (
                    item_key, path, mtime_ns, size_bytes, params_hash, artifact_path, frame_count, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                [
                    item_key,
                    str(audio_path),
                    int(stat.st_mtime_ns),
                    int(stat.st_size),
                    params_hash,
                    str(artifact_path),
                    int(features.frame_count),
                ],
            )
        return item_key

    def list_entries(self) -> pd.DataFrame:
        query = """
            SELECT item_key, path, mtime_ns, size_bytes, params_hash, artifact_path, frame_count, updated_at
            FROM feature_cache
            ORDER BY path ASC
        """
        with self._connect() as conn:
            return conn.execute(query).fetchdf()

    def record_run(self, run_id: str, header: CodebookHeader, codebook_path: Path) -> None:
        elimination = [
            {
                "name": stage.name,
                "input_count": stage.input_count,
                "eliminated": stage.eliminated,
                "clusters": stage.clusters,
            }
            for stage in header.elimination
        ]
        with self._connect() as conn:
            conn.execute("DELETE FROM training_runs WHERE run_id = ?", [run_id])
            conn.execute(
                """
                INSERT INTO training_runs (
                    run_id, source_tag, target_tag, aggregation_mode, total_items, total_mappings,
                    total_entries, elimination_json, codebook_path
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    run_id,
                    header.source_tag,
                    header.target_tag,
                    header.aggregation_mode.value,
                    int(header.total_items),
                    int(header.total_mappings),
                    int(header.total_entries),
                    json.dumps(elimination),
                    str(codebook_path),
                ],
            )

    def list_runs(self) -> pd.DataFrame:
        query = """
            SELECT run_id, source_tag, target_tag, aggregation_mode, total_items, total_mappings,
                   total_entries, elimination_json, codebook_path, created_at
            FROM training_runs
            ORDER BY created_at DESC
        """
        with self._connect() as conn:
            return conn.execute(query).fetchdf()

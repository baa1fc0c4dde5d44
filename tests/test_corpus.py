from __future__ import annotations

import dataclasses

import numpy as np
import pytest
from conftest import FakeExtractor, touch_recordings, write_labels

from codebook_trainer.core.config import AggregationMode, CodebookTrainerConfig
from codebook_trainer.core.corpus import CorpusLoader, LoadReport, read_label_file
from codebook_trainer.core.errors import ConfigurationError
from codebook_trainer.core.storage import FeatureCache
from codebook_trainer.core.types import LabelSpan


def _config(corpus, **overrides) -> CodebookTrainerConfig:
    source, target, output = corpus
    return CodebookTrainerConfig.default(source, target, output, **overrides)


def test_discover_rejects_missing_and_empty_folders(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        CorpusLoader.discover(tmp_path / "missing")

    empty = tmp_path / "empty"
    empty.mkdir()
    (empty / "notes.txt").write_text("not audio", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="no recordings"):
        CorpusLoader.discover(empty)


def test_discover_lists_audio_files_in_name_order(tmp_path):
    touch_recordings(tmp_path, ["b", "a"])
    touch_recordings(tmp_path, ["c"], extension=".FLAC")

    paths = CorpusLoader.discover(tmp_path)

    assert [path.name for path in paths] == ["a.wav", "b.wav", "c.FLAC"]


def test_read_label_file_builds_consecutive_spans(tmp_path):
    path = write_labels(tmp_path / "utt.lab", [(0.12, "_"), (0.3, "a"), (0.45, "t")])

    spans = read_label_file(path)

    assert spans == (
        LabelSpan(0.0, 0.12, "_"),
        LabelSpan(0.12, 0.3, "a"),
        LabelSpan(0.3, 0.45, "t"),
    )


def test_read_label_file_rejects_decreasing_times(tmp_path):
    path = write_labels(tmp_path / "utt.lab", [(0.3, "a"), (0.2, "t")])
    with pytest.raises(ValueError, match="precedes"):
        read_label_file(path)


def test_load_skips_items_that_fail_extraction(corpus):
    source, _, _ = corpus
    touch_recordings(source, ["utt_broken"])
    loader = CorpusLoader(_config(corpus), extractor=FakeExtractor())
    report = LoadReport()

    items = loader.load(source, report)

    assert len(items) == 5
    assert "utt_broken" not in items.names
    assert len(report.skipped) == 1
    assert "cannot decode" in report.skipped[0].reason


def test_label_mode_skips_items_without_label_files(corpus):
    source, _, _ = corpus
    for name in ("utt000", "utt001"):
        write_labels(source / f"{name}.lab", [(0.2, "a"), (0.4, "t")])
    loader = CorpusLoader(_config(corpus, aggregation_mode=AggregationMode.LABELS), extractor=FakeExtractor())
    report = LoadReport()

    items = loader.load(source, report)

    assert items.names == ["utt000", "utt001"]
    assert items[0].labels[1] == LabelSpan(0.2, 0.4, "t")
    assert len(report.skipped) == 3


def test_load_fails_when_nothing_is_usable(tmp_path):
    folder = tmp_path / "neutral"
    touch_recordings(folder, ["a_broken", "b_broken"])
    config = CodebookTrainerConfig.default(folder, folder, tmp_path / "out")

    with pytest.raises(ConfigurationError, match="no usable recordings"):
        CorpusLoader(config, extractor=FakeExtractor()).load(folder)


def test_cached_features_are_reused_until_forced(corpus, tmp_path):
    source, _, _ = corpus
    config = _config(corpus)
    cache = FeatureCache(tmp_path / "cache")
    extractor = FakeExtractor()

    first = LoadReport()
    CorpusLoader(config, extractor=extractor, cache=cache).load(source, first)
    second = LoadReport()
    items = CorpusLoader(config, extractor=extractor, cache=cache).load(source, second)

    assert first.extracted == 5 and first.cache_hits == 0
    assert second.extracted == 0 and second.cache_hits == 5
    assert len(extractor.calls) == 5
    assert items[0].features.frame_count == 40
    assert len(cache.list_entries()) == 5

    forced = LoadReport()
    CorpusLoader(dataclasses.replace(config, forced_analysis=True), extractor=extractor, cache=cache).load(
        source, forced
    )
    assert forced.extracted == 5 and forced.cache_hits == 0
    assert len(extractor.calls) == 10
    assert len(cache.list_entries()) == 5


def test_worker_pool_returns_features_in_path_order(corpus):
    source, _, _ = corpus
    frames = {f"utt{index:03d}": 10 + 5 * index for index in range(5)}

    serial = CorpusLoader(_config(corpus, n_jobs=1), extractor=FakeExtractor(frames)).load(source)
    report = LoadReport()
    pooled = CorpusLoader(_config(corpus, n_jobs=2), extractor=FakeExtractor(frames)).load(source, report)

    assert pooled.names == serial.names
    assert [item.features.frame_count for item in pooled] == [10, 15, 20, 25, 30]
    for left, right in zip(serial, pooled):
        np.testing.assert_array_equal(left.features.lsfs, right.features.lsfs)
    assert report.extracted == 5


def test_modified_recording_misses_the_cache(corpus, tmp_path):
    source, _, _ = corpus
    config = _config(corpus)
    cache = FeatureCache(tmp_path / "cache")
    CorpusLoader(config, extractor=FakeExtractor(), cache=cache).load(source)
    params_hash = config.features.fingerprint()
    recording = source / "utt000.wav"
    assert cache.lookup(recording, params_hash) is not None

    recording.write_bytes(b"RIFF-utt000-re-recorded")

    assert cache.lookup(recording, params_hash) is None
    assert cache.lookup(source / "utt001.wav", params_hash) is not None

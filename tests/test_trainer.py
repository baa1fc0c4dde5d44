from __future__ import annotations

import dataclasses

import pytest
from conftest import FakeExtractor, touch_recordings, write_labels

from codebook_trainer.core.config import AggregationMode
from codebook_trainer.core.errors import ConfigurationError
from codebook_trainer.core.persistence import read_codebook, read_pitch_mapping
from codebook_trainer.core.storage import FeatureCache
from codebook_trainer.core.trainer import CodebookTrainer


def test_training_writes_both_artifacts(relaxed_config):
    result = CodebookTrainer(relaxed_config, extractor=FakeExtractor()).run()

    assert result.codebook_path == relaxed_config.output_folder / "neutralF_X_angryF.wcf"
    assert result.pitch_mapping_path == relaxed_config.output_folder / "neutralF_X_angryF.pmf"
    loaded = read_codebook(result.codebook_path)
    assert len(loaded) == len(result.codebook) > 0
    assert loaded.header.total_items == 5
    assert loaded.header.total_mappings == 5 * 40
    assert [stage.name for stage in loaded.header.elimination] == ["gaussian", "kmeans"]
    assert read_pitch_mapping(result.pitch_mapping_path).source.voiced_count == result.pitch_mapping.source.voiced_count


def test_identical_runs_produce_identical_files(relaxed_config):
    first = CodebookTrainer(relaxed_config, extractor=FakeExtractor()).run()
    codebook_bytes = first.codebook_path.read_bytes()
    pitch_bytes = first.pitch_mapping_path.read_bytes()

    second = CodebookTrainer(relaxed_config, extractor=FakeExtractor()).run()

    assert second.cache_hits == 10
    assert second.codebook_path.read_bytes() == codebook_bytes
    assert second.pitch_mapping_path.read_bytes() == pitch_bytes


def test_runs_are_recorded_in_the_ledger(relaxed_config):
    CodebookTrainer(relaxed_config, extractor=FakeExtractor()).run()

    runs = FeatureCache(relaxed_config.feature_cache_dir, relaxed_config.ledger_path).list_runs()

    assert len(runs) == 1
    assert runs.loc[0, "source_tag"] == "neutralF"
    assert runs.loc[0, "total_items"] == 5


def test_unmatched_and_broken_items_are_reported(relaxed_config):
    touch_recordings(relaxed_config.source_folder, ["solo", "utt_broken"])

    result = CodebookTrainer(relaxed_config, extractor=FakeExtractor(), use_cache=False).run()

    reasons = {error.item.rsplit("/", 1)[-1]: error.reason for error in result.skipped}
    assert "solo" in reasons
    assert "utt_broken.wav" in reasons
    assert result.codebook.header.total_items == 5


def test_label_mode_training(relaxed_config):
    for folder in (relaxed_config.source_folder, relaxed_config.target_folder):
        for index in range(5):
            write_labels(folder / f"utt{index:03d}.lab", [(0.1, "_"), (0.25, "a"), (0.4, "t")])
    config = dataclasses.replace(relaxed_config, aggregation_mode=AggregationMode.LABELS)

    result = CodebookTrainer(config, extractor=FakeExtractor(), use_cache=False).run()

    assert 0 < len(result.codebook) <= 5 * 3
    assert result.codebook.header.aggregation_mode is AggregationMode.LABELS


def test_invalid_configuration_stops_before_loading(relaxed_config):
    config = dataclasses.replace(relaxed_config, frame_group_size=4)
    extractor = FakeExtractor()

    with pytest.raises(ConfigurationError, match="frame_group_size"):
        CodebookTrainer(config, extractor=extractor).run()
    assert extractor.calls == []


def test_missing_target_folder_is_fatal(relaxed_config, tmp_path):
    config = dataclasses.replace(relaxed_config, target_folder=tmp_path / "nowhere")

    with pytest.raises(ConfigurationError, match="target training folder"):
        CodebookTrainer(config, extractor=FakeExtractor()).run()

from __future__ import annotations

import json

import pytest

from codebook_trainer.core.config import KMeansStrategy
from codebook_trainer.core.errors import ConfigurationError
from codebook_trainer.core.presets import available_presets, build_preset_config, export_preset_json


def test_available_presets():
    assert available_presets() == ["neutral2angry", "neutral2happy", "neutral2sad"]


def test_unknown_preset_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError, match="neutral2bored"):
        build_preset_config("neutral2bored", tmp_path, tmp_path)


def test_preset_folder_layout_and_artifact_names(tmp_path):
    config = build_preset_config("neutral2sad", tmp_path / "corpus", tmp_path / "codebooks")

    assert config.source_folder == (tmp_path / "corpus" / "neutral" / "train_200").resolve()
    assert config.target_folder == (tmp_path / "corpus" / "sad" / "train_200").resolve()
    assert config.codebook_path.name == "neutralF_X_sadF_200.wcf"
    assert config.pitch_mapping_path.name == "neutralF_X_sadF_200.pmf"
    assert config.output_folder.name == "neutral2sad"


def test_preset_settings_and_overrides(tmp_path):
    config = build_preset_config("neutral2angry", tmp_path, tmp_path, n_jobs=4)

    assert config.n_jobs == 4
    assert config.gaussian.deviations.lsf == 1.5
    assert config.gaussian.deviations.energy == 2.0
    assert config.kmeans.strategy is KMeansStrategy.MEAN_DISTANCE_MISMATCH
    assert config.kmeans.tolerance_for(None) == pytest.approx(0.1)
    assert config.kmeans.enabled_channels() == ("lsf",)


def test_export_preset_json(tmp_path):
    config = build_preset_config("neutral2happy", tmp_path, tmp_path)

    path = export_preset_json(tmp_path / "meta" / "preset.json", config, metadata={"preset": "neutral2happy"})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["metadata"] == {"preset": "neutral2happy"}
    assert payload["parameters"]["target_tag"] == "happyF"
    assert "source_folder" not in payload["parameters"]

from __future__ import annotations

import numpy as np
import pytest
import soundfile as sf

from codebook_trainer.core.config import FeatureParams, LsfParams, PitchParams
from codebook_trainer.core.features import ReferenceFeatureExtractor, lpc_to_lsf

SAMPLE_RATE = 16000


def _write_tone(path, frequency: float = 200.0, seconds: float = 0.5):
    rng = np.random.default_rng(0)
    t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
    tone = 0.5 * np.sin(2.0 * np.pi * frequency * t) + 0.01 * rng.standard_normal(t.size)
    sf.write(str(path), tone, SAMPLE_RATE)
    return path


def test_tone_yields_lsf_frames_and_pitch(tmp_path):
    path = _write_tone(tmp_path / "tone.wav")
    params = FeatureParams()

    features = ReferenceFeatureExtractor(params).extract(path)

    assert features.lsf_order == params.lsf.lp_order
    assert features.frame_count == 1 + (8000 - 320) // 160
    assert features.skip_size == pytest.approx(0.01)
    assert np.all(np.diff(features.lsfs, axis=1) > 0.0)
    assert np.all((features.lsfs > 0.0) & (features.lsfs < SAMPLE_RATE / 2))
    voiced = features.f0[features.f0 > 0.0]
    assert voiced.size > 0.8 * features.frame_count
    assert np.median(voiced) == pytest.approx(200.0, rel=0.05)


def test_silence_is_unvoiced(tmp_path):
    path = tmp_path / "silence.wav"
    sf.write(str(path), np.zeros(SAMPLE_RATE // 4), SAMPLE_RATE)

    features = ReferenceFeatureExtractor(FeatureParams(lsf=LsfParams(lp_order=10))).extract(path)

    assert features.lsf_order == 10
    assert np.all(features.f0 == 0.0)
    assert np.all(np.diff(features.lsfs, axis=1) > 0.0)


def test_doubling_check_halves_octave_jumps(tmp_path):
    extractor = ReferenceFeatureExtractor(FeatureParams(pitch=PitchParams(doubling_check=True)))

    corrected = extractor._octave_correction(np.array([100.0, 102.0, 0.0, 204.0, 98.0]))

    np.testing.assert_allclose(corrected, [100.0, 102.0, 0.0, 102.0, 98.0])


def test_lpc_to_lsf_of_a_flat_filter_is_evenly_spaced():
    lsfs = lpc_to_lsf(np.array([1.0, 0.0, 0.0, 0.0, 0.0]), SAMPLE_RATE)

    np.testing.assert_allclose(lsfs, np.arange(1, 5) * SAMPLE_RATE / 10.0, atol=1e-6)

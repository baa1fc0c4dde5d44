from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import numpy as np
import soundfile as sf
from scipy import linalg, signal

from .config import FeatureParams
from .constants import EPSILON
from .types import ItemFeatures

logger = logging.getLogger(__name__)


class FeatureExtractor(Protocol):
    def extract(self, audio_path: Path) -> ItemFeatures:
        ...


def _frame_signal(samples: np.ndarray, window: int, hop: int) -> np.ndarray:
    if samples.size < window:
        samples = np.pad(samples, (0, window - samples.size))
    frame_count = 1 + (samples.size - window) // hop
    index = np.arange(window)[np.newaxis, :] + hop * np.arange(frame_count)[:, np.newaxis]
    return samples[index]


def _frame_times(frame_count: int, window: int, hop: int, sample_rate: int) -> np.ndarray:
    return (hop * np.arange(frame_count) + 0.5 * window) / float(sample_rate)


def _nearest(source_times: np.ndarray, values: np.ndarray, target_times: np.ndarray) -> np.ndarray:
    if source_times.size == 1:
        return np.full(target_times.shape, values[0], dtype=np.float64)
    pos = np.clip(np.searchsorted(source_times, target_times), 1, source_times.size - 1)
    left = source_times[pos - 1]
    right = source_times[pos]
    pos = pos - ((target_times - left) < (right - target_times)).astype(np.int64)
    return values[pos]


def _uniform_lsfs(order: int, sample_rate: int) -> np.ndarray:
    return np.arange(1, order + 1, dtype=np.float64) * (0.5 * sample_rate) / (order + 1)


def lpc_to_lsf(coefficients: np.ndarray, sample_rate: int) -> np.ndarray | None:
    """Line spectral frequencies in Hz for the inverse filter ``[1, -a1, ..., -ap]``."""
    order = coefficients.size - 1
    extended = np.concatenate([coefficients, [0.0]])
    symmetric = extended + extended[::-1]
    antisymmetric = extended - extended[::-1]

    angles = np.concatenate([np.angle(np.roots(symmetric)), np.angle(np.roots(antisymmetric))])
    angles = np.sort(angles[(angles > 1.0e-6) & (angles < np.pi - 1.0e-6)])
    if angles.size != order:
        return None
    return angles * sample_rate / (2.0 * np.pi)


class ReferenceFeatureExtractor:
    """LSF, F0 and energy tracks resampled onto the LSF frame grid."""

    def __init__(self, params: FeatureParams):
        self.params = params

    def extract(self, audio_path: Path) -> ItemFeatures:
        audio_path = Path(audio_path).expanduser().resolve()
        samples, sample_rate = self._read_mono(audio_path)

        lsf_times, lsfs = self._compute_lsfs(samples, sample_rate)
        pitch_times, f0 = self._compute_f0(samples, sample_rate)
        energy_times, energy = self._compute_energy(samples, sample_rate)

        return ItemFeatures(
            lsfs=lsfs,
            f0=_nearest(pitch_times, f0, lsf_times),
            energy=np.interp(lsf_times, energy_times, energy),
            frame_times=lsf_times,
            skip_size=self.params.lsf.skip_size,
        )

    @staticmethod
    def _read_mono(audio_path: Path) -> tuple[np.ndarray, int]:
        audio, sample_rate = sf.read(str(audio_path), always_2d=True, dtype="float64")
        if audio.size == 0:
            raise ValueError(f"empty audio file: {audio_path}")
        return np.mean(audio, axis=1), int(sample_rate)

    def _compute_lsfs(self, samples: np.ndarray, sample_rate: int) -> tuple[np.ndarray, np.ndarray]:
        params = self.params.lsf
        window = max(int(round(params.window_size * sample_rate)), params.lp_order + 1)
        hop = max(int(round(params.skip_size * sample_rate)), 1)

        emphasized = signal.lfilter([1.0, -params.pre_coef], [1.0], samples)
        frames = _frame_signal(emphasized, window, hop) * signal.get_window(params.window_type, window, fftbins=False)

        fallback = _uniform_lsfs(params.lp_order, sample_rate)
        lsfs = np.empty((frames.shape[0], params.lp_order), dtype=np.float64)
        fallback_count = 0
        for index, frame in enumerate(frames):
            autocorr = np.correlate(frame, frame, mode="full")[window - 1 : window + params.lp_order]
            if autocorr[0] <= EPSILON:
                lsfs[index] = fallback
                fallback_count += 1
                continue
            autocorr[0] *= 1.0 + 1.0e-9
            try:
                predictor = linalg.solve_toeplitz(autocorr[:-1], autocorr[1:])
            except linalg.LinAlgError:
                lsfs[index] = fallback
                fallback_count += 1
                continue
            frequencies = lpc_to_lsf(np.concatenate([[1.0], -predictor]), sample_rate)
            if frequencies is None:
                lsfs[index] = fallback
                fallback_count += 1
            else:
                lsfs[index] = frequencies

        if fallback_count:
            logger.debug("%d/%d frames used flat-spectrum LSFs", fallback_count, frames.shape[0])
        return _frame_times(frames.shape[0], window, hop, sample_rate), lsfs

    def _compute_f0(self, samples: np.ndarray, sample_rate: int) -> tuple[np.ndarray, np.ndarray]:
        params = self.params.pitch
        window = int(round(params.window_size * sample_rate))
        hop = max(int(round(params.skip_size * sample_rate)), 1)
        min_lag = max(int(sample_rate / params.max_f0), 1)
        max_lag = min(int(np.ceil(sample_rate / params.min_f0)), window - 1)

        frames = _frame_signal(samples, window, hop)
        frames = frames - np.mean(frames, axis=1, keepdims=True)
        clip = params.center_clipping_ratio * np.max(np.abs(frames), axis=1, keepdims=True)
        clipped = np.sign(frames) * np.maximum(np.abs(frames) - clip, 0.0)

        spectrum = np.fft.rfft(clipped, n=2 * window, axis=1)
        autocorr = np.fft.irfft(np.abs(spectrum) ** 2, axis=1)[:, :window]
        energy = autocorr[:, 0]
        normalized = autocorr / (energy[:, np.newaxis] + EPSILON)

        f0 = np.zeros(frames.shape[0], dtype=np.float64)
        if max_lag > min_lag:
            search = normalized[:, min_lag : max_lag + 1]
            best = np.argmax(search, axis=1)
            strength = search[np.arange(search.shape[0]), best]
            voiced = (strength >= params.voicing_threshold) & (energy > EPSILON)
            f0[voiced] = sample_rate / (best[voiced] + min_lag)

        f0 = self._octave_correction(f0)
        return _frame_times(frames.shape[0], window, hop, sample_rate), f0

    def _octave_correction(self, f0: np.ndarray) -> np.ndarray:
        params = self.params.pitch
        voiced = f0 > 0.0
        if not (params.doubling_check or params.halving_check) or not np.any(voiced):
            return f0
        corrected = f0.copy()
        median = float(np.median(f0[voiced]))
        if params.doubling_check:
            doubled = voiced & (corrected > 1.8 * median)
            corrected[doubled] *= 0.5
        if params.halving_check:
            halved = voiced & (corrected < 0.55 * median)
            corrected[halved] *= 2.0
        return np.clip(corrected, 0.0, params.max_f0)

    def _compute_energy(self, samples: np.ndarray, sample_rate: int) -> tuple[np.ndarray, np.ndarray]:
        params = self.params.energy
        window = max(int(round(params.window_size * sample_rate)), 1)
        hop = max(int(round(params.skip_size * sample_rate)), 1)
        frames = _frame_signal(samples, window, hop)
        energy_db = 10.0 * np.log10(np.mean(frames * frames, axis=1) + EPSILON)
        return _frame_times(frames.shape[0], window, hop, sample_rate), energy_db

from __future__ import annotations

import zlib
from pathlib import Path

import numpy as np
import pytest

from codebook_trainer.core.config import (
    CodebookTrainerConfig,
    GaussianEliminatorParams,
    KMeansEliminatorParams,
    StandardDeviations,
)
from codebook_trainer.core.constants import CATEGORY_NONE
from codebook_trainer.core.types import ItemFeatures, LabelSpan, MappingTable, TrainingItem

LSF_ORDER = 4


def make_features(
    frames: int,
    seed: int = 0,
    shift: float = 0.0,
    lsf_order: int = LSF_ORDER,
    skip_size: float = 0.01,
    unvoiced_every: int = 0,
) -> ItemFeatures:
    rng = np.random.default_rng(seed)
    steps = rng.uniform(150.0, 600.0, size=(frames, lsf_order))
    lsfs = np.cumsum(steps, axis=1) + shift
    f0 = rng.normal(120.0, 10.0, size=frames) + shift * 0.1
    if unvoiced_every:
        f0[::unvoiced_every] = 0.0
    energy = rng.normal(60.0, 3.0, size=frames)
    frame_times = skip_size * np.arange(frames) + 0.5 * skip_size
    return ItemFeatures(lsfs=lsfs, f0=f0, energy=energy, frame_times=frame_times, skip_size=skip_size)


def make_item(
    name: str,
    frames: int = 20,
    seed: int = 0,
    shift: float = 0.0,
    labels: tuple[LabelSpan, ...] = (),
    folder: str = "source",
) -> TrainingItem:
    features = make_features(frames, seed=seed, shift=shift)
    return TrainingItem(name=name, path=Path(folder) / f"{name}.wav", features=features, labels=labels)


def make_table(
    source: np.ndarray,
    target: np.ndarray,
    lsf_order: int = LSF_ORDER,
    weights: np.ndarray | None = None,
    item_index: np.ndarray | None = None,
    label_index: np.ndarray | None = None,
    label_category: np.ndarray | None = None,
) -> MappingTable:
    count = np.asarray(source).shape[0]
    return MappingTable(
        source=source,
        target=target,
        weights=np.ones(count) if weights is None else weights,
        item_index=np.zeros(count, dtype=np.int64) if item_index is None else item_index,
        frame_index=np.arange(count),
        label_index=np.full(count, -1) if label_index is None else label_index,
        label_category=np.full(count, CATEGORY_NONE) if label_category is None else label_category,
        lsf_order=lsf_order,
    )


class FakeExtractor:
    """Deterministic per-name features; counts calls and fails on names containing 'broken'."""

    def __init__(self, frames: dict[str, int] | None = None, default_frames: int = 40):
        self.frames = dict(frames or {})
        self.default_frames = default_frames
        self.calls: list[str] = []

    def extract(self, audio_path: Path) -> ItemFeatures:
        audio_path = Path(audio_path)
        name = audio_path.stem
        self.calls.append(name)
        if "broken" in name:
            raise ValueError(f"cannot decode {name}")
        seed = zlib.crc32(f"{audio_path.parent.parent.name}/{name}".encode("utf-8"))
        return make_features(self.frames.get(name, self.default_frames), seed=seed)


def touch_recordings(folder: Path, names: list[str], extension: str = ".wav") -> list[Path]:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = folder / f"{name}{extension}"
        path.write_bytes(f"RIFF-{name}".encode("utf-8"))
        paths.append(path)
    return paths


def write_labels(path: Path, spans: list[tuple[float, str]]) -> Path:
    lines = ["signal corpus", "nfields 1", "#"]
    lines.extend(f"{end:.3f} 125 {label}" for end, label in spans)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def corpus(tmp_path: Path) -> tuple[Path, Path, Path]:
    source = tmp_path / "neutral" / "train_200"
    target = tmp_path / "angry" / "train_200"
    names = [f"utt{index:03d}" for index in range(5)]
    touch_recordings(source, names)
    touch_recordings(target, names)
    return source, target, tmp_path / "out"


@pytest.fixture
def relaxed_config(corpus: tuple[Path, Path, Path]) -> CodebookTrainerConfig:
    source, target, output = corpus
    return CodebookTrainerConfig.default(
        source,
        target,
        output,
        source_tag="neutralF",
        target_tag="angryF",
        gaussian=GaussianEliminatorParams(deviations=StandardDeviations(lsf=3.0, f0=3.0, energy=3.0, duration=3.0)),
        kmeans=KMeansEliminatorParams(num_clusters=4, n_init=2),
    )

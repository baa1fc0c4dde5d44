from __future__ import annotations

from pathlib import Path


class CodebookTrainingError(Exception):
    """Base class for errors raised by the codebook training pipeline."""


class ConfigurationError(CodebookTrainingError):
    """Fatal: the run cannot start with the given configuration or corpus."""


class ItemError(CodebookTrainingError):
    """Recoverable: a single recording could not be used; the run continues."""

    def __init__(self, item: str | Path, reason: str):
        self.item = str(item)
        self.reason = reason
        super().__init__(f"{self.item}: {reason}")


class EliminationWarning(UserWarning):
    """An elimination stage removed every remaining mapping."""

"""
Error taxonomy for the fine-tuning pipeline.

Every error is fatal: nothing in the pipeline retries or recovers, the
exception travels up to whoever called ``run_training`` (or the CLI).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class FinetuneError(Exception):
    """Base class for all pipeline failures."""


class DatasetIOError(FinetuneError, OSError):
    """A file or directory could not be accessed."""

    def __init__(self, message: str, path: Optional[Path | str] = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None

    def __str__(self) -> str:
        return self.args[0] if self.args else ""


class ArtifactIOError(DatasetIOError):
    """The output destination could not be written."""


class DecodeError(FinetuneError):
    """Image bytes could not be decoded."""

    def __init__(self, message: str, path: Optional[Path | str] = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class ModelLoadError(FinetuneError):
    """A backbone or saved model could not be fetched or parsed."""


class GraphError(FinetuneError):
    """The backbone graph does not fit the requested surgery."""

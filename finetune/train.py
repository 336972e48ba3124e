"""
Head training and model persistence.

Epochs run strictly one after another: each consumes the whole training
pipeline once (one optimiser step per batch, head weights only), then
scores the whole validation pipeline without touching the weights.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import tensorflow as tf

from .data import BatchPipeline, translate_tf_error
from .errors import ArtifactIOError
from .model import TransferModel

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.keras"

ModelLike = Union[TransferModel, tf.keras.Model]


def _keras_model(model: ModelLike) -> tf.keras.Model:
    return model.model if isinstance(model, TransferModel) else model


# ═══════════════════════════════════════════════════════════════════════════
# Report
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EpochMetrics:
    epoch: int
    loss: float
    accuracy: float
    val_loss: float
    val_accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrainingReport:
    """Per-epoch train / validation loss and accuracy, in epoch order."""

    epochs: List[EpochMetrics] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.epochs)

    def __iter__(self) -> Iterator[EpochMetrics]:
        return iter(self.epochs)

    @property
    def final(self) -> Optional[EpochMetrics]:
        return self.epochs[-1] if self.epochs else None

    def to_dict(self) -> Dict[str, Any]:
        return {"epochs": [e.to_dict() for e in self.epochs]}

    @classmethod
    def from_history(cls, history: Dict[str, List[float]]) -> "TrainingReport":
        """Build a report from a Keras ``History.history`` mapping."""
        n = len(history.get("loss", []))
        epochs = [
            EpochMetrics(
                epoch=i + 1,
                loss=float(history["loss"][i]),
                accuracy=float(history["accuracy"][i]),
                val_loss=float(history["val_loss"][i]),
                val_accuracy=float(history["val_accuracy"][i]),
            )
            for i in range(n)
        ]
        return cls(epochs=epochs)


class EpochLogger(tf.keras.callbacks.Callback):
    """Log each finished epoch through :mod:`logging`."""

    def __init__(self, total_epochs: int) -> None:
        super().__init__()
        self.total_epochs = total_epochs

    def on_epoch_end(self, epoch, logs=None):
        logs = logs or {}
        logger.info(
            "Epoch %d/%d — loss=%.4f, accuracy=%.4f, val_loss=%.4f, val_accuracy=%.4f",
            epoch + 1, self.total_epochs,
            logs.get("loss", float("nan")),
            logs.get("accuracy", float("nan")),
            logs.get("val_loss", float("nan")),
            logs.get("val_accuracy", float("nan")),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Runner
# ═══════════════════════════════════════════════════════════════════════════

class TrainingRunner:
    """Drive training epochs and persist the trained model.

    Parameters
    ----------
    verbose : int
        Keras progress-bar verbosity (0 silent, 1 bar, 2 one line/epoch).
    """

    def __init__(self, verbose: int = 1) -> None:
        self.verbose = verbose

    def run(
        self,
        model: ModelLike,
        train_batches: BatchPipeline,
        val_batches: BatchPipeline,
        epochs: int,
    ) -> TrainingReport:
        """Train for ``epochs`` epochs and return per-epoch metrics.

        Raises
        ------
        DecodeError, DatasetIOError
            If an image fails to load mid-epoch.  Training stops at once.
        """
        if isinstance(epochs, bool) or epochs <= 0:
            raise ValueError(f"epochs must be a positive integer, got {epochs!r}")

        keras_model = _keras_model(model)

        logger.info(
            "═══ TRAINING: %d epochs, %d train batches, %d validation batches ═══",
            epochs, train_batches.num_batches, val_batches.num_batches,
        )
        try:
            history = keras_model.fit(
                train_batches.dataset,
                validation_data=val_batches.dataset,
                epochs=epochs,
                callbacks=[EpochLogger(epochs)],
                verbose=self.verbose,
            )
        except tf.errors.OpError as exc:
            raise translate_tf_error(exc) from exc

        report = TrainingReport.from_history(history.history)
        logger.info("Training complete — %d epochs", len(report))
        return report

    def save(self, model: ModelLike, destination: Path | str) -> Path:
        """Write topology + weights to ``destination``.

        A ``.keras`` path is written as-is; anything else is treated as
        a directory and ``model.keras`` is written inside it.

        Raises
        ------
        ArtifactIOError
            If the destination cannot be created or written.
        """
        destination = Path(destination)
        path = destination if destination.suffix == ".keras" else destination / MODEL_FILENAME

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _keras_model(model).save(str(path))
        except OSError as exc:
            raise ArtifactIOError(
                f"Cannot write model to {path}: {exc.strerror or exc}", path,
            ) from exc

        logger.info("Saved model to %s", path)
        return path

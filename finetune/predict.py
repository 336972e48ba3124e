"""
Inference with a saved model bundle.

Loads a ``model.keras`` written by a training run and classifies image
files using exactly the preprocessing the model was trained with
(decode → bilinear resize → /255).

Usage::

    model = load_trained_model("food101_mobilenet_model")
    classes = read_class_names("food101_mobilenet_model")
    for pred in predict_images(model, ["pizza.jpg"], class_names=classes):
        print(pred.class_name, pred.confidence)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import tensorflow as tf

from .data import ImageSize, load_image
from .errors import DatasetIOError, ModelLoadError
from .train import MODEL_FILENAME

logger = logging.getLogger(__name__)

CLASSES_FILENAME = "classes.txt"


@dataclass(frozen=True)
class Prediction:
    path: Path
    label: int
    class_name: Optional[str]
    confidence: float
    probabilities: np.ndarray


def _model_path(path: Path) -> Path:
    return path / MODEL_FILENAME if path.is_dir() else path


def load_trained_model(path: Path | str) -> tf.keras.Model:
    """Load a saved model file, or the ``model.keras`` inside a bundle dir.

    Raises
    ------
    ModelLoadError
        If the file is missing or cannot be parsed.
    """
    model_path = _model_path(Path(path))
    if not model_path.exists():
        raise ModelLoadError(f"No saved model at {model_path}")
    try:
        model = tf.keras.models.load_model(str(model_path), compile=False)
    except Exception as exc:
        raise ModelLoadError(f"Failed to load model from {model_path}: {exc}") from exc
    logger.info("Loaded classification model from %s", model_path)
    return model


def read_class_names(bundle_dir: Path | str) -> List[str]:
    """Read ``classes.txt`` from a bundle directory (label order)."""
    path = Path(bundle_dir) / CLASSES_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DatasetIOError(f"Cannot read class list {path}: {exc.strerror or exc}", path) from exc
    return [line.strip() for line in text.splitlines() if line.strip()]


def _input_size(model: tf.keras.Model) -> tuple[int, int]:
    _, h, w, _ = model.input_shape
    if h is None or w is None:
        raise ValueError("Model input size is not fixed; pass image_size explicitly")
    return int(h), int(w)


def predict_images(
    model: tf.keras.Model,
    paths: Sequence[Path | str],
    image_size: Optional[ImageSize] = None,
    class_names: Optional[Sequence[str]] = None,
    batch_size: int = 8,
) -> List[Prediction]:
    """Classify image files; one :class:`Prediction` per path, in order.

    ``image_size`` defaults to the model's fixed input size.
    """
    size = image_size if image_size is not None else _input_size(model)
    predictions: List[Prediction] = []

    for start in range(0, len(paths), batch_size):
        chunk = [Path(p) for p in paths[start:start + batch_size]]
        images = tf.stack([load_image(p, size) for p in chunk])
        probs = np.asarray(model.predict(images, verbose=0))
        for path, row in zip(chunk, probs):
            label = int(np.argmax(row))
            predictions.append(Prediction(
                path=path,
                label=label,
                class_name=class_names[label] if class_names else None,
                confidence=float(row[label]),
                probabilities=row,
            ))

    return predictions

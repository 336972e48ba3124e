"""
Validation evaluation — run once training has finished.

Produces:
- Validation loss / accuracy from a single prediction pass.
- Confusion matrix saved as ``confusion_matrix.png``.
- ``sklearn.metrics.classification_report`` saved as ``classification_report.txt``.
- ``metrics.json`` with all numbers for programmatic use.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import matplotlib
matplotlib.use("Agg")  # non-interactive backend, no display needed
import matplotlib.pyplot as plt
import numpy as np
import tensorflow as tf
from sklearn.metrics import classification_report, confusion_matrix

from .data import BatchPipeline
from .train import ModelLike, _keras_model

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Core evaluation
# ═══════════════════════════════════════════════════════════════════════════

def collect_predictions(
    model: ModelLike,
    batches: BatchPipeline,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """One pass over ``batches``.

    Returns ``(y_true, y_pred, losses)``: true and predicted label
    indices and the per-sample categorical cross-entropy.
    """
    keras_model = _keras_model(model)
    y_true: List[np.ndarray] = []
    y_pred: List[np.ndarray] = []
    losses: List[np.ndarray] = []

    for batch in batches:
        probs = keras_model(batch.images, training=False)
        losses.append(tf.keras.losses.categorical_crossentropy(batch.labels, probs).numpy())
        y_pred.append(np.argmax(np.asarray(probs), axis=1))
        # labels are one-hot encoded by the sample stream
        y_true.append(np.argmax(np.asarray(batch.labels), axis=1))

    if not y_true:
        empty = np.zeros((0,), dtype=np.int64)
        return empty, empty, np.zeros((0,), dtype=np.float32)
    return np.concatenate(y_true), np.concatenate(y_pred), np.concatenate(losses)


def evaluate_model(
    model: ModelLike,
    val_batches: BatchPipeline,
    class_names: Sequence[str],
    output_dir: Path,
) -> Dict[str, Any]:
    """Evaluate on the validation split and save all artefacts.

    Parameters
    ----------
    model : TransferModel | tf.keras.Model
        Trained, compiled model (softmax output).
    val_batches : BatchPipeline
        Validation batches (images in [0,1], one-hot labels).
    class_names : sequence of str
        Ordered class names matching label indices.
    output_dir : Path
        Directory to save confusion_matrix.png, classification_report.txt,
        and metrics.json.

    Returns
    -------
    dict
        Keys: accuracy, loss, macro_f1, per_class (list),
        confusion_matrix (nested list).
    """
    keras_model = _keras_model(model)
    class_names = list(class_names)

    # ── One pass: predictions and per-sample loss ───────────────────
    y_true, y_pred, losses = collect_predictions(keras_model, val_batches)
    if len(y_true) == 0:
        raise ValueError("Validation pipeline produced no samples to evaluate")

    loss = float(np.mean(losses))
    accuracy = float(np.mean(y_true == y_pred))
    logger.info("Validation — accuracy=%.4f, loss=%.4f", accuracy, loss)

    # ── Confusion matrix ────────────────────────────────────────────
    all_labels = list(range(len(class_names)))
    cm = confusion_matrix(y_true, y_pred, labels=all_labels)
    save_confusion_matrix(cm, class_names, output_dir)

    # ── Classification report ───────────────────────────────────────
    report_str = classification_report(
        y_true, y_pred,
        target_names=class_names,
        labels=all_labels,
        digits=4,
        zero_division=0,
    )
    report_path = output_dir / "classification_report.txt"
    report_path.write_text(report_str, encoding="utf-8")
    logger.info("Classification report saved to %s", report_path)

    # ── Per-class stats from sklearn ────────────────────────────────
    report_dict = classification_report(
        y_true, y_pred,
        target_names=class_names,
        labels=all_labels,
        digits=4,
        output_dict=True,
        zero_division=0,
    )
    per_class = []
    for name in class_names:
        stats = report_dict.get(name, {})
        per_class.append({
            "class": name,
            "precision": round(stats.get("precision", 0), 4),
            "recall": round(stats.get("recall", 0), 4),
            "f1": round(stats.get("f1-score", 0), 4),
            "support": int(stats.get("support", 0)),
        })

    macro = report_dict.get("macro avg", {})

    # ── Build metrics dict ──────────────────────────────────────────
    metrics = {
        "accuracy": round(float(accuracy), 4),
        "loss": round(float(loss), 4),
        "macro_f1": round(macro.get("f1-score", 0), 4),
        "num_samples": len(y_true),
        "per_class": per_class,
        "confusion_matrix": cm.tolist(),
    }

    (output_dir / "metrics.json").write_text(
        json.dumps(metrics, indent=2), encoding="utf-8",
    )
    logger.info("Metrics saved to %s", output_dir / "metrics.json")

    return metrics


# ═══════════════════════════════════════════════════════════════════════════
# Confusion matrix plot
# ═══════════════════════════════════════════════════════════════════════════

def save_confusion_matrix(
    cm: np.ndarray,
    class_names: List[str],
    output_dir: Path,
) -> Path:
    """Save the confusion matrix as an annotated PNG."""
    size = max(6.0, 0.5 * len(class_names))
    fig, ax = plt.subplots(figsize=(size * 1.25, size))
    im = ax.imshow(cm, interpolation="nearest", cmap=plt.cm.Blues)
    ax.set_title("Confusion Matrix (validation)")
    fig.colorbar(im, ax=ax)

    ticks = np.arange(len(class_names))
    ax.set_xticks(ticks)
    ax.set_xticklabels(class_names, rotation=45, ha="right")
    ax.set_yticks(ticks)
    ax.set_yticklabels(class_names)

    # Annotate cells
    threshold = cm.max() / 2.0 if cm.size else 0
    for i in range(len(class_names)):
        for j in range(len(class_names)):
            ax.text(
                j, i, str(cm[i, j]),
                ha="center", va="center",
                color="white" if cm[i, j] > threshold else "black",
            )

    ax.set_xlabel("Predicted Label")
    ax.set_ylabel("True Label")
    fig.tight_layout()

    path = output_dir / "confusion_matrix.png"
    fig.savefig(str(path), dpi=150)
    plt.close(fig)
    logger.info("Confusion matrix saved to %s", path)
    return path

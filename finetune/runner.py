"""
Training run orchestrator — ties data → model → train → evaluate → save.

This is the main entry point for a complete fine-tuning cycle:

1. Scan the image folder into classes and labelled samples.
2. Split samples (order-preserving) into train / validation.
3. Build the shuffled, batched train and validation pipelines.
4. Build the transfer model (frozen backbone + pooling/softmax head).
5. Train the head for ``config.epochs`` epochs.
6. Evaluate on the validation split.
7. Save all artefacts under ``config.output_dir``.

Artefacts are first written to a hidden staging directory beside
``output_dir`` and moved into place only after every step succeeded.
A failed run leaves nothing behind.
"""

from __future__ import annotations

import csv
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .catalog import ImageCatalog
from .config import TrainingConfig
from .data import BatchPipeline, SampleStream
from .errors import ArtifactIOError
from .evaluate import evaluate_model
from .model import TransferModel, TransferModelBuilder
from .predict import CLASSES_FILENAME
from .train import MODEL_FILENAME, TrainingReport, TrainingRunner

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """What a successful run produced."""

    output_dir: Path
    model_path: Path
    class_names: List[str]
    split_counts: Dict[str, int]
    report: TrainingReport
    metrics: Optional[Dict[str, Any]] = None
    model: Optional[TransferModel] = field(default=None, repr=False)


# ═══════════════════════════════════════════════════════════════════════════
# Artefact helpers
# ═══════════════════════════════════════════════════════════════════════════

def _write_training_log(report: TrainingReport, output_dir: Path) -> None:
    (output_dir / "training_log.json").write_text(
        json.dumps(report.to_dict(), indent=2), encoding="utf-8",
    )
    with (output_dir / "training_log.csv").open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(
            handle,
            fieldnames=["epoch", "loss", "accuracy", "val_loss", "val_accuracy"],
        )
        writer.writeheader()
        for epoch in report:
            writer.writerow(epoch.to_dict())


def _staging_dir(output_dir: Path) -> Path:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    return output_dir.parent / f".{output_dir.name}.partial-{timestamp}"


def _missing_parents(path: Path) -> List[Path]:
    """Ancestors of ``path`` that do not exist yet, deepest first."""
    missing: List[Path] = []
    for parent in path.parents:
        if parent.exists():
            break
        missing.append(parent)
    return missing


def _remove_empty(directories: List[Path]) -> None:
    for directory in directories:
        try:
            directory.rmdir()
        except OSError:
            # no longer empty; something else wrote here
            break


def _publish(staging: Path, output_dir: Path) -> None:
    """Move ``staging`` to ``output_dir``, replacing any previous bundle."""
    previous: Optional[Path] = None
    if output_dir.exists():
        previous = staging.with_name(staging.name.replace(".partial-", ".previous-"))
        os.replace(output_dir, previous)
    try:
        os.replace(staging, output_dir)
    except OSError:
        if previous is not None:
            os.replace(previous, output_dir)
        raise
    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


# ═══════════════════════════════════════════════════════════════════════════
# Run
# ═══════════════════════════════════════════════════════════════════════════

def run_training(config: TrainingConfig) -> RunResult:
    """Execute a full fine-tuning run end-to-end.

    Parameters
    ----------
    config : TrainingConfig
        All hyperparameters and settings.

    Returns
    -------
    RunResult
        Paths, class list, split sizes, per-epoch report and (if
        enabled) validation metrics.

    Raises
    ------
    FinetuneError
        Any I/O, decode, model-load or graph failure.  Nothing is
        written to ``config.output_dir`` in that case.
    ValueError
        If the dataset is too small to yield two classes and two
        non-empty partitions.
    """
    output_dir = config.output_dir
    staging: Optional[Path] = None
    created_parents: List[Path] = []

    try:
        # ── 1. Catalog + split ──────────────────────────────────────
        logger.info("Scanning dataset at %s…", config.data_root)
        catalog = ImageCatalog.scan(config.data_root)
        class_names = list(catalog.class_names)
        if catalog.num_classes < 2:
            raise ValueError(
                f"Need at least 2 classes to train, found {catalog.num_classes} "
                f"under {config.data_root}"
            )

        train_samples, val_samples = catalog.split(config.train_split_fraction)
        if not train_samples or not val_samples:
            raise ValueError(
                f"{len(catalog)} images cannot be split {config.train_split_fraction:.2f} "
                "into non-empty train and validation partitions"
            )
        split_counts = {"train": len(train_samples), "validation": len(val_samples)}

        # ── 2. Pipelines ────────────────────────────────────────────
        train_stream = SampleStream(
            train_samples, catalog.num_classes, config.image_size,
            skip_corrupt=config.skip_corrupt,
        )
        val_stream = SampleStream(
            val_samples, catalog.num_classes, config.image_size,
            skip_corrupt=config.skip_corrupt,
        )
        val_seed = None if config.seed is None else config.seed + 1
        train_batches = BatchPipeline.build(
            train_stream, len(train_samples), config.batch_size,
            seed=config.seed, prefetch=config.prefetch_batches,
        )
        val_batches = BatchPipeline.build(
            val_stream, len(val_samples), config.batch_size,
            seed=val_seed, prefetch=config.prefetch_batches,
        )

        # ── 3. Model ────────────────────────────────────────────────
        builder = TransferModelBuilder(
            image_size=config.image_size,
            learning_rate=config.learning_rate,
            weights=config.backbone_weights,
        )
        transfer = builder.build(
            config.backbone_source, config.splice_point_name, catalog.num_classes,
        )

        # ── 4. Train ────────────────────────────────────────────────
        runner = TrainingRunner(verbose=config.verbose)
        report = runner.run(transfer, train_batches, val_batches, config.epochs)

        # ── 5. Stage artefacts ──────────────────────────────────────
        staging = _staging_dir(output_dir)
        created_parents = _missing_parents(staging)
        try:
            staging.mkdir(parents=True)
        except OSError as exc:
            raise ArtifactIOError(
                f"Cannot create output directory next to {output_dir}: "
                f"{exc.strerror or exc}",
                output_dir,
            ) from exc

        runner.save(transfer, staging)
        (staging / CLASSES_FILENAME).write_text(
            "\n".join(class_names) + "\n", encoding="utf-8",
        )
        (staging / "config.json").write_text(
            json.dumps(config.to_dict(), indent=2), encoding="utf-8",
        )
        (staging / "model_summary.txt").write_text(
            "\n".join(transfer.summary_lines()), encoding="utf-8",
        )
        _write_training_log(report, staging)

        metrics = None
        if config.evaluate:
            metrics = evaluate_model(transfer, val_batches, class_names, staging)

        # ── 6. Publish ──────────────────────────────────────────────
        try:
            _publish(staging, output_dir)
        except OSError as exc:
            raise ArtifactIOError(
                f"Cannot move finished model into {output_dir}: {exc.strerror or exc}",
                output_dir,
            ) from exc
        staging = None

    except Exception:
        if staging is not None:
            shutil.rmtree(staging, ignore_errors=True)
        _remove_empty(created_parents)
        logger.exception("Training run failed; nothing written to %s", output_dir)
        raise

    final = report.final
    logger.info(
        "═══ TRAINING COMPLETE ═══\n"
        "  Classes      : %d\n"
        "  Train / val  : %d / %d\n"
        "  Val accuracy : %.4f\n"
        "  Val loss     : %.4f\n"
        "  Artefacts    : %s",
        len(class_names),
        split_counts["train"], split_counts["validation"],
        final.val_accuracy, final.val_loss,
        output_dir,
    )

    return RunResult(
        output_dir=output_dir,
        model_path=output_dir / MODEL_FILENAME,
        class_names=class_names,
        split_counts=split_counts,
        report=report,
        metrics=metrics,
        model=transfer,
    )

"""
Training configuration and paths.

All tuneable settings live here so they are easy to find, review,
and override without touching training logic.

Directory conventions
---------------------
::

    <data_root>/                      ← Input image folder
    ├── apple_pie/
    │   ├── 1005649.jpg
    │   └── …
    └── waffles/
        └── …

    <output_dir>/                     ← Written only when a run succeeds
    ├── model.keras                   ← Backbone + head, topology and weights
    ├── classes.txt                   ← Class list, one per line, label order
    ├── config.json                   ← Training config snapshot
    ├── training_log.json             ← Loss / accuracy per epoch
    ├── training_log.csv              ← Same, CSV for tooling
    ├── model_summary.txt             ← Architecture summary
    ├── metrics.json                  ← Validation evaluation results
    ├── classification_report.txt
    └── confusion_matrix.png
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

# ── Paths ───────────────────────────────────────────────────────────────────

BASE_DIR: Path = Path.cwd()
DEFAULT_DATA_ROOT: Path = BASE_DIR / "food-101" / "images"
DEFAULT_OUTPUT_DIR: Path = BASE_DIR / "food101_mobilenet_model"

# MobileNet v1 (ImageNet) and its last pointwise-conv activation
DEFAULT_BACKBONE: str = "mobilenet"
DEFAULT_SPLICE_POINT: str = "conv_pw_13_relu"

ENV_PREFIX = "FINETUNE_"


@dataclass
class TrainingConfig:
    """All hyperparameters and settings for a single training run.

    The backbone is frozen for the whole run; only the spliced head
    (GlobalAveragePooling2D → Dense N, softmax) is trained.

    Attributes
    ----------
    data_root : Path
        Folder holding one sub-directory per class.
    image_size : int
        Square side every image is resized to (default 224).
    batch_size : int
        Mini-batch size (default 8).
    epochs : int
        Number of training epochs (default 5).
    train_split_fraction : float
        Leading fraction of the sorted sample list used for training;
        the remainder is the validation split (default 0.8).
    backbone_source : str
        Keras application name (``"mobilenet"``), local ``.keras`` /
        ``.h5`` file, or an ``http(s)://`` URL to one.
    splice_point_name : str
        Backbone layer whose output feeds the new head.
    backbone_weights : str | None
        Weights for application backbones; ``None`` means random init.
    output_dir : Path
        Where the finished model bundle is written.
    learning_rate : float
        Adam learning rate (default 1e-3).
    seed : int | None
        Shuffle seed; ``None`` gives a different order every run.
    prefetch_batches : int
        Batches decoded ahead of the training step (default 2).
    skip_corrupt : bool
        Drop undecodable images with a warning instead of aborting.
    evaluate : bool
        Write the validation report and confusion matrix.
    verbose : int
        Keras progress-bar verbosity passed to ``fit``.
    """

    # ── Dataset ─────────────────────────────────────────────────────────
    data_root: Path = DEFAULT_DATA_ROOT
    image_size: int = 224
    train_split_fraction: float = 0.8
    skip_corrupt: bool = False

    # ── Model ───────────────────────────────────────────────────────────
    backbone_source: str = DEFAULT_BACKBONE
    splice_point_name: str = DEFAULT_SPLICE_POINT
    backbone_weights: Optional[str] = "imagenet"

    # ── Hyperparameters ─────────────────────────────────────────────────
    epochs: int = 5
    batch_size: int = 8
    learning_rate: float = 1e-3
    seed: Optional[int] = 42
    prefetch_batches: int = 2

    # ── Output ──────────────────────────────────────────────────────────
    output_dir: Path = DEFAULT_OUTPUT_DIR
    evaluate: bool = True
    verbose: int = 1

    def __post_init__(self) -> None:
        self.data_root = Path(self.data_root)
        self.output_dir = Path(self.output_dir)

        for name in ("image_size", "batch_size", "epochs"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        if self.prefetch_batches < 0:
            raise ValueError(
                f"prefetch_batches must be >= 0, got {self.prefetch_batches!r}"
            )
        if not 0.0 < self.train_split_fraction < 1.0:
            raise ValueError(
                "train_split_fraction must lie strictly between 0 and 1, "
                f"got {self.train_split_fraction!r}"
            )
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate!r}")
        if not self.backbone_source:
            raise ValueError("backbone_source must not be empty")
        if not self.splice_point_name:
            raise ValueError("splice_point_name must not be empty")

    # ── Helpers ──────────────────────────────────────────────────────────

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides,
    ) -> "TrainingConfig":
        """Build a config from ``FINETUNE_<OPTION>`` environment variables.

        ``FINETUNE_BATCH_SIZE=16`` sets ``batch_size``; unknown variables
        are ignored.  Keyword ``overrides`` win over the environment.

        Raises
        ------
        ValueError
            If a variable cannot be converted to the option's type.
        """
        environ = os.environ if environ is None else environ
        values: dict = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, getattr(cls, f.name))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict:
        """Serialise to a JSON-safe dict (for saving alongside artefacts)."""
        return {
            "data_root": str(self.data_root),
            "image_size": self.image_size,
            "train_split_fraction": self.train_split_fraction,
            "skip_corrupt": self.skip_corrupt,
            "backbone_source": self.backbone_source,
            "splice_point_name": self.splice_point_name,
            "backbone_weights": self.backbone_weights,
            "epochs": self.epochs,
            "batch_size": self.batch_size,
            "learning_rate": self.learning_rate,
            "seed": self.seed,
            "prefetch_batches": self.prefetch_batches,
            "output_dir": str(self.output_dir),
            "evaluate": self.evaluate,
            "verbose": self.verbose,
        }


_NULLABLE = {"seed", "backbone_weights"}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, raw: str, default):
    """Convert an environment string to the type of ``default``."""
    raw = raw.strip()
    try:
        if isinstance(default, bool):
            lowered = raw.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if name in _NULLABLE and raw.lower() in ("", "none"):
            return None
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, Path):
            return Path(raw).expanduser()
    except ValueError:
        raise ValueError(
            f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}"
        ) from None
    return raw

"""
Command-line entry point.

Every option falls back to a ``FINETUNE_<OPTION>`` environment variable
and then to the ``TrainingConfig`` default, so running with no
arguments reproduces the built-in Food-101 / MobileNet setup::

    python -m finetune --data-root ./food-101/images --epochs 5
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

logger = logging.getLogger("finetune")


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="finetune",
        description="Fine-tune a pretrained backbone on an image-folder dataset.",
    )
    parser.add_argument("--data-root", type=Path, help="Folder with one sub-folder per class")
    parser.add_argument("--output-dir", type=Path, help="Where the model bundle is written")
    parser.add_argument("--image-size", type=_positive_int)
    parser.add_argument("--batch-size", type=_positive_int)
    parser.add_argument("--epochs", type=_positive_int)
    parser.add_argument("--train-split-fraction", type=float)
    parser.add_argument("--lr", dest="learning_rate", type=float)
    parser.add_argument(
        "--backbone-source",
        help="Keras application name, .keras/.h5 file, or URL",
    )
    parser.add_argument("--splice-point-name", help="Backbone layer feeding the new head")
    parser.add_argument(
        "--random-init",
        action="store_true",
        help="Instantiate application backbones without ImageNet weights",
    )
    parser.add_argument("--seed", type=int)
    parser.add_argument(
        "--skip-corrupt",
        action="store_true",
        default=None,
        help="Drop undecodable images instead of aborting",
    )
    parser.add_argument(
        "--no-evaluate",
        dest="evaluate",
        action="store_false",
        default=None,
        help="Skip the validation report and confusion matrix",
    )
    parser.add_argument("--verbose", type=int, choices=(0, 1, 2))
    parser.add_argument(
        "--log-level",
        default=os.environ.get("FINETUNE_LOG_LEVEL", "INFO"),
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)
    os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

    # Deferred so --help stays fast and TF_CPP_MIN_LOG_LEVEL takes effect
    from .config import TrainingConfig
    from .errors import FinetuneError
    from .runner import run_training

    overrides = {
        "data_root": args.data_root,
        "output_dir": args.output_dir,
        "image_size": args.image_size,
        "batch_size": args.batch_size,
        "epochs": args.epochs,
        "train_split_fraction": args.train_split_fraction,
        "learning_rate": args.learning_rate,
        "backbone_source": args.backbone_source,
        "splice_point_name": args.splice_point_name,
        "seed": args.seed,
        "skip_corrupt": args.skip_corrupt,
        "evaluate": args.evaluate,
        "verbose": args.verbose,
    }

    try:
        config = TrainingConfig.from_env(**overrides)
        if args.random_init:
            config.backbone_weights = None
        result = run_training(config)
    except (FinetuneError, ValueError) as exc:
        logger.error("%s", exc)
        return 1

    print(f"Model saved to {result.model_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Image-folder enumeration.

Turns ``<root>/<class_name>/<image>`` into an ordered class list and a
flat list of :class:`Sample` records.  Both levels are sorted
lexicographically so label assignment and the train / validation split
are reproducible across runs and platforms.

Public API
----------
list_classes   – Sorted class directory names under a root.
list_samples   – ``Sample`` records for every image, in class order.
split_samples  – Order-preserving train / validation slice.
ImageCatalog   – The three above bundled for one dataset root.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from .errors import DatasetIOError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")


@dataclass(frozen=True)
class Sample:
    """One labelled image on disk."""

    path: Path
    label: int


# ═══════════════════════════════════════════════════════════════════════════
# Enumeration
# ═══════════════════════════════════════════════════════════════════════════

def _list_dir(directory: Path) -> List[Path]:
    try:
        return sorted(directory.iterdir(), key=lambda p: p.name)
    except FileNotFoundError:
        raise DatasetIOError(f"Directory not found: {directory}", directory) from None
    except NotADirectoryError:
        raise DatasetIOError(f"Not a directory: {directory}", directory) from None
    except OSError as exc:
        raise DatasetIOError(
            f"Cannot read directory {directory}: {exc.strerror or exc}", directory,
        ) from exc


def list_classes(root: Path | str) -> List[str]:
    """Return the sorted names of the immediate sub-directories of ``root``.

    Raises
    ------
    DatasetIOError
        If ``root`` is missing or unreadable.  A readable root with no
        sub-directories yields an empty list.
    """
    root = Path(root)
    return [p.name for p in _list_dir(root) if p.is_dir()]


def list_samples(root: Path | str, class_names: Sequence[str]) -> List[Sample]:
    """Collect image files for each class, labelled by class position.

    Files whose extension is not ``.jpg``, ``.jpeg`` or ``.png``
    (case-insensitive) are skipped without complaint, as are nested
    directories.
    """
    root = Path(root)
    samples: List[Sample] = []
    for label, class_name in enumerate(class_names):
        for path in _list_dir(root / class_name):
            if path.suffix.lower() in IMAGE_EXTENSIONS and path.is_file():
                samples.append(Sample(path=path, label=label))
    return samples


def split_samples(
    samples: Sequence[Sample],
    train_fraction: float,
) -> Tuple[List[Sample], List[Sample]]:
    """Slice ``samples`` into train / validation without reordering.

    The first ``floor(len(samples) * train_fraction)`` samples form the
    training partition, the rest the validation partition.
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(
            f"train_fraction must lie strictly between 0 and 1, got {train_fraction!r}"
        )
    cut = math.floor(len(samples) * train_fraction)
    return list(samples[:cut]), list(samples[cut:])


# ═══════════════════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ImageCatalog:
    """Class list and samples for one dataset root."""

    root: Path
    class_names: Tuple[str, ...]
    samples: Tuple[Sample, ...] = field(repr=False)

    @classmethod
    def scan(cls, root: Path | str) -> "ImageCatalog":
        root = Path(root)
        class_names = list_classes(root)
        samples = list_samples(root, class_names)
        catalog = cls(root=root, class_names=tuple(class_names), samples=tuple(samples))
        logger.info(
            "Catalog %s: %d images, %d classes",
            root, len(samples), len(class_names),
        )
        return catalog

    @property
    def num_classes(self) -> int:
        return len(self.class_names)

    def __len__(self) -> int:
        return len(self.samples)

    def class_counts(self) -> Dict[str, int]:
        counts = {name: 0 for name in self.class_names}
        for sample in self.samples:
            counts[self.class_names[sample.label]] += 1
        return counts

    def split(self, train_fraction: float) -> Tuple[List[Sample], List[Sample]]:
        train, val = split_samples(self.samples, train_fraction)
        logger.info(
            "Split %.2f — train=%d, val=%d  (total %d)",
            train_fraction, len(train), len(val), len(self.samples),
        )
        return train, val

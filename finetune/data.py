"""
Lazy image streaming and batching on top of ``tf.data``.

Nothing is materialised up front: images are read from disk and decoded
only when a consumer pulls them, and every pass (epoch) re-reads the
files.  Shuffling happens on ``(path, label)`` references, before any
decoding, so the full-pool shuffle buffer costs one string and one int
per sample.

Public API
----------
load_image     – One file → float32 ``(H, W, 3)`` tensor in [0, 1].
SampleStream   – Ordered, restartable ``(image, one_hot)`` stream.
BatchPipeline  – Shuffled (per epoch), batched, prefetched stream.
Batch          – One ``(images, labels)`` pair pulled from a pipeline.

Usage::

    stream = SampleStream(train_samples, num_classes=101, image_size=224)
    pipeline = BatchPipeline.build(stream, len(train_samples), batch_size=8)
    for batch in pipeline:          # fresh shuffle every pass
        ...
    model.fit(pipeline.dataset, …)  # same pipeline, as a tf.data.Dataset
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import tensorflow as tf

from .catalog import Sample
from .errors import DatasetIOError, DecodeError

logger = logging.getLogger(__name__)

ImageSize = Union[int, Tuple[int, int]]


def as_hw(image_size: ImageSize) -> Tuple[int, int]:
    if isinstance(image_size, int):
        h = w = image_size
    else:
        h, w = image_size
    if h <= 0 or w <= 0:
        raise ValueError(f"image_size must be positive, got {image_size!r}")
    return int(h), int(w)


# ═══════════════════════════════════════════════════════════════════════════
# Per-image preprocessing
# ═══════════════════════════════════════════════════════════════════════════

def decode_and_resize(raw: tf.Tensor, size: Tuple[int, int]) -> tf.Tensor:
    """Decode → 3 channels → bilinear resize → scale to [0, 1]."""
    img = tf.io.decode_image(raw, channels=3, expand_animations=False)
    img = tf.image.resize(img, size, method="bilinear")
    img = tf.cast(img, tf.float32) / 255.0
    return tf.clip_by_value(img, 0.0, 1.0)


def load_image(path: Path | str, image_size: ImageSize) -> tf.Tensor:
    """Read and preprocess a single image file eagerly.

    Raises
    ------
    DatasetIOError
        If the file cannot be read.
    DecodeError
        If the bytes are not a decodable JPEG / PNG / GIF / BMP image.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise DatasetIOError(f"Cannot read image {path}: {exc.strerror or exc}", path) from exc
    try:
        return decode_and_resize(tf.constant(raw), as_hw(image_size))
    except tf.errors.InvalidArgumentError as exc:
        raise DecodeError(f"Cannot decode image {path}: {exc.message}", path) from exc


def translate_tf_error(exc: tf.errors.OpError) -> Exception:
    """Map a tf.data runtime failure onto the pipeline's error taxonomy."""
    if isinstance(exc, tf.errors.NotFoundError):
        return DatasetIOError(f"Image file disappeared while streaming: {exc.message}")
    if isinstance(exc, tf.errors.PermissionDeniedError):
        return DatasetIOError(f"Image file is not readable: {exc.message}")
    return DecodeError(f"Cannot decode an image in the stream: {exc.message}")


# ═══════════════════════════════════════════════════════════════════════════
# SampleStream
# ═══════════════════════════════════════════════════════════════════════════

class SampleStream:
    """Finite, ordered ``(image, one_hot_label)`` stream over samples.

    Yields exactly one pair per sample, in input order.  Iterating again
    starts over and re-reads every file from disk.

    Parameters
    ----------
    samples : sequence of Sample
        Records to stream; labels must lie in ``[0, num_classes)``.
    num_classes : int
        Length of the one-hot label vectors.
    image_size : int | (int, int)
        Output ``(H, W)``; an int means square.
    skip_corrupt : bool
        Drop undecodable files with a warning instead of raising
        :class:`DecodeError`.  Off by default.
    """

    def __init__(
        self,
        samples: Sequence[Sample],
        num_classes: int,
        image_size: ImageSize,
        *,
        skip_corrupt: bool = False,
    ) -> None:
        if num_classes <= 0:
            raise ValueError(f"num_classes must be positive, got {num_classes!r}")
        for sample in samples:
            if not 0 <= sample.label < num_classes:
                raise ValueError(
                    f"Label {sample.label} of {sample.path} is outside [0, {num_classes})"
                )
        self.samples: Tuple[Sample, ...] = tuple(samples)
        self.num_classes = num_classes
        self.image_size = as_hw(image_size)
        self.skip_corrupt = skip_corrupt

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def paths(self) -> List[str]:
        return [str(s.path) for s in self.samples]

    @property
    def labels(self) -> List[int]:
        return [s.label for s in self.samples]

    def parse(self, file_path: tf.Tensor, label: tf.Tensor):
        """Read, decode, resize, normalise; one-hot encode the label."""
        raw = tf.io.read_file(file_path)
        img = decode_and_resize(raw, self.image_size)
        label_onehot = tf.one_hot(label, depth=self.num_classes)
        return img, label_onehot

    def _decode_or_flag(self, file_path: tf.Tensor):
        # Runs eagerly under tf.py_function.  Read failures propagate
        # with their tf.errors type; only undecodable bytes are flagged.
        raw = tf.io.read_file(file_path)
        try:
            return decode_and_resize(raw, self.image_size), tf.constant(True)
        except tf.errors.InvalidArgumentError:
            logger.warning("Skipping undecodable image %s", file_path.numpy().decode())
            h, w = self.image_size
            return tf.zeros((h, w, 3), tf.float32), tf.constant(False)

    def _parse_flagged(self, file_path: tf.Tensor, label: tf.Tensor):
        img, ok = tf.py_function(
            self._decode_or_flag, [file_path], Tout=[tf.float32, tf.bool],
        )
        img.set_shape((*self.image_size, 3))
        ok.set_shape(())
        return img, tf.one_hot(label, depth=self.num_classes), ok

    def map_into(self, ds: tf.data.Dataset) -> tf.data.Dataset:
        """Map a ``(path, label)`` dataset to ``(image, one_hot)`` pairs.

        With ``skip_corrupt`` undecodable files are filtered out; missing
        or unreadable files still fail the pass.
        """
        if not self.skip_corrupt:
            return ds.map(self.parse, num_parallel_calls=tf.data.AUTOTUNE, deterministic=True)
        ds = ds.map(self._parse_flagged, num_parallel_calls=tf.data.AUTOTUNE, deterministic=True)
        ds = ds.filter(lambda img, label, ok: ok)
        return ds.map(lambda img, label, ok: (img, label))

    def __iter__(self) -> Iterator[Tuple[tf.Tensor, tf.Tensor]]:
        for sample in self.samples:
            try:
                img = load_image(sample.path, self.image_size)
            except DecodeError:
                if not self.skip_corrupt:
                    raise
                logger.warning("Skipping undecodable image %s", sample.path)
                continue
            yield img, tf.one_hot(sample.label, depth=self.num_classes)

    def as_dataset(self) -> tf.data.Dataset:
        """The same stream, in order, as an unbatched ``tf.data.Dataset``."""
        ds = tf.data.Dataset.from_tensor_slices((self.paths, self.labels))
        return self.map_into(ds)


# ═══════════════════════════════════════════════════════════════════════════
# BatchPipeline
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Batch:
    images: tf.Tensor   # [b, H, W, 3] float32
    labels: tf.Tensor   # [b, num_classes] float32

    def __len__(self) -> int:
        return int(self.images.shape[0])


class BatchPipeline:
    """Full-pool shuffle → fixed-size batches → bounded prefetch.

    Every pass over the pipeline (``for batch in pipeline`` or one Keras
    epoch over :attr:`dataset`) sees a fresh permutation.  With a fixed
    ``seed`` the sequence of permutations is reproducible.  The final
    batch of a pass holds the remainder and is never dropped or padded.
    """

    def __init__(
        self,
        stream: SampleStream,
        batch_size: int,
        *,
        seed: Optional[int] = None,
        prefetch: int = 2,
        shuffle: bool = True,
    ) -> None:
        if isinstance(batch_size, bool) or batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
        if len(stream) == 0:
            raise ValueError("Cannot build a batch pipeline over zero samples")
        if prefetch < 0:
            raise ValueError(f"prefetch must be >= 0, got {prefetch!r}")
        self.stream = stream
        self.batch_size = batch_size
        self.seed = seed
        self.prefetch = prefetch
        self.shuffle = shuffle
        self._dataset: Optional[tf.data.Dataset] = None

    @classmethod
    def build(
        cls,
        stream: SampleStream,
        total: int,
        batch_size: int,
        *,
        seed: Optional[int] = None,
        prefetch: int = 2,
    ) -> "BatchPipeline":
        """Shuffle over a buffer of ``total`` samples, then batch."""
        if total != len(stream):
            raise ValueError(
                f"total ({total}) does not match the stream length ({len(stream)})"
            )
        return cls(stream, batch_size, seed=seed, prefetch=prefetch)

    def __len__(self) -> int:
        return self.num_batches

    @property
    def total(self) -> int:
        return len(self.stream)

    @property
    def num_batches(self) -> int:
        return math.ceil(self.total / self.batch_size)

    @property
    def dataset(self) -> tf.data.Dataset:
        """The batched ``tf.data.Dataset`` (built once, reshuffles per pass)."""
        if self._dataset is None:
            self._dataset = self._build_dataset()
        return self._dataset

    def _build_dataset(self) -> tf.data.Dataset:
        ds = tf.data.Dataset.from_tensor_slices((self.stream.paths, self.stream.labels))
        if self.shuffle:
            ds = ds.shuffle(
                buffer_size=self.total,
                seed=self.seed,
                reshuffle_each_iteration=True,
            )
        ds = self.stream.map_into(ds)
        ds = ds.batch(self.batch_size, drop_remainder=False)
        if self.prefetch:
            ds = ds.prefetch(self.prefetch)

        logger.debug(
            "Batch pipeline: %d samples → %d batches of ≤%d (shuffle=%s, seed=%s)",
            self.total, self.num_batches, self.batch_size, self.shuffle, self.seed,
        )
        return ds

    def __iter__(self) -> Iterator[Batch]:
        iterator = iter(self.dataset)
        while True:
            try:
                images, labels = next(iterator)
            except StopIteration:
                return
            except tf.errors.OpError as exc:
                raise translate_tf_error(exc) from exc
            yield Batch(images=images, labels=labels)

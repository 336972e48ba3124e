"""Shared fixtures: synthetic image folders and tiny saved backbones."""

from __future__ import annotations

import os

os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

from pathlib import Path
from typing import Callable

import numpy as np
import pytest
import tensorflow as tf

SPLICE_POINT = "features_relu"
BACKBONE_INPUT = 32


def write_image(path: Path, size: int = 18, color=(200, 30, 90)) -> Path:
    """Write a solid-colour RGB image; format chosen from the suffix."""
    pixels = np.zeros((size, size, 3), dtype=np.uint8)
    pixels[...] = color
    if path.suffix.lower() == ".png":
        data = tf.io.encode_png(pixels)
    else:
        data = tf.io.encode_jpeg(pixels)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data.numpy())
    return path


def make_image_folder(
    root: Path,
    classes: dict[str, int],
    size: int = 18,
) -> Path:
    """``{class_name: n_images}`` → ``root/<class>/img_XX.jpg``."""
    for idx, (name, count) in enumerate(classes.items()):
        for i in range(count):
            # distinct colour per image
            color = ((40 + 100 * idx) % 256, (10 + 20 * i) % 256, (200 - 60 * idx) % 256)
            ext = ".png" if i % 2 else ".jpg"
            write_image(root / name / f"img_{i:02d}{ext}", size=size, color=color)
    return root


def save_tiny_backbone(path: Path, input_size: int = BACKBONE_INPUT) -> Path:
    """A small functional CNN with its own classifier top, saved as .keras."""
    inputs = tf.keras.Input(shape=(input_size, input_size, 3), name="image")
    x = tf.keras.layers.Conv2D(8, 3, padding="same", name="conv1")(inputs)
    x = tf.keras.layers.ReLU(name="conv1_relu")(x)
    x = tf.keras.layers.MaxPooling2D(name="pool1")(x)
    x = tf.keras.layers.Conv2D(16, 3, padding="same", name="conv2")(x)
    x = tf.keras.layers.ReLU(name=SPLICE_POINT)(x)
    x = tf.keras.layers.Flatten(name="flatten")(x)
    outputs = tf.keras.layers.Dense(10, activation="softmax", name="imagenet_top")(x)
    model = tf.keras.Model(inputs, outputs, name="tiny_backbone")
    model.save(str(path))
    return path


@pytest.fixture()
def image_folder(tmp_path: Path) -> Path:
    """2 classes × 10 images, 18px each."""
    return make_image_folder(tmp_path / "images", {"cats": 10, "dogs": 10})


@pytest.fixture(scope="session")
def backbone_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return save_tiny_backbone(tmp_path_factory.mktemp("backbone") / "tiny.keras")


@pytest.fixture()
def image_writer() -> Callable[..., Path]:
    return write_image

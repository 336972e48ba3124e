"""
Transfer-model assembly — frozen backbone + pooling / softmax head.

Architecture::

    backbone.input
      → … backbone layers (frozen) …
      → <splice point>                 ← e.g. MobileNet ``conv_pw_13_relu``
      → GlobalAveragePooling2D          ← head
      → Dense(num_classes, softmax)     ← head, the only trainable weights

Anything in the backbone after the splice point (its original classifier)
is left out of the composed graph.

The builder walks a fixed sequence of stages and records where it is::

    UNBUILT → LOADED → FROZEN → SPLICED → COMPILED
                  ↘        ↘         ↘
                          FAILED

A failure at any stage leaves the builder in ``FAILED`` and re-raises;
no partially assembled model is handed out.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import numpy as np
import tensorflow as tf
from tensorflow.keras.layers import Dense, GlobalAveragePooling2D
from tensorflow.keras.losses import CategoricalCrossentropy
from tensorflow.keras.models import load_model
from tensorflow.keras.optimizers import Adam

from .data import ImageSize, as_hw
from .errors import GraphError, ModelLoadError

logger = logging.getLogger(__name__)

HEAD_POOL_NAME = "head_pool"
HEAD_OUTPUT_NAME = "head_predictions"

# Keras application constructors available by name
APPLICATIONS: Dict[str, Callable[..., tf.keras.Model]] = {
    "mobilenet": tf.keras.applications.MobileNet,
    "mobilenet_v2": tf.keras.applications.MobileNetV2,
    "resnet50": tf.keras.applications.ResNet50,
    "inception_v3": tf.keras.applications.InceptionV3,
    "efficientnet_b0": tf.keras.applications.EfficientNetB0,
}

MODEL_FILE_SUFFIXES = (".keras", ".h5", ".hdf5")


class BuildStage(enum.Enum):
    UNBUILT = "unbuilt"
    LOADED = "loaded"
    FROZEN = "frozen"
    SPLICED = "spliced"
    COMPILED = "compiled"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Result
# ═══════════════════════════════════════════════════════════════════════════

def _param_count(variables) -> int:
    return int(sum(np.prod(tuple(v.shape)) for v in variables))


@dataclass
class TransferModel:
    """A compiled backbone + head graph and the bookkeeping around it.

    Attributes
    ----------
    model : tf.keras.Model
        Compiled composed graph, ready for ``fit``.
    frozen_weights : tuple
        Every backbone weight variable.  None of them is in
        ``model.trainable_weights``.
    head_layers : tuple
        The pooling and dense layers added on top of the splice point.
    splice_point_name : str
        Backbone layer the head hangs off.
    num_classes : int
        Width of the softmax output.
    """

    model: tf.keras.Model
    frozen_weights: Tuple[tf.Variable, ...] = field(repr=False)
    head_layers: Tuple[tf.keras.layers.Layer, ...] = field(repr=False)
    splice_point_name: str
    num_classes: int

    def _trainable_ids(self) -> set:
        return {id(v) for v in self.model.trainable_weights}

    def trainable_backbone_params(self) -> int:
        trainable = self._trainable_ids()
        return _param_count(v for v in self.frozen_weights if id(v) in trainable)

    def trainable_head_params(self) -> int:
        trainable = self._trainable_ids()
        head_vars = [v for layer in self.head_layers for v in layer.weights]
        return _param_count(v for v in head_vars if id(v) in trainable)

    def summary_lines(self) -> List[str]:
        lines: List[str] = []
        self.model.summary(print_fn=lambda s, **_: lines.append(s))
        return lines


# ═══════════════════════════════════════════════════════════════════════════
# Backbone loading
# ═══════════════════════════════════════════════════════════════════════════

def load_backbone(
    source: str,
    image_size: ImageSize,
    weights: str | None = "imagenet",
) -> tf.keras.Model:
    """Fetch the pretrained backbone graph named by ``source``.

    ``source`` is one of:

    * a Keras application name from :data:`APPLICATIONS` (``"mobilenet"``),
      instantiated with ``weights`` (the classifier top is kept unless
      ImageNet weights are requested at a size other than 224);
    * a local ``.keras`` / ``.h5`` file;
    * an ``http(s)://`` URL to such a file, downloaded once into the
      Keras cache.

    Raises
    ------
    ModelLoadError
        On any network, file or parse failure.  No retry is attempted.
    """
    h, w = as_hw(image_size)
    key = source.strip().lower()

    try:
        if key in APPLICATIONS:
            # include_top with ImageNet weights pins the input to 224;
            # any other size needs the top left off.
            include_top = weights is None or (h, w) == (224, 224)
            backbone = APPLICATIONS[key](
                input_shape=(h, w, 3),
                include_top=include_top,
                weights=weights,
            )
            logger.info("Loaded Keras application '%s' (weights=%s)", key, weights)
            return backbone

        if key.startswith(("http://", "https://")):
            fname = Path(source.split("?", 1)[0]).name
            local = tf.keras.utils.get_file(fname=fname, origin=source)
            backbone = load_model(local, compile=False)
            logger.info("Loaded backbone from %s", source)
            return backbone

        path = Path(source).expanduser()
        if not path.exists():
            raise ModelLoadError(
                f"Backbone source {source!r} is neither a known application "
                f"({', '.join(sorted(APPLICATIONS))}) nor an existing file"
            )
        if path.suffix.lower() not in MODEL_FILE_SUFFIXES:
            raise ModelLoadError(
                f"Unsupported backbone file {path} (expected one of {MODEL_FILE_SUFFIXES})"
            )
        backbone = load_model(str(path), compile=False)
        logger.info("Loaded backbone from %s", path)
        return backbone

    except ModelLoadError:
        raise
    except Exception as exc:
        raise ModelLoadError(f"Failed to load backbone {source!r}: {exc}") from exc


# ═══════════════════════════════════════════════════════════════════════════
# Builder
# ═══════════════════════════════════════════════════════════════════════════

class TransferModelBuilder:
    """Assemble a compiled :class:`TransferModel`; single use.

    Parameters
    ----------
    image_size : int | (int, int)
        Input size used when instantiating a Keras application backbone.
    learning_rate : float
        Adam learning rate.
    weights : str | None
        Weights for application backbones (``"imagenet"`` or ``None``).
    """

    def __init__(
        self,
        image_size: ImageSize = 224,
        learning_rate: float = 1e-3,
        weights: str | None = "imagenet",
    ) -> None:
        self.image_size = as_hw(image_size)
        self.learning_rate = learning_rate
        self.weights = weights
        self.stage = BuildStage.UNBUILT

    def build(
        self,
        backbone_source: str,
        splice_point_name: str,
        num_classes: int,
    ) -> TransferModel:
        if self.stage is not BuildStage.UNBUILT:
            raise RuntimeError(
                f"TransferModelBuilder already used (stage={self.stage.value})"
            )
        if num_classes < 2:
            self.stage = BuildStage.FAILED
            raise ValueError(f"num_classes must be at least 2, got {num_classes!r}")

        try:
            backbone = load_backbone(backbone_source, self.image_size, self.weights)
            self.stage = BuildStage.LOADED

            frozen_weights = self._freeze(backbone)
            self.stage = BuildStage.FROZEN

            model, head_layers = self._splice(backbone, splice_point_name, num_classes)
            self.stage = BuildStage.SPLICED

            model.compile(
                optimizer=Adam(learning_rate=self.learning_rate),
                loss=CategoricalCrossentropy(),
                metrics=["accuracy"],
            )
            self.stage = BuildStage.COMPILED
        except Exception:
            self.stage = BuildStage.FAILED
            raise

        transfer = TransferModel(
            model=model,
            frozen_weights=frozen_weights,
            head_layers=head_layers,
            splice_point_name=splice_point_name,
            num_classes=num_classes,
        )
        logger.info(
            "Built transfer model: %d classes, splice at '%s', "
            "frozen backbone params=%d, trainable head params=%d",
            num_classes, splice_point_name,
            _param_count(frozen_weights), transfer.trainable_head_params(),
        )
        return transfer

    @staticmethod
    def _freeze(backbone: tf.keras.Model) -> Tuple[tf.Variable, ...]:
        """Record every backbone weight, then mark all layers non-trainable."""
        frozen_weights = tuple(backbone.weights)
        for layer in backbone.layers:
            layer.trainable = False
        backbone.trainable = False
        logger.info(
            "Froze backbone '%s': %d layers, %d weight tensors",
            backbone.name, len(backbone.layers), len(frozen_weights),
        )
        return frozen_weights

    @staticmethod
    def _splice(
        backbone: tf.keras.Model,
        splice_point_name: str,
        num_classes: int,
    ) -> Tuple[tf.keras.Model, Tuple[tf.keras.layers.Layer, ...]]:
        try:
            splice_layer = backbone.get_layer(splice_point_name)
        except ValueError:
            raise GraphError(
                f"Layer '{splice_point_name}' not found in backbone '{backbone.name}'"
            ) from None

        features = splice_layer.output
        if len(features.shape) != 4:
            raise GraphError(
                f"Layer '{splice_point_name}' outputs shape {tuple(features.shape)}; "
                "a (batch, H, W, C) feature map is required"
            )

        pool = GlobalAveragePooling2D(data_format="channels_last", name=HEAD_POOL_NAME)
        dense = Dense(num_classes, activation="softmax", name=HEAD_OUTPUT_NAME)
        outputs = dense(pool(features))

        model = tf.keras.Model(
            inputs=backbone.input,
            outputs=outputs,
            name=f"{backbone.name}_transfer",
        )
        return model, (pool, dense)

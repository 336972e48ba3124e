"""
Image-folder Fine-tuning Pipeline
=================================

Transfer-learning trainer that:

1. Scans ``<data_root>/<class>/<image>`` folders into labelled samples.
2. Splits them (order-preserving) into train / validation partitions.
3. Streams decoded, resized, normalised images through shuffled batches.
4. Splices a pooling + softmax head onto a frozen pretrained backbone.
5. Trains the head, evaluates on the validation split, and saves the
   model bundle atomically under ``output_dir``.

Package layout
--------------
config.py     – ``TrainingConfig`` dataclass, defaults, env overrides.
errors.py     – Error taxonomy (I/O, decode, model load, graph).
catalog.py    – Class / sample enumeration and the train/val split.
data.py       – ``SampleStream`` and ``BatchPipeline`` (tf.data).
model.py      – ``TransferModelBuilder``: load → freeze → splice → compile.
train.py      – ``TrainingRunner``: epochs, ``TrainingReport``, save.
evaluate.py   – Validation report, confusion matrix, metrics persistence.
predict.py    – Load a saved bundle and classify image files.
runner.py     – End-to-end orchestrator (data → build → train → save).
cli.py        – Command-line entry point.
"""

__version__ = "0.1.0"

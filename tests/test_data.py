"""Tests for SampleStream and BatchPipeline."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from finetune.catalog import ImageCatalog, Sample
from finetune.data import Batch, BatchPipeline, SampleStream, load_image
from finetune.errors import DatasetIOError, DecodeError

from conftest import make_image_folder, write_image

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def catalog(image_folder: Path) -> ImageCatalog:
    return ImageCatalog.scan(image_folder)


@pytest.fixture()
def stream(catalog: ImageCatalog) -> SampleStream:
    return SampleStream(catalog.samples, catalog.num_classes, image_size=24)


def _sample_key(image: np.ndarray, label: np.ndarray) -> tuple:
    return (int(np.argmax(label)), round(float(image.mean()), 4))


# ---------------------------------------------------------------------------
# load_image
# ---------------------------------------------------------------------------


class TestLoadImage:
    def test_resizes_and_normalises(self, tmp_path: Path) -> None:
        path = write_image(tmp_path / "a.png", size=18, color=(255, 0, 51))
        image = load_image(path, 40).numpy()
        assert image.shape == (40, 40, 3)
        assert image.dtype == np.float32
        np.testing.assert_allclose(image[0, 0], [1.0, 0.0, 0.2], atol=1e-3)

    def test_non_square_size(self, tmp_path: Path) -> None:
        path = write_image(tmp_path / "a.jpg")
        assert tuple(load_image(path, (20, 30)).shape) == (20, 30, 3)

    def test_grayscale_becomes_three_channels(self, tmp_path: Path) -> None:
        import tensorflow as tf

        path = tmp_path / "gray.png"
        path.write_bytes(tf.io.encode_png(np.full((10, 10, 1), 128, np.uint8)).numpy())
        assert load_image(path, 12).shape[-1] == 3

    def test_corrupt_bytes_raise_decode_error(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.jpg"
        path.write_bytes(b"definitely not an image")
        with pytest.raises(DecodeError, match="broken.jpg") as excinfo:
            load_image(path, 16)
        assert excinfo.value.path == path

    def test_missing_file_raises_io_error(self, tmp_path: Path) -> None:
        with pytest.raises(DatasetIOError):
            load_image(tmp_path / "gone.jpg", 16)


# ---------------------------------------------------------------------------
# SampleStream
# ---------------------------------------------------------------------------


class TestSampleStream:
    def test_one_output_per_sample_in_order(self, stream: SampleStream) -> None:
        outputs = list(stream)
        assert len(outputs) == len(stream) == 20
        labels = [int(np.argmax(lbl)) for _, lbl in outputs]
        assert labels == [s.label for s in stream.samples]

    def test_shapes_and_value_range(self, stream: SampleStream) -> None:
        for image, label in stream:
            image = image.numpy()
            assert image.shape == (24, 24, 3)
            assert image.min() >= 0.0 and image.max() <= 1.0
            assert label.shape == (2,)
            assert float(np.sum(label)) == 1.0

    def test_restartable(self, stream: SampleStream) -> None:
        first = [_sample_key(i.numpy(), l.numpy()) for i, l in stream]
        second = [_sample_key(i.numpy(), l.numpy()) for i, l in stream]
        assert first == second

    def test_is_lazy(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"garbage")
        stream = SampleStream([Sample(good, 0), Sample(bad, 1)], 2, 16)

        iterator = iter(stream)
        image, _ = next(iterator)  # first sample decodes fine
        assert image.shape == (16, 16, 3)
        with pytest.raises(DecodeError):
            next(iterator)

    def test_skip_corrupt_drops_sample(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"garbage")
        stream = SampleStream(
            [Sample(bad, 1), Sample(good, 0)], 2, 16, skip_corrupt=True,
        )
        outputs = list(stream)
        assert len(outputs) == 1
        assert int(np.argmax(outputs[0][1])) == 0

    def test_as_dataset_matches_python_iteration(self, stream: SampleStream) -> None:
        from_ds = [_sample_key(i.numpy(), l.numpy()) for i, l in stream.as_dataset()]
        from_iter = [_sample_key(i.numpy(), l.numpy()) for i, l in stream]
        assert from_ds == from_iter

    def test_label_out_of_range_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="outside"):
            SampleStream([Sample(tmp_path / "a.jpg", 3)], num_classes=2, image_size=8)


# ---------------------------------------------------------------------------
# BatchPipeline
# ---------------------------------------------------------------------------


class TestBatchPipeline:
    def test_batches_form_a_permutation(self, stream: SampleStream) -> None:
        pipeline = BatchPipeline.build(stream, len(stream), batch_size=4, seed=7)
        batches = list(pipeline)

        seen = []
        for batch in batches:
            assert isinstance(batch, Batch)
            for image, label in zip(batch.images.numpy(), batch.labels.numpy()):
                seen.append(_sample_key(image, label))
        expected = [_sample_key(i.numpy(), l.numpy()) for i, l in stream]
        assert sorted(seen) == sorted(expected)

    def test_last_batch_keeps_remainder(self, tmp_path: Path) -> None:
        make_image_folder(tmp_path, {"a": 5, "b": 6})
        catalog = ImageCatalog.scan(tmp_path)
        stream = SampleStream(catalog.samples, catalog.num_classes, 16)
        pipeline = BatchPipeline.build(stream, 11, batch_size=4)

        sizes = [len(b) for b in pipeline]
        assert sizes == [4, 4, 3]
        assert pipeline.num_batches == len(pipeline) == 3

    def test_batch_tensor_shapes(self, stream: SampleStream) -> None:
        batch = next(iter(BatchPipeline.build(stream, len(stream), batch_size=8)))
        assert tuple(batch.images.shape) == (8, 24, 24, 3)
        assert tuple(batch.labels.shape) == (8, 2)

    def test_each_pass_reshuffles(self, stream: SampleStream) -> None:
        pipeline = BatchPipeline.build(stream, len(stream), batch_size=20, seed=3)
        orders = []
        for _ in range(3):
            (batch,) = list(pipeline)
            orders.append([
                _sample_key(img, lbl)
                for img, lbl in zip(batch.images.numpy(), batch.labels.numpy())
            ])
        assert sorted(orders[0]) == sorted(orders[1]) == sorted(orders[2])
        assert not (orders[0] == orders[1] == orders[2])

    def test_dataset_feeds_keras_shaped_elements(self, stream: SampleStream) -> None:
        pipeline = BatchPipeline.build(stream, len(stream), batch_size=6)
        spec_images, spec_labels = pipeline.dataset.element_spec
        assert tuple(spec_images.shape) == (None, 24, 24, 3)
        assert tuple(spec_labels.shape) == (None, 2)

    def test_decode_failure_aborts_iteration(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        bad = tmp_path / "bad.png"
        bad.write_bytes(b"\x89PNG but not really")
        stream = SampleStream([Sample(good, 0), Sample(bad, 1)], 2, 16)
        pipeline = BatchPipeline.build(stream, 2, batch_size=2)
        with pytest.raises(DecodeError):
            list(pipeline)

    def test_skip_corrupt_pipeline(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"garbage")
        stream = SampleStream([Sample(good, 0), Sample(bad, 1)], 2, 16, skip_corrupt=True)
        batches = list(BatchPipeline.build(stream, 2, batch_size=2))
        assert sum(len(b) for b in batches) == 1

    def test_skip_corrupt_still_fails_on_missing_file(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        stream = SampleStream(
            [Sample(good, 0), Sample(tmp_path / "gone.jpg", 1)], 2, 16, skip_corrupt=True,
        )
        with pytest.raises(DatasetIOError):
            list(stream)
        with pytest.raises(DatasetIOError):
            list(BatchPipeline.build(stream, 2, batch_size=2))

    def test_skip_corrupt_keeps_element_shapes(self, tmp_path: Path) -> None:
        good = write_image(tmp_path / "good.jpg")
        stream = SampleStream([Sample(good, 0)], 2, 16, skip_corrupt=True)
        spec_images, spec_labels = BatchPipeline.build(stream, 1, batch_size=1).dataset.element_spec
        assert tuple(spec_images.shape) == (None, 16, 16, 3)
        assert tuple(spec_labels.shape) == (None, 2)

    def test_total_must_match_stream(self, stream: SampleStream) -> None:
        with pytest.raises(ValueError, match="does not match"):
            BatchPipeline.build(stream, len(stream) + 1, batch_size=4)

    @pytest.mark.parametrize("batch_size", [0, -2])
    def test_batch_size_must_be_positive(self, stream: SampleStream, batch_size: int) -> None:
        with pytest.raises(ValueError):
            BatchPipeline.build(stream, len(stream), batch_size=batch_size)

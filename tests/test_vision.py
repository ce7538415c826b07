import numpy as np
import pytest

from shuttle_node.vision import Detection, FaceDetector, FaceEmbedder, parse_detections
from shuttle_node.vision.preprocess import (
    prepare_detector_input,
    prepare_embedder_input,
    load_image,
)


class TestParseDetections:

    def test_converts_normalized_boxes(self):
        boxes = np.array([[0.25, 0.3, 0.75, 0.7]])
        scores = np.array([0.9])

        detections = parse_detections(boxes, scores, 1000, 800)

        assert len(detections) == 1
        det = detections[0]
        assert det.x == pytest.approx(300, abs=1e-3)
        assert det.y == pytest.approx(200, abs=1e-3)
        assert det.width == pytest.approx(400, abs=1e-3)
        assert det.height == pytest.approx(400, abs=1e-3)
        assert det.score == pytest.approx(0.9)

    def test_threshold_is_strict(self):
        boxes = np.array([[0.1, 0.1, 0.5, 0.5], [0.2, 0.2, 0.6, 0.6]])
        scores = np.array([0.5, 0.51])

        detections = parse_detections(boxes, scores, 100, 100, threshold=0.5)

        assert len(detections) == 1
        assert detections[0].score == pytest.approx(0.51)

    def test_keeps_model_order(self):
        boxes = np.array([[0.0, 0.0, 0.1, 0.1], [0.5, 0.5, 0.9, 0.9]])
        scores = np.array([0.6, 0.95])

        detections = parse_detections(boxes, scores, 100, 100)

        assert [round(d.score, 2) for d in detections] == [0.6, 0.95]

    def test_accepts_batched_outputs(self):
        boxes = np.zeros((1, 3, 4))
        scores = np.zeros((1, 3))
        assert parse_detections(boxes, scores, 100, 100) == []


class TestDetection:

    def test_center_and_bbox(self):
        det = Detection(x=10, y=20, width=30, height=40, score=0.9)

        assert det.center == (25, 40)
        assert det.bbox == (10, 20, 40, 60)


class TestModelsWithoutFiles:

    def test_detector_not_ready(self, tmp_path, frame):
        detector = FaceDetector(model_path=str(tmp_path / "missing.onnx"))

        assert not detector.is_ready
        assert detector.detect(frame) == []

    def test_embedder_not_ready(self, tmp_path):
        embedder = FaceEmbedder(model_path=str(tmp_path / "missing.onnx"))

        assert not embedder.is_ready
        assert embedder.get_embedding(np.zeros((1, 112, 112, 3), dtype=np.float32)) is None


class TestPreprocess:

    def test_detector_input_geometry_and_range(self, frame):
        blob = prepare_detector_input(frame)

        assert blob.shape == (1, 128, 128, 3)
        assert blob.dtype == np.float32
        assert np.allclose(blob, -1.0)

    def test_detector_input_channels_first(self, frame):
        white = np.full_like(frame, 255)

        blob = prepare_detector_input(white, channels_first=True)

        assert blob.shape == (1, 3, 128, 128)
        assert np.allclose(blob, 127.0 / 128.0)

    def test_embedder_input(self, frame):
        white = np.full_like(frame, 255)

        blob = prepare_embedder_input(white)

        assert blob.shape == (1, 112, 112, 3)
        assert np.allclose(blob, 1.0)

    def test_embedder_input_swaps_to_rgb(self):
        image = np.zeros((50, 50, 3), dtype=np.uint8)
        image[:, :, 0] = 255  # blue in BGR

        blob = prepare_embedder_input(image)

        assert np.allclose(blob[0, :, :, 2], 1.0)
        assert np.allclose(blob[0, :, :, 0], 0.0)

    def test_load_missing_image(self, tmp_path):
        assert load_image(str(tmp_path / "missing.jpg")) is None

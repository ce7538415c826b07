"""
Face Detector using ONNX Runtime.
Short-range face detection model producing paired box/score outputs.
"""

import numpy as np
import logging
from dataclasses import dataclass
from typing import Optional

try:
    import onnxruntime as ort
except ImportError:
    ort = None

from .preprocess import prepare_detector_input, DETECTOR_INPUT_SIZE


logger = logging.getLogger(__name__)


@dataclass
class Detection:
    """Face detection in frame pixel coordinates."""
    x: float
    y: float
    width: float
    height: float
    score: float

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def bbox(self) -> tuple[int, int, int, int]:
        """(x1, y1, x2, y2) for drawing."""
        return (
            int(self.x),
            int(self.y),
            int(self.x + self.width),
            int(self.y + self.height),
        )


def parse_detections(
    boxes: np.ndarray,
    scores: np.ndarray,
    frame_width: int,
    frame_height: int,
    threshold: float = 0.5
) -> list[Detection]:
    """
    Convert raw model outputs to detections.

    Args:
        boxes: (N, 4) normalized [ymin, xmin, ymax, xmax]
        scores: (N,) confidence scores
        frame_width: Source frame width in pixels
        frame_height: Source frame height in pixels
        threshold: Minimum score to keep

    Returns:
        Detections in model output order
    """
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)

    detections = []
    for box, score in zip(boxes, scores):
        if score > threshold:
            ymin, xmin, ymax, xmax = box
            detections.append(Detection(
                x=float(xmin * frame_width),
                y=float(ymin * frame_height),
                width=float((xmax - xmin) * frame_width),
                height=float((ymax - ymin) * frame_height),
                score=float(score),
            ))
    return detections


class FaceDetector:
    """
    Short-range face detector.
    Loose acceptance threshold (0.5) - detections feed both the overlay and the trigger.
    """

    def __init__(
        self,
        model_path: str = "models/face_detection_short_range.onnx",
        input_size: int = DETECTOR_INPUT_SIZE,
        conf_threshold: float = 0.5
    ):
        self.model_path = model_path
        self.input_size = input_size
        self.conf_threshold = conf_threshold

        self._session = None
        self._input_name = None
        self._output_names = None
        self._channels_first = False

        self._load_model()

    def _load_model(self):
        """Load ONNX model."""
        if ort is None:
            logger.error("ONNX Runtime not available")
            return

        try:
            providers = ['CPUExecutionProvider']

            if 'CUDAExecutionProvider' in ort.get_available_providers():
                providers = ['CUDAExecutionProvider', 'CPUExecutionProvider']

            self._session = ort.InferenceSession(
                self.model_path,
                providers=providers
            )

            model_input = self._session.get_inputs()[0]
            self._input_name = model_input.name
            self._output_names = [o.name for o in self._session.get_outputs()]
            self._channels_first = len(model_input.shape) == 4 and model_input.shape[1] == 3

            logger.info(f"Loaded face detection model from {self.model_path}")

        except Exception as e:
            logger.error(f"Failed to load face detection model: {e}")
            self._session = None

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    def detect(self, frame: np.ndarray) -> list[Detection]:
        """
        Detect faces in a frame.

        Raises:
            RuntimeError: if the model returns fewer than two outputs
        """
        if self._session is None:
            return []

        blob = prepare_detector_input(frame, self.input_size, self._channels_first)
        outputs = self._session.run(self._output_names, {self._input_name: blob})

        if not outputs or len(outputs) < 2:
            count = len(outputs) if outputs else 0
            raise RuntimeError(f"Invalid model output - expected 2 outputs, got {count}")

        boxes, scores = outputs[0], outputs[1]
        frame_height, frame_width = frame.shape[:2]

        return parse_detections(
            boxes,
            scores,
            frame_width,
            frame_height,
            threshold=self.conf_threshold,
        )

"""Vision module for face detection, embedding, and capture triggering."""

from .detector import FaceDetector, Detection, parse_detections
from .embedder import FaceEmbedder
from .trigger import CaptureEvent, TriggerCheck, check_detection, decide

__all__ = [
    "FaceDetector",
    "Detection",
    "parse_detections",
    "FaceEmbedder",
    "CaptureEvent",
    "TriggerCheck",
    "check_detection",
    "decide",
]

"""
Image preprocessing for the detection and embedding models.
Resizes to the model's fixed input geometry and normalizes intensities.
"""

import numpy as np
import logging
from typing import Optional

try:
    import cv2
except ImportError:
    cv2 = None


logger = logging.getLogger(__name__)


DETECTOR_INPUT_SIZE = 128
EMBEDDER_INPUT_SIZE = 112


def load_image(path: str) -> Optional[np.ndarray]:
    """Read a captured still from disk (BGR). Returns None if unreadable."""
    if cv2 is None:
        logger.error("OpenCV not available")
        return None

    image = cv2.imread(path)
    if image is None:
        logger.error(f"Failed to read image: {path}")
    return image


def _to_layout(image: np.ndarray, channels_first: bool) -> np.ndarray:
    if channels_first:
        image = image.transpose(2, 0, 1)
    return np.expand_dims(image, axis=0).astype(np.float32)


def prepare_detector_input(
    frame: np.ndarray,
    size: int = DETECTOR_INPUT_SIZE,
    channels_first: bool = False
) -> np.ndarray:
    """
    Preprocess a video frame for the face detector.

    - Resize to size x size
    - BGR to RGB
    - Normalize: (x - 128) / 128

    Returns:
        Blob (1, size, size, 3), or (1, 3, size, size) if channels_first
    """
    resized = cv2.resize(frame, (size, size))
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    normalized = (rgb.astype(np.float32) - 128.0) / 128.0
    return _to_layout(normalized, channels_first)


def prepare_embedder_input(
    image: np.ndarray,
    size: int = EMBEDDER_INPUT_SIZE,
    channels_first: bool = False
) -> np.ndarray:
    """
    Preprocess a captured still for the embedding model.

    - Resize to size x size
    - BGR to RGB
    - Normalize to [0, 1]

    Returns:
        Blob (1, size, size, 3), or (1, 3, size, size) if channels_first
    """
    resized = cv2.resize(image, (size, size))
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    normalized = rgb.astype(np.float32) / 255.0
    return _to_layout(normalized, channels_first)

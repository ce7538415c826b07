"""
Face Embedder using ONNX Runtime.
Extracts 128-dimensional face embeddings from preprocessed 112x112 stills.
"""

import numpy as np
import logging
from typing import Optional

try:
    import onnxruntime as ort
except ImportError:
    ort = None

from .preprocess import EMBEDDER_INPUT_SIZE


logger = logging.getLogger(__name__)


class FaceEmbedder:
    """
    MobileFaceNet-style embedding model.
    Produces raw (unnormalized) 128-d embeddings compared by Euclidean distance.
    """

    def __init__(
        self,
        model_path: str = "models/mobilefacenet.onnx",
        input_size: int = EMBEDDER_INPUT_SIZE
    ):
        self.model_path = model_path
        self.input_size = input_size

        self._session = None
        self._input_name = None
        self._output_name = None
        self.channels_first = False
        self.embedding_dim = 128

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
            self._output_name = self._session.get_outputs()[0].name
            self.channels_first = len(model_input.shape) == 4 and model_input.shape[1] == 3

            output_shape = self._session.get_outputs()[0].shape
            if len(output_shape) > 1 and isinstance(output_shape[-1], int):
                self.embedding_dim = output_shape[-1]

            logger.info(f"Loaded embedding model from {self.model_path}")
            logger.info(f"Embedding dimension: {self.embedding_dim}")

        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            self._session = None

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    def get_embedding(self, blob: np.ndarray) -> Optional[np.ndarray]:
        """
        Extract a face embedding.

        Args:
            blob: Preprocessed input from prepare_embedder_input()

        Returns:
            Flat embedding vector, or None on error
        """
        if self._session is None:
            logger.warning("Model not loaded")
            return None

        try:
            embedding = self._session.run(
                [self._output_name],
                {self._input_name: blob.astype(np.float32)}
            )[0]
            return embedding.flatten()

        except Exception as e:
            logger.error(f"Embedding extraction error: {e}")
            return None

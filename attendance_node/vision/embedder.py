"""
Face embedding model using ONNX Runtime.
Turns an aligned face crop into a 128-dimensional descriptor.
"""

import logging
from typing import List

import cv2
import numpy as np
import onnxruntime as ort

from ..config import EMBEDDING_DIM
from ..core.exceptions import DetectionPassError, ModelLoadError
from .detector import select_providers


logger = logging.getLogger(__name__)


class FaceEmbedder:
    """
    Face descriptor model.

    Input: aligned BGR face crop. Output: float32 vector of EMBEDDING_DIM.
    Descriptors are compared by Euclidean distance, so L2 normalization is
    only applied when the model's manifest asks for it.
    """

    def __init__(
        self,
        model_path: str,
        input_size: tuple = (112, 112),
        normalize: bool = False,
    ):
        self.model_path = model_path
        self.input_size = input_size
        self.normalize = normalize

        try:
            self._session = ort.InferenceSession(model_path, providers=select_providers())
        except Exception as e:
            raise ModelLoadError(f"Failed to load embedding model from {model_path}: {e}") from e

        model_input = self._session.get_inputs()[0]
        self._input_name = model_input.name
        self._output_name = self._session.get_outputs()[0].name
        # Some exports pin the batch dimension to 1
        self._fixed_batch = bool(model_input.shape) and model_input.shape[0] == 1

        output_shape = self._session.get_outputs()[0].shape
        dim = output_shape[-1] if output_shape else None
        if isinstance(dim, int) and dim != EMBEDDING_DIM:
            raise ModelLoadError(
                f"Embedding model {model_path} produces {dim}-d vectors, expected {EMBEDDING_DIM}"
            )

        logger.info(f"Loaded embedding model from {model_path}")

    def _preprocess(self, face: np.ndarray) -> np.ndarray:
        """BGR HWC uint8 -> RGB CHW float32 in [-1, 1]."""
        if face.shape[:2] != self.input_size[::-1]:
            face = cv2.resize(face, self.input_size)
        face = cv2.cvtColor(face, cv2.COLOR_BGR2RGB)
        face = (face.astype(np.float32) - 127.5) / 128.0
        return face.transpose(2, 0, 1)

    def _postprocess(self, vector: np.ndarray) -> np.ndarray:
        vector = vector.reshape(-1).astype(np.float32)
        if vector.shape[0] != EMBEDDING_DIM:
            raise DetectionPassError(
                f"Embedding model returned {vector.shape[0]} values, expected {EMBEDDING_DIM}"
            )
        if self.normalize:
            norm = np.linalg.norm(vector)
            if norm > 0:
                vector = vector / norm
        return vector

    def embed(self, face: np.ndarray) -> np.ndarray:
        """Embed a single aligned face."""
        return self.embed_batch([face])[0]

    def embed_batch(self, faces: List[np.ndarray]) -> List[np.ndarray]:
        """
        Embed several aligned faces in one inference call.

        Raises:
            DetectionPassError: inference failed or returned a bad shape
        """
        if not faces:
            return []

        blobs = [self._preprocess(face) for face in faces]
        if self._fixed_batch:
            groups = [blob[None] for blob in blobs]
        else:
            groups = [np.stack(blobs, axis=0)]

        rows = []
        for batch in groups:
            try:
                output = self._session.run([self._output_name], {self._input_name: batch})[0]
            except Exception as e:
                raise DetectionPassError(f"Embedding inference failed: {e}") from e
            rows.extend(np.asarray(output).reshape(batch.shape[0], -1))

        return [self._postprocess(row) for row in rows]

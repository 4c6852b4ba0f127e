"""
Face analysis pipeline: detect -> align -> embed.

FaceAnalyzer is the opaque capability the rest of the node talks to. The
simulated analyzer stands in for it in degraded mode and tags everything it
produces as simulated.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from ..config import EMBEDDING_DIM
from ..core.exceptions import ModelNotReadyError
from .alignment import prepare_face
from .detector import SCRFDDetector
from .embedder import FaceEmbedder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceDetection:
    """One face found in one frame. Lives for a single pass."""
    bbox: tuple  # (x1, y1, x2, y2)
    embedding: np.ndarray
    captured_at: float
    score: float = 1.0
    simulated: bool = False

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = self.bbox
        return max(0.0, x2 - x1) * max(0.0, y2 - y1)


class FaceAnalyzer:
    """Real detection + embedding backed by ONNX models."""

    simulated = False

    def __init__(self, detector: SCRFDDetector, embedder: FaceEmbedder, min_face_size: int = 40):
        self.detector = detector
        self.embedder = embedder
        self.min_face_size = min_face_size

    def analyze(self, frame: np.ndarray, captured_at: Optional[float] = None) -> List[FaceDetection]:
        """Detect every face in the frame and embed it."""
        captured_at = time.time() if captured_at is None else captured_at

        crops, kept = [], []
        for face in self.detector.detect(frame):
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            if min(x2 - x1, y2 - y1) < self.min_face_size:
                continue
            crop = prepare_face(frame, face.bbox, face.landmarks)
            if crop is None:
                continue
            crops.append(crop)
            kept.append(((x1, y1, x2, y2), face.score))

        embeddings = self.embedder.embed_batch(crops)
        return [
            FaceDetection(bbox=bbox, embedding=embedding, captured_at=captured_at, score=score)
            for (bbox, score), embedding in zip(kept, embeddings)
        ]

    def extract_embedding(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        One-shot extraction for enrollment photos.

        Uses the largest face in the image; None when no face is found.
        """
        faces = self.analyze(image)
        if not faces:
            return None
        return max(faces, key=lambda f: f.area).embedding

    def close(self):
        """Drop references to the ONNX sessions."""
        self.detector = None
        self.embedder = None


class SimulatedFaceAnalyzer:
    """
    Stand-in used in degraded mode.

    Produces one synthetic face per frame with an embedding derived from the
    SHA-256 of a downscaled frame, so identical frames give identical
    descriptors. Every detection is flagged `simulated`.
    """

    simulated = True

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim

    def _frame_to_vector(self, frame: np.ndarray) -> np.ndarray:
        small = cv2.resize(frame, (32, 32)) if frame.ndim >= 2 and frame.size else frame
        digest = hashlib.sha256(np.ascontiguousarray(small).tobytes()).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "little"))
        return rng.normal(0.0, 0.1, self.dim).astype(np.float32)

    def analyze(self, frame: np.ndarray, captured_at: Optional[float] = None) -> List[FaceDetection]:
        captured_at = time.time() if captured_at is None else captured_at
        h, w = frame.shape[:2]
        bbox = (w * 0.35, h * 0.25, w * 0.65, h * 0.75)
        return [FaceDetection(
            bbox=bbox,
            embedding=self._frame_to_vector(frame),
            captured_at=captured_at,
            score=0.0,
            simulated=True,
        )]

    def extract_embedding(self, image: np.ndarray) -> Optional[np.ndarray]:
        raise ModelNotReadyError("Enrollment is unavailable while detection is simulated")

    def close(self):
        pass

"""
Identity matching by Euclidean distance against a gallery snapshot.
"""

import math
import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import numpy as np

from ..config import EMBEDDING_DIM


logger = logging.getLogger(__name__)

UNMATCHED = "unmatched"
DEFAULT_MATCH_THRESHOLD = 0.6


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one detection.

    `threshold` is the value the decision was made with. Anything that
    visualizes the result reads `is_match` instead of comparing again.
    """
    identity_id: str
    distance: float
    is_match: bool
    threshold: float

    @property
    def label(self) -> str:
        return self.identity_id if self.is_match else UNMATCHED

    def __str__(self) -> str:
        return f"{self.label} ({self.distance:.2f})"


class IdentityMatcher:
    """
    Nearest-neighbour matcher with a single distance threshold.

    Immutable: a pass that grabbed a matcher keeps deciding with the same
    threshold even if a new matcher is swapped in meanwhile.
    """

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD):
        threshold = float(threshold)
        if not 0.0 < threshold < 1.0:
            raise ValueError(f"Match threshold must be in (0, 1), got {threshold}")
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def with_threshold(self, threshold: float) -> "IdentityMatcher":
        return IdentityMatcher(threshold)

    @staticmethod
    def _as_vector(embedding) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if vector.shape[0] != EMBEDDING_DIM:
            raise ValueError(f"Embedding must have {EMBEDDING_DIM} values, got {vector.shape[0]}")
        return vector

    def nearest(self, embedding, gallery) -> tuple:
        """(identity_id, distance) of the closest reference, or (None, inf)."""
        if len(gallery) == 0:
            return None, math.inf
        vector = self._as_vector(embedding)

        distances = np.linalg.norm(gallery.matrix - vector, axis=1)
        best = int(np.argmin(distances))
        return gallery.owners[best], float(distances[best])

    def decide(self, identity_id, distance: float, threshold: float) -> MatchResult:
        is_match = identity_id is not None and distance < threshold
        return MatchResult(
            identity_id=identity_id if is_match else UNMATCHED,
            distance=distance,
            is_match=is_match,
            threshold=threshold,
        )

    def match(self, embedding, gallery) -> MatchResult:
        """
        Match one detection embedding against the gallery.

        The distance is always reported; an empty gallery yields
        `unmatched` with an infinite distance.
        """
        identity_id, distance = self.nearest(embedding, gallery)
        return self.decide(identity_id, distance, self._threshold)

    def match_all(self, embeddings: Iterable, gallery) -> List[MatchResult]:
        """Match every detection of one pass with the same threshold."""
        threshold = self._threshold
        results = []
        for embedding in embeddings:
            identity_id, distance = self.nearest(embedding, gallery)
            results.append(self.decide(identity_id, distance, threshold))
        return results

    def sweep(self, embedding, gallery, thresholds: Sequence[float] = (0.4, 0.5, 0.6, 0.7, 0.8)) -> List[MatchResult]:
        """Evaluate one detection against several thresholds, for calibration."""
        identity_id, distance = self.nearest(embedding, gallery)
        return [self.decide(identity_id, distance, float(t)) for t in thresholds]

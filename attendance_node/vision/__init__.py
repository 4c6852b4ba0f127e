"""Vision module: detection, alignment, embedding and matching."""

from .matcher import IdentityMatcher, MatchResult, UNMATCHED
from .pipeline import FaceAnalyzer, FaceDetection, SimulatedFaceAnalyzer

__all__ = [
    "IdentityMatcher",
    "MatchResult",
    "UNMATCHED",
    "FaceAnalyzer",
    "FaceDetection",
    "SimulatedFaceAnalyzer",
]

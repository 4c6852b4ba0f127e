"""Threads module for camera capture and background detection."""

from .capture import CaptureThread, FrameSource, OpenCVCamera
from .detection import FaceOverlay, FrameDetectionLoop, LoopState, PassOutcome, draw_overlays

__all__ = [
    "CaptureThread",
    "FrameSource",
    "OpenCVCamera",
    "FaceOverlay",
    "FrameDetectionLoop",
    "LoopState",
    "PassOutcome",
    "draw_overlays",
]

"""
Frame Detection Loop - detect -> embed -> match while tracking is active.

Threads:
    CaptureThread   owns the camera, keeps only the latest frame
    DetectionWorker one pass per tick, never two at once

Each pass reads the gallery and matcher references once at its start, so a
rebuild or threshold change applies from the next pass on. Matches are sent
out as ObservationEvents; the loop never touches session state itself.
"""

import threading
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..config import config
from ..core.diagnostics import DiagnosticSink, Severity, get_diagnostic_sink
from ..core.exceptions import AttendanceError, CameraAccessError, DetectionPassError, ModelNotReadyError
from ..core.session import ObservationEvent
from ..storage.gallery import Gallery
from ..vision.matcher import IdentityMatcher, MatchResult
from ..vision.pipeline import FaceDetection
from .capture import CaptureThread, FrameSource


logger = logging.getLogger(__name__)


class LoopState(Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    HALTED = "halted"      # stopped itself after repeated failures
    STOPPED = "stopped"


# BGR
MATCH_COLOR = (0, 255, 0)
NO_MATCH_COLOR = (0, 0, 255)


@dataclass(frozen=True)
class FaceOverlay:
    """What a UI draws for one face. Colour and label come from is_match only."""
    bbox: tuple  # (x1, y1, x2, y2)
    label: str
    color: Tuple[int, int, int]
    is_match: bool
    distance: float
    simulated: bool = False


@dataclass(frozen=True)
class PassOutcome:
    """Everything one detection pass produced."""
    detections: List[FaceDetection]
    results: List[MatchResult]
    overlays: List[FaceOverlay]
    simulated: bool
    duration: float
    captured_at: float


def make_overlay(detection: FaceDetection, result: MatchResult, gallery: Gallery) -> FaceOverlay:
    if result.is_match:
        name = gallery.display_name(result.identity_id) or result.identity_id
        label = f"{name} ({result.distance:.2f})"
    else:
        label = str(result)
    if detection.simulated:
        label += " [simulated]"

    return FaceOverlay(
        bbox=detection.bbox,
        label=label,
        color=MATCH_COLOR if result.is_match else NO_MATCH_COLOR,
        is_match=result.is_match,
        distance=result.distance,
        simulated=detection.simulated,
    )


def draw_overlays(frame: np.ndarray, overlays: List[FaceOverlay]) -> np.ndarray:
    """Draw boxes and labels on a copy of the frame."""
    canvas = frame.copy()
    for overlay in overlays:
        x1, y1, x2, y2 = (int(v) for v in overlay.bbox)
        cv2.rectangle(canvas, (x1, y1), (x2, y2), overlay.color, 2)

        label_size = cv2.getTextSize(overlay.label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)[0]
        label_y = max(y1 - 6, label_size[1] + 6)
        cv2.rectangle(canvas, (x1, label_y - label_size[1] - 4),
                      (x1 + label_size[0] + 4, label_y + 4), overlay.color, -1)
        cv2.putText(canvas, overlay.label, (x1 + 2, label_y),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 0), 1)
    return canvas


class FrameDetectionLoop:
    """
    Runs recognition passes on the latest camera frame at a fixed interval.

    Usage:
        loop = FrameDetectionLoop(
            model_manager=get_model_manager(),
            source_factory=lambda: OpenCVCamera(0),
            on_observation=session.handle_event,
            gallery=gallery,
        )
        loop.start()     # raises ModelNotReadyError / CameraAccessError
        ...
        loop.stop()      # in-flight pass finishes, camera released
    """

    def __init__(
        self,
        model_manager,
        source_factory: Callable[[], FrameSource],
        on_observation: Callable[[ObservationEvent], object],
        gallery: Optional[Gallery] = None,
        matcher: Optional[IdentityMatcher] = None,
        sink: Optional[DiagnosticSink] = None,
        interval: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None,
        fps: Optional[int] = None,
        on_pass: Optional[Callable[[PassOutcome], None]] = None,
    ):
        self.model_manager = model_manager
        self.source_factory = source_factory
        self.on_observation = on_observation
        self.on_pass = on_pass
        self.sink = sink or get_diagnostic_sink()

        self.interval = config.DETECTION_INTERVAL if interval is None else interval
        self.max_consecutive_failures = (
            config.MAX_CONSECUTIVE_FAILURES if max_consecutive_failures is None else max_consecutive_failures
        )
        self.fps = config.CAMERA_FPS if fps is None else fps

        self._gallery = gallery or Gallery.empty()
        self._matcher = matcher or IdentityMatcher(config.MATCH_THRESHOLD)

        self._lock = threading.Lock()
        self._busy = threading.Lock()
        self._stop_event = threading.Event()
        self._state = LoopState.IDLE
        self._capture: Optional[CaptureThread] = None
        self._worker: Optional[threading.Thread] = None

        # Stats
        self.frames_processed = 0
        self.frames_skipped = 0
        self.passes_failed = 0
        self.observations_emitted = 0
        self._consecutive_failures = 0

    # ========================
    # Control
    # ========================

    @property
    def state(self) -> LoopState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.TRACKING

    @property
    def gallery(self) -> Gallery:
        with self._lock:
            return self._gallery

    @property
    def matcher(self) -> IdentityMatcher:
        with self._lock:
            return self._matcher

    def start(self):
        """
        Open the camera and begin tracking.

        Raises:
            ModelNotReadyError: model is neither Ready nor Degraded
            CameraAccessError: camera could not be opened; no worker is started
        """
        with self._lock:
            if self._state is LoopState.TRACKING:
                logger.warning("Detection loop already tracking")
                return

        status = self.model_manager.status()
        if not status.is_usable:
            raise ModelNotReadyError(f"Cannot start tracking while the face model is {status.state.value}")

        capture = CaptureThread(self.source_factory(), fps=self.fps)
        try:
            capture.open()
        except CameraAccessError as e:
            self.sink.error(e, message=f"Camera access denied or not available: {e}")
            raise

        with self._lock:
            self._stop_event = threading.Event()
            self._capture = capture
            self._consecutive_failures = 0
            self._state = LoopState.TRACKING
            self._worker = threading.Thread(
                target=self._run,
                args=(capture, self._stop_event),
                name="DetectionWorker",
                daemon=True,
            )

        capture.start()
        self._worker.start()
        self.sink.info(
            "Face tracking started",
            simulated=status.is_simulated,
            interval=self.interval,
        )

    def stop(self, timeout: float = 5.0):
        """Cancel future ticks, wait for the in-flight pass, release the camera."""
        with self._lock:
            worker = self._worker
            self._stop_event.set()
        if worker is None:
            return

        if worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Detection worker did not stop in time")

        with self._lock:
            self._worker = None
            if self._state is LoopState.TRACKING:
                self._state = LoopState.STOPPED
        self.sink.info("Face tracking stopped", **self.get_stats())

    def update_gallery(self, gallery: Gallery):
        """Swap the gallery snapshot; applies from the next pass."""
        with self._lock:
            self._gallery = gallery
        logger.info(f"Detection loop now matching against {gallery!r}")

    def set_threshold(self, threshold: float):
        """Swap the matcher threshold; applies from the next pass."""
        matcher = IdentityMatcher(threshold)
        with self._lock:
            self._matcher = matcher
        logger.info(f"Match threshold set to {threshold}")

    # ========================
    # Passes
    # ========================

    def run_pass(self, frame: np.ndarray, captured_at: Optional[float] = None) -> Optional[PassOutcome]:
        """
        Run one detect -> embed -> match pass.

        Returns None without doing anything if another pass is in flight.

        Raises:
            DetectionPassError: the pass failed; counted toward auto-halt
        """
        if not self._busy.acquire(blocking=False):
            self.frames_skipped += 1
            return None

        try:
            outcome = self._execute(frame, time.time() if captured_at is None else captured_at)
        except AttendanceError as e:
            self._record_failure()
            if isinstance(e, DetectionPassError):
                raise
            raise DetectionPassError(str(e)) from e
        except Exception as e:
            self._record_failure()
            raise DetectionPassError(f"{type(e).__name__}: {e}") from e
        finally:
            self._busy.release()

        self._consecutive_failures = 0
        self.frames_processed += 1

        if self.on_pass is not None:
            try:
                self.on_pass(outcome)
            except Exception as e:
                logger.error(f"Pass callback failed: {e}")
        return outcome

    def _execute(self, frame: np.ndarray, captured_at: float) -> PassOutcome:
        start = time.time()

        analyzer = self.model_manager.get_analyzer()
        with self._lock:
            gallery = self._gallery
            matcher = self._matcher

        detections = analyzer.analyze(frame, captured_at)
        results = matcher.match_all([d.embedding for d in detections], gallery)

        overlays = []
        for detection, result in zip(detections, results):
            overlays.append(make_overlay(detection, result, gallery))
            if result.is_match:
                self.observations_emitted += 1
                self.on_observation(ObservationEvent(
                    identity_id=result.identity_id,
                    distance=result.distance,
                    captured_at=detection.captured_at,
                    simulated=detection.simulated,
                ))

        return PassOutcome(
            detections=detections,
            results=results,
            overlays=overlays,
            simulated=bool(getattr(analyzer, "simulated", False)),
            duration=time.time() - start,
            captured_at=captured_at,
        )

    def _record_failure(self):
        self.passes_failed += 1
        self._consecutive_failures += 1

    def _run(self, capture: CaptureThread, stop_event: threading.Event):
        """Worker loop: one pass per tick on the newest frame."""
        logger.info(f"Detection worker running every {self.interval}s")
        try:
            while not stop_event.is_set():
                latest = capture.take_latest_frame()
                if latest is None and not capture.is_alive():
                    self._camera_lost(capture)
                    break
                if latest is not None:
                    frame, captured_at, _ = latest
                    try:
                        self.run_pass(frame, captured_at)
                    except DetectionPassError as e:
                        self._report_failure(e)
                        if self._consecutive_failures >= self.max_consecutive_failures:
                            self._halt()
                            break
                stop_event.wait(self.interval)
        except Exception as e:
            logger.error(f"Detection worker error: {e}")
            with self._lock:
                self._state = LoopState.HALTED
        finally:
            capture.stop()
            if capture.is_alive():
                capture.join(timeout=2.0)
            capture.release()
            logger.info("Detection worker stopped")

    def _report_failure(self, error: DetectionPassError):
        logger.warning(
            f"Face detection pass failed ({self._consecutive_failures}/"
            f"{self.max_consecutive_failures}): {error} [{error.code}]"
        )
        if self._consecutive_failures == 1:
            self.sink.warning(
                f"Face detection error: {error}",
                code=error.code,
                suggestion=error.suggestion,
                severity=Severity.LOW,
            )

    def _halt(self):
        with self._lock:
            self._state = LoopState.HALTED
            self._stop_event.set()
        error = DetectionPassError(
            f"Face tracking stopped after {self._consecutive_failures} consecutive failed passes",
            suggestion="Check the camera and the model status, then retry model loading and restart tracking.",
        )
        self.sink.error(error, failures=self._consecutive_failures)

    def _camera_lost(self, capture: CaptureThread):
        with self._lock:
            self._state = LoopState.HALTED
            self._stop_event.set()
        error = capture.error or CameraAccessError("Camera stopped delivering frames")
        self.sink.error(error, message=f"Camera lost during tracking: {error}", **capture.get_stats())

    # ========================
    # Stats
    # ========================

    def get_stats(self) -> dict:
        capture = self._capture
        capture_stats = capture.get_stats() if capture is not None else {}
        return {
            "state": self.state.value,
            "frames_processed": self.frames_processed,
            "frames_dropped": capture_stats.get("frames_dropped", 0) + self.frames_skipped,
            "passes_failed": self.passes_failed,
            "observations_emitted": self.observations_emitted,
            "consecutive_failures": self._consecutive_failures,
        }

"""
Camera Capture Thread - decoupled camera reads for the detection loop.

Architecture:
    Camera (hardware)
        └──→ Latest-frame slot (overwritten every read) → Detection worker

Why this matters:
- A detection pass takes far longer than a camera read
- Reading the camera inside the pass loop would queue stale frames
- With a dedicated capture thread the worker always sees the newest frame,
  anything it did not get to in time is simply overwritten

Camera ownership:
- open() runs synchronously on the caller's thread so a permission or
  device failure surfaces before any worker is started
- The capture thread releases the camera on every exit path
"""

import threading
import time
from typing import Optional, Tuple
import logging

import cv2
import numpy as np

from ..core.exceptions import CameraAccessError

logger = logging.getLogger(__name__)


class FrameSource:
    """A camera-like source: open once, read frames, release once."""

    def open(self):
        raise NotImplementedError

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        raise NotImplementedError

    def release(self):
        raise NotImplementedError


class OpenCVCamera(FrameSource):
    """cv2.VideoCapture-backed camera."""

    def __init__(self, index: int = 0, width: int = 640, height: int = 480, fps: int = 15):
        self.index = index
        self.width = width
        self.height = height
        self.fps = fps
        self._camera = None

    def open(self):
        """
        Raises:
            CameraAccessError: device missing, busy or permission denied
        """
        try:
            camera = cv2.VideoCapture(self.index)
        except cv2.error as e:
            raise CameraAccessError(f"Camera {self.index} error: {e}") from e

        if not camera.isOpened():
            camera.release()
            raise CameraAccessError(f"Failed to open camera {self.index}")

        camera.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        camera.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        camera.set(cv2.CAP_PROP_FPS, self.fps)

        # Reduce buffer to minimize latency
        camera.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        actual_w = int(camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_h = int(camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        actual_fps = camera.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera opened: {actual_w}x{actual_h} @ {actual_fps}fps")

        self._camera = camera

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        if self._camera is None:
            return False, None
        return self._camera.read()

    def release(self):
        if self._camera is not None:
            self._camera.release()
            self._camera = None
            logger.info(f"Camera {self.index} released")


class CaptureThread(threading.Thread):
    """
    Dedicated capture thread feeding a single latest-frame slot.

    Usage:
        capture = CaptureThread(OpenCVCamera(0))
        capture.open()       # raises CameraAccessError
        capture.start()

        # In the detection worker:
        latest = capture.take_latest_frame()
        if latest is not None:
            frame, captured_at, seq = latest

        capture.stop()
        capture.join()       # camera released by now
    """

    def __init__(self, source: FrameSource, fps: int = 15, max_read_failures: int = 50):
        super().__init__(name="CaptureThread", daemon=True)

        self.source = source
        self.fps = fps
        self.max_read_failures = max_read_failures

        self._latest: Optional[Tuple[np.ndarray, float, int]] = None
        self._latest_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._release_lock = threading.Lock()

        # Stats
        self.frames_captured = 0
        self.frames_dropped = 0
        self.read_failures = 0
        self._failed_reads_in_row = 0

        # State
        self.is_running = False
        self.camera_opened = False
        self.camera_released = False
        self.error: Optional[CameraAccessError] = None

    def open(self):
        """Acquire the camera on the calling thread."""
        self.source.open()
        self.camera_opened = True

    def run(self):
        """Main capture loop - runs at camera FPS."""
        if not self.camera_opened:
            logger.error("Capture thread started without an open camera")
            return

        self.is_running = True
        frame_interval = 1.0 / self.fps if self.fps > 0 else 0.0
        logger.info(f"Capture thread running at {self.fps} FPS target")

        try:
            while not self._stop_event.is_set():
                loop_start = time.time()

                ret, frame = self.source.read()
                if not ret or frame is None:
                    self.read_failures += 1
                    self._failed_reads_in_row += 1
                    if self._failed_reads_in_row >= self.max_read_failures:
                        self.error = CameraAccessError(
                            f"Camera returned no frame {self._failed_reads_in_row} times in a row"
                        )
                        logger.error(str(self.error))
                        break
                    self._stop_event.wait(0.01)
                    continue

                self._failed_reads_in_row = 0
                self.frames_captured += 1
                self._publish(frame, loop_start)

                sleep_time = frame_interval - (time.time() - loop_start)
                if sleep_time > 0:
                    self._stop_event.wait(sleep_time)
        except Exception as e:
            self.error = CameraAccessError(f"Camera read failed: {e}")
            logger.error(f"Capture loop error: {e}")
        finally:
            self.release()
            self.is_running = False
            logger.info("Capture thread stopped")

    def _publish(self, frame: np.ndarray, captured_at: float):
        with self._latest_lock:
            if self._latest is not None:
                self.frames_dropped += 1
            self._latest = (frame, captured_at, self.frames_captured)

    def release(self):
        """Release the camera (idempotent)."""
        with self._release_lock:
            if not self.camera_opened or self.camera_released:
                return
            self.camera_released = True
        self.source.release()

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    # ========================
    # Consumer API
    # ========================

    def take_latest_frame(self) -> Optional[Tuple[np.ndarray, float, int]]:
        """
        Take the newest frame as (frame, captured_at, sequence).

        The slot is emptied, so the same frame is never handed out twice.
        Returns None if nothing new was captured since the last call.
        """
        with self._latest_lock:
            latest, self._latest = self._latest, None
        return latest

    def get_stats(self) -> dict:
        """Get capture statistics."""
        return {
            "frames_captured": self.frames_captured,
            "frames_dropped": self.frames_dropped,
            "read_failures": self.read_failures,
            "is_running": self.is_running,
            "camera_opened": self.camera_opened,
        }

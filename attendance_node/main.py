"""
Attendance Node Main Orchestrator
---------------------------------
Central coordinator for the attendance components.

Flow:
1. Model lifecycle manager brings detection + embedding up (once per process)
2. Gallery is built from enrolled identities with consent
3. Camera capture → detection loop → match → observation events
4. Session aggregator deduplicates recognized identities
5. Operator commit (or shutdown signal) writes attendance records

Key Principles:
- Tracking never starts before the model is Ready (or explicitly Degraded)
- Each identity is recorded at most once per session
- Simulated observations are never committed without an override
"""

import signal
import sys
import time
import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional

from .config import config
from .core.diagnostics import DiagnosticSink, get_diagnostic_sink
from .core.exceptions import AttendanceError, CameraAccessError, EmptyGalleryError, ModelLoadError, ModelNotReadyError
from .core.session import SessionAggregator
from .core.singletons import ModelLifecycleManager, ModelStatus, cleanup_all, get_model_manager
from .storage.gallery import Gallery, GalleryBuilder
from .storage.identities import IdentitySource, JsonIdentitySource
from .storage.records import AttendanceRecord, RecordStore, SQLiteRecordStore
from .threads.capture import FrameSource, OpenCVCamera
from .threads.detection import FrameDetectionLoop, LoopState, PassOutcome


logger = logging.getLogger(__name__)


def setup_logging():
    """Stream + file logging for the node process."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.LOG_FILE),
        ]
    )


def _default_camera() -> FrameSource:
    return OpenCVCamera(
        index=config.CAMERA_INDEX,
        width=config.CAMERA_WIDTH,
        height=config.CAMERA_HEIGHT,
        fps=config.CAMERA_FPS,
    )


class AttendanceNode:
    """
    Main attendance node application.

    Owns one session aggregator and one detection loop, and shares the
    process-wide model lifecycle manager.
    """

    def __init__(
        self,
        model_manager: Optional[ModelLifecycleManager] = None,
        identity_source: Optional[IdentitySource] = None,
        record_store: Optional[RecordStore] = None,
        source_factory: Optional[Callable[[], FrameSource]] = None,
        sink: Optional[DiagnosticSink] = None,
        on_pass: Optional[Callable[[PassOutcome], None]] = None,
    ):
        self.sink = sink or get_diagnostic_sink()
        self.model_manager = model_manager or get_model_manager()

        if identity_source is None or record_store is None:
            Path(config.DATA_DIR).mkdir(parents=True, exist_ok=True)
        self.identity_source = identity_source or JsonIdentitySource(config.IDENTITIES_PATH)
        self.record_store = record_store or SQLiteRecordStore(config.RECORDS_DB_PATH)

        self.gallery_builder = GalleryBuilder(sink=self.sink)
        self.gallery = Gallery.empty()
        self.session = SessionAggregator(self.record_store, sink=self.sink)
        self.loop = FrameDetectionLoop(
            model_manager=self.model_manager,
            source_factory=source_factory or _default_camera,
            on_observation=self.session.handle_event,
            gallery=self.gallery,
            sink=self.sink,
            on_pass=on_pass,
        )

        self.start_time: Optional[float] = None

    # ========================
    # Model
    # ========================

    def start(self, location: Optional[str] = None, retries: int = 0) -> bool:
        """
        Bring the face model up, reloading up to `retries` times if it fails.

        Returns:
            True if the model is Ready or Degraded
        """
        location = location or config.MODEL_LOCATION
        logger.info("=" * 50)
        logger.info(f"Attendance Node starting (models: {location})")
        logger.info("=" * 50)

        status = self.model_manager.initialize(location)
        self.start_time = time.time()
        usable = self._report_status(status)

        while not usable and retries > 0:
            retries -= 1
            logger.info("Retrying face model loading")
            usable = self.retry_model(location)
        return usable

    def retry_model(self, location: Optional[str] = None) -> bool:
        """Operator-triggered reload after Failed / Degraded."""
        status = self.model_manager.retry(location)
        return self._report_status(status)

    def _report_status(self, status: ModelStatus) -> bool:
        if status.is_ready:
            logger.info("Face model ready")
        elif status.is_simulated:
            logger.warning("Face model degraded: detections are SIMULATED")
        else:
            logger.error(f"Face model {status.state.value}: {status.detail}")
            logger.error(f"  -> {ModelLoadError.suggestion}")
        return status.is_usable

    # ========================
    # Gallery
    # ========================

    def build_gallery(self) -> Gallery:
        """
        Rebuild the gallery from the identity source and hand it to the loop.

        An empty gallery is not fatal: tracking runs detect-only and every
        face stays unmatched.
        """
        identities = self.identity_source.load()
        try:
            gallery = self.gallery_builder.build(identities)
        except EmptyGalleryError:
            logger.warning("No eligible identities, tracking will be detect-only")
            gallery = Gallery.empty()

        self.gallery = gallery
        self.loop.update_gallery(gallery)
        return gallery

    # ========================
    # Tracking / session
    # ========================

    def start_tracking(self, context: Optional[str] = None):
        """
        Open a fresh session and start the detection loop.

        Raises:
            ModelNotReadyError: model not Ready / Degraded
            CameraAccessError: camera unavailable (session is discarded)
        """
        self.session.start(context)
        try:
            self.loop.start()
        except (ModelNotReadyError, CameraAccessError):
            self.session.stop()
            raise

    def stop_tracking(self):
        """Stop the loop; the session stays open for commit."""
        self.loop.stop()

    def set_context(self, context: str):
        self.session.set_context(context)

    def set_threshold(self, threshold: float):
        self.loop.set_threshold(threshold)

    def commit(self, allow_simulated: bool = False) -> List[AttendanceRecord]:
        """Post attendance for everyone observed in the current session."""
        return self.session.commit(allow_simulated=allow_simulated)

    def shutdown(self):
        """Stop the node gracefully."""
        logger.info("Attendance Node shutting down...")
        self.loop.stop()
        self.session.stop()
        cleanup_all()
        self._print_stats()
        logger.info("Attendance Node stopped")

    def _print_stats(self):
        if not self.start_time:
            return
        stats = self.loop.get_stats()
        logger.info("=" * 50)
        logger.info("Session Statistics:")
        logger.info(f"  Runtime: {time.time() - self.start_time:.1f}s")
        logger.info(f"  Frames processed: {stats['frames_processed']}")
        logger.info(f"  Frames dropped: {stats['frames_dropped']}")
        logger.info(f"  Failed passes: {stats['passes_failed']}")
        logger.info(f"  Observations emitted: {stats['observations_emitted']}")
        logger.info("=" * 50)


def main():
    """Entry point."""
    setup_logging()

    node = AttendanceNode()
    shutdown_event = threading.Event()

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not node.start(retries=config.MODEL_START_RETRIES):
        logger.error("Failed to start Attendance Node")
        sys.exit(1)

    node.build_gallery()

    try:
        node.start_tracking(config.SESSION_CONTEXT)
    except AttendanceError as e:
        logger.error(f"Failed to start tracking: {e} [{e.code}]")
        node.shutdown()
        sys.exit(1)

    try:
        while not shutdown_event.wait(1.0):
            if node.loop.state is LoopState.HALTED:
                logger.error("Detection loop halted")
                break
    finally:
        node.stop_tracking()
        try:
            records = node.commit()
            logger.info(f"Committed {len(records)} attendance records")
        except AttendanceError as e:
            logger.warning(f"Attendance not committed: {e} [{e.code}]")
        node.shutdown()


if __name__ == "__main__":
    main()

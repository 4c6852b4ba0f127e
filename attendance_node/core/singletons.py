"""
Process-wide singletons for expensive resources.

The face model is slow to fetch and build, so it is owned by a single
ModelLifecycleManager per process:

1. Lazy initialization (nothing is fetched until the first initialize())
2. One load at a time (concurrent callers share the same pending Future)
3. Explicit state (Ready / Degraded / Failed are never inferred from exceptions)
4. Bounded work (fixed attempt count, caller-side timeout, retries only on request)
"""

import threading
import time
import logging
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..config import config
from .diagnostics import DiagnosticSink, Severity, get_diagnostic_sink
from .exceptions import ModelLoadError, ModelNotReadyError


logger = logging.getLogger(__name__)


class SingletonMeta(type):
    """
    Thread-safe Singleton metaclass.

    Usage:
        class MySingleton(metaclass=SingletonMeta):
            pass
    """
    _instances: Dict[type, Any] = {}
    _lock: threading.Lock = threading.Lock()

    def __call__(cls, *args, **kwargs):
        with SingletonMeta._lock:
            if cls not in SingletonMeta._instances:
                SingletonMeta._instances[cls] = super().__call__(*args, **kwargs)
        return SingletonMeta._instances[cls]

    @classmethod
    def clear_instance(mcs, cls):
        """Clear a singleton instance (for testing/cleanup)."""
        with mcs._lock:
            mcs._instances.pop(cls, None)

    @classmethod
    def has_instance(mcs, cls) -> bool:
        with mcs._lock:
            return cls in mcs._instances


class ModelState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelStatus:
    """Immutable snapshot of the model state."""
    state: ModelState
    detail: Optional[str] = None
    location: Optional[str] = None
    attempts: int = 0
    since: float = field(default_factory=time.time)

    @property
    def is_ready(self) -> bool:
        return self.state is ModelState.READY

    @property
    def is_simulated(self) -> bool:
        return self.state is ModelState.DEGRADED

    @property
    def is_usable(self) -> bool:
        """Detection passes can run (for real or simulated)."""
        return self.state in (ModelState.READY, ModelState.DEGRADED)

    @property
    def needs_retry(self) -> bool:
        return self.state in (ModelState.FAILED, ModelState.DEGRADED)


def _default_loader(location: str):
    from ..vision.artifacts import load_face_analyzer

    return load_face_analyzer(
        location,
        cache_dir=config.MODEL_CACHE_DIR,
        timeout=config.MODEL_LOAD_TIMEOUT,
        conf_threshold=config.DETECTOR_CONF_THRESHOLD,
    )


class ModelLifecycleManager(metaclass=SingletonMeta):
    """
    Owns the face detection + embedding capability.

    State machine:
        UNINITIALIZED -> LOADING -> READY | DEGRADED | FAILED
        FAILED | DEGRADED -> LOADING   (retry() only)

    Usage:
        manager = get_model_manager()
        status = manager.initialize("models")
        if status.needs_retry:
            status = manager.retry()
    """

    def __init__(
        self,
        loader: Optional[Callable[[str], Any]] = None,
        sink: Optional[DiagnosticSink] = None,
        load_timeout: Optional[float] = None,
        load_attempts: Optional[int] = None,
        allow_degraded: Optional[bool] = None,
    ):
        self._loader = loader or _default_loader
        self.sink = sink or get_diagnostic_sink()
        self.load_timeout = config.MODEL_LOAD_TIMEOUT if load_timeout is None else load_timeout
        self.load_attempts = max(1, config.MODEL_LOAD_ATTEMPTS if load_attempts is None else load_attempts)
        self.allow_degraded = config.ALLOW_DEGRADED_MODE if allow_degraded is None else allow_degraded

        self._lock = threading.Lock()
        self._status = ModelStatus(ModelState.UNINITIALIZED)
        self._analyzer = None
        self._pending: Optional[Future] = None
        self._generation = 0

    # ========================
    # Public API
    # ========================

    def status(self) -> ModelStatus:
        """Current state, never blocks on a load."""
        with self._lock:
            return self._status

    def initialize(self, location: Optional[str] = None, timeout: Optional[float] = None) -> ModelStatus:
        """
        Bring the model up once per process.

        Ready returns immediately, Loading joins the in-flight load, and
        Failed / Degraded are returned as-is (use retry()). Never raises.
        """
        return self._wait(self._begin(location, retry=False), timeout)

    def retry(self, location: Optional[str] = None, timeout: Optional[float] = None) -> ModelStatus:
        """Reload after Failed / Degraded. Otherwise behaves like initialize()."""
        return self._wait(self._begin(location, retry=True), timeout)

    def get_analyzer(self):
        """
        The analyzer to run passes with: live in Ready, simulated in Degraded.

        Raises:
            ModelNotReadyError: model is not usable
        """
        with self._lock:
            if self._status.is_usable and self._analyzer is not None:
                return self._analyzer
            state = self._status.state
        raise ModelNotReadyError(f"Face model is {state.value}")

    def extract_embedding(self, image):
        """
        One-shot embedding for an enrollment photo; None when no face.

        Raises:
            ModelNotReadyError: model is not Ready (simulated mode included)
        """
        with self._lock:
            analyzer = self._analyzer if self._status.is_ready else None
            state = self._status.state
        if analyzer is None:
            raise ModelNotReadyError(f"Enrollment needs a ready face model (currently {state.value})")
        return analyzer.extract_embedding(image)

    def cleanup(self):
        """Drop the capability and return to UNINITIALIZED."""
        with self._lock:
            self._generation += 1
            self._pending = None
            analyzer, self._analyzer = self._analyzer, None
            self._status = ModelStatus(ModelState.UNINITIALIZED)
        if analyzer is not None:
            analyzer.close()
        logger.info("ModelLifecycleManager cleaned up")

    # ========================
    # Loading
    # ========================

    def _begin(self, location: Optional[str], retry: bool) -> Optional[Future]:
        """Start a load if the state allows it. Returns the Future to wait on."""
        with self._lock:
            state = self._status.state
            if state is ModelState.READY:
                return None
            if state is ModelState.LOADING:
                return self._pending
            if state in (ModelState.FAILED, ModelState.DEGRADED) and not retry:
                return None

            location = location or self._status.location or config.MODEL_LOCATION
            previous, self._analyzer = self._analyzer, None

            self._generation += 1
            generation = self._generation
            future: Future = Future()
            self._pending = future
            self._status = ModelStatus(ModelState.LOADING, location=location)

        if previous is not None:
            previous.close()

        threading.Thread(
            target=self._load,
            args=(location, generation, future),
            name="ModelLoader",
            daemon=True,
        ).start()
        return future

    def _load(self, location: str, generation: int, future: Future):
        """Worker: bounded attempts, then settle the state exactly once."""
        self.sink.info("Starting face recognition model initialization", location=location)

        analyzer = None
        error: Optional[ModelLoadError] = None
        attempts = 0
        for attempts in range(1, self.load_attempts + 1):
            try:
                analyzer = self._loader(location)
                break
            except ModelLoadError as e:
                error = e
            except Exception as e:
                error = ModelLoadError(f"{type(e).__name__}: {e}")
            logger.warning(f"Model load attempt {attempts}/{self.load_attempts} failed: {error}")

        future.set_result(self._settle(generation, location, analyzer, error, attempts))

    def _settle(self, generation, location, analyzer, error, attempts) -> ModelStatus:
        simulated = None
        if analyzer is None and self.allow_degraded:
            from ..vision.pipeline import SimulatedFaceAnalyzer
            simulated = SimulatedFaceAnalyzer()

        with self._lock:
            stale = generation != self._generation
            if not stale:
                if analyzer is not None:
                    self._analyzer = analyzer
                    self._status = ModelStatus(ModelState.READY, location=location, attempts=attempts)
                elif simulated is not None:
                    self._analyzer = simulated
                    self._status = ModelStatus(
                        ModelState.DEGRADED, detail=str(error), location=location, attempts=attempts
                    )
                else:
                    self._status = ModelStatus(
                        ModelState.FAILED, detail=str(error), location=location, attempts=attempts
                    )
                self._pending = None
            status = self._status

        if stale:
            logger.warning(f"Discarding result of abandoned model load from {location}")
            if analyzer is not None:
                analyzer.close()
            return status

        if status.is_ready:
            self.sink.info("Face recognition models loaded successfully", location=location)
        elif status.is_simulated:
            self.sink.warning(
                "Face recognition models not available, using simulated detection",
                code="FACE_API_002",
                suggestion="Simulated observations cannot be committed without an override. Retry model loading.",
                detail=status.detail,
            )
        else:
            self.sink.error(error, message=f"Failed to load face detection models: {error}")
        return status

    def _wait(self, future: Optional[Future], timeout: Optional[float]) -> ModelStatus:
        if future is None:
            return self.status()

        timeout = self.load_timeout if timeout is None else timeout
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            return self._expire(future, timeout)

    def _expire(self, future: Future, timeout: float) -> ModelStatus:
        """Give up on a load that outlived the timeout; its late result is ignored."""
        with self._lock:
            if self._pending is not future:
                return self._status
            self._generation += 1
            self._pending = None
            self._status = ModelStatus(
                ModelState.FAILED,
                detail=f"Model loading timed out after {timeout:g}s",
                location=self._status.location,
            )
            status = self._status

        self.sink.error(ModelLoadError(status.detail), severity=Severity.HIGH)
        return status


def get_model_manager() -> ModelLifecycleManager:
    """Get the global model lifecycle manager."""
    return ModelLifecycleManager()


def cleanup_all():
    """Cleanup all singleton resources."""
    if SingletonMeta.has_instance(ModelLifecycleManager):
        ModelLifecycleManager().cleanup()
        SingletonMeta.clear_instance(ModelLifecycleManager)
    logger.info("All singleton resources cleaned up")

"""
Diagnostic Sink - structured events for state transitions and failures.

Every component reports notable transitions here instead of only logging, so
an operator-facing surface (console, dashboard) can show the latest problems
together with a suggested resolution.
"""

import threading
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, List, Optional

from .exceptions import AttendanceError


logger = logging.getLogger(__name__)


class EventType(Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"


class Severity(Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


_LOG_LEVELS = {
    EventType.ERROR: logging.ERROR,
    EventType.WARNING: logging.WARNING,
    EventType.INFO: logging.INFO,
}


@dataclass(frozen=True)
class DiagnosticEvent:
    """A single diagnostic event."""
    type: EventType
    message: str
    severity: Severity = Severity.LOW
    code: Optional[str] = None
    suggestion: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    context: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "severity": self.severity.value,
            "code": self.code,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp,
            "context": self.context,
        }


class DiagnosticSink:
    """
    Default diagnostic sink.

    - Writes each event through `logging` at a level matching its type
    - Keeps a bounded history of recent events
    - Fans events out to registered listeners (UI, alerting)

    Listener exceptions are logged and never reach the emitting component.
    """

    def __init__(self, history_size: int = 200):
        self._history: Deque[DiagnosticEvent] = deque(maxlen=history_size)
        self._listeners: List[Callable[[DiagnosticEvent], None]] = []
        self._lock = threading.Lock()

    def emit(self, event: DiagnosticEvent):
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)

        code = f" [{event.code}]" if event.code else ""
        logger.log(_LOG_LEVELS[event.type], f"{event.message}{code}")

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Diagnostic listener failed: {e}")

    def info(self, message: str, **context):
        self.emit(DiagnosticEvent(
            type=EventType.INFO,
            message=message,
            severity=Severity.LOW,
            context=context or None,
        ))

    def warning(
        self,
        message: str,
        code: Optional[str] = None,
        suggestion: Optional[str] = None,
        severity: Severity = Severity.MEDIUM,
        **context,
    ):
        self.emit(DiagnosticEvent(
            type=EventType.WARNING,
            message=message,
            severity=severity,
            code=code,
            suggestion=suggestion,
            context=context or None,
        ))

    def error(
        self,
        error: AttendanceError,
        message: Optional[str] = None,
        severity: Severity = Severity.HIGH,
        **context,
    ):
        """Emit an Error event built from an AttendanceError."""
        self.emit(DiagnosticEvent(
            type=EventType.ERROR,
            message=message or str(error) or type(error).__name__,
            severity=severity,
            code=error.code,
            suggestion=error.suggestion,
            context=context or None,
        ))

    def add_listener(self, listener: Callable[[DiagnosticEvent], None]):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[DiagnosticEvent], None]):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def recent(self, limit: Optional[int] = None) -> List[DiagnosticEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = list(self._history)
        if limit is not None:
            events = events[-limit:]
        return events

    def clear(self):
        with self._lock:
            self._history.clear()


_default_sink = DiagnosticSink()


def get_diagnostic_sink() -> DiagnosticSink:
    """Get the process-wide diagnostic sink."""
    return _default_sink

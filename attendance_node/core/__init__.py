"""Core module: model lifecycle, session state, diagnostics and errors."""

from .diagnostics import DiagnosticEvent, DiagnosticSink, EventType, Severity, get_diagnostic_sink
from .exceptions import AttendanceError
from .session import ObservationEvent, SessionAggregator, SessionSnapshot
from .singletons import (
    ModelLifecycleManager,
    ModelState,
    ModelStatus,
    SingletonMeta,
    cleanup_all,
    get_model_manager,
)

__all__ = [
    "AttendanceError",
    "DiagnosticEvent",
    "DiagnosticSink",
    "EventType",
    "Severity",
    "get_diagnostic_sink",
    "ObservationEvent",
    "SessionAggregator",
    "SessionSnapshot",
    "ModelLifecycleManager",
    "ModelState",
    "ModelStatus",
    "SingletonMeta",
    "cleanup_all",
    "get_model_manager",
]

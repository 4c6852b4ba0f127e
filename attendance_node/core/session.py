"""
Session Aggregator - collects distinct recognized identities for one
tracking run and commits them as attendance records.

The detection loop never touches the observed set directly; it sends
ObservationEvents through handle_event(). Commit is an explicit operator
action and is all-or-nothing.
"""

import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from .diagnostics import DiagnosticSink, get_diagnostic_sink
from .exceptions import (
    EmptySessionError,
    MissingContextError,
    SessionClosedError,
    SimulatedCommitError,
)
from ..storage.records import (
    AttendanceRecord,
    AttendanceStatus,
    CaptureMethod,
    MemoryRecordStore,
    RecordStore,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservationEvent:
    """A confirmed match reported by one detection pass."""
    identity_id: str
    distance: float = 0.0
    captured_at: float = field(default_factory=time.time)
    simulated: bool = False


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session for UIs and status endpoints."""
    context: Optional[str]
    observed: FrozenSet[str]
    simulated: FrozenSet[str]
    is_open: bool
    started_at: Optional[float]


class SessionAggregator:
    """
    Deduplicating set of identities observed during tracking.

    Usage:
        session = SessionAggregator(record_store)
        session.start("CS101")
        session.observe("s-001")
        records = session.commit()
    """

    def __init__(self, record_store: Optional[RecordStore] = None, sink: Optional[DiagnosticSink] = None):
        self.record_store = record_store or MemoryRecordStore()
        self.sink = sink or get_diagnostic_sink()

        self._lock = threading.Lock()
        self._open = False
        self._context: Optional[str] = None
        self._started_at: Optional[float] = None
        # identity_id -> first observation; insertion order is commit order
        self._observed: Dict[str, ObservationEvent] = {}

    # ========================
    # Properties
    # ========================

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._open

    @property
    def context(self) -> Optional[str]:
        with self._lock:
            return self._context

    @property
    def observed(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._observed)

    @property
    def simulated_observations(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(i for i, e in self._observed.items() if e.simulated)

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                context=self._context,
                observed=frozenset(self._observed),
                simulated=frozenset(i for i, e in self._observed.items() if e.simulated),
                is_open=self._open,
                started_at=self._started_at,
            )

    # ========================
    # Lifecycle
    # ========================

    def start(self, context: Optional[str] = None):
        """Open a fresh session. Uncommitted observations of a previous one are dropped."""
        with self._lock:
            discarded = len(self._observed) if self._open else 0
            self._open = True
            self._context = context
            self._started_at = time.time()
            self._observed = {}

        if discarded:
            logger.warning(f"Discarded {discarded} uncommitted observations from previous session")
        self.sink.info("Attendance session started", context=context)

    def set_context(self, context: str):
        """Bind (or rebind) the course/class the attendance belongs to."""
        with self._lock:
            self._context = context
        logger.info(f"Session context set to {context}")

    def stop(self):
        """Close the session without committing."""
        with self._lock:
            was_open = self._open
            discarded = len(self._observed)
            self._open = False
            self._observed = {}

        if was_open:
            self.sink.info("Attendance session stopped", discarded=discarded)

    # ========================
    # Observations
    # ========================

    def observe(self, identity_id: str, simulated: bool = False) -> bool:
        """Record an identity; True only the first time it is seen in this session."""
        return self.handle_event(ObservationEvent(identity_id=identity_id, simulated=simulated))

    def handle_event(self, event: ObservationEvent) -> bool:
        with self._lock:
            if not self._open:
                return False
            if event.identity_id in self._observed:
                return False
            self._observed[event.identity_id] = event

        logger.info(
            f"Observed {event.identity_id} (distance={event.distance:.3f}"
            f"{', simulated' if event.simulated else ''})"
        )
        return True

    # ========================
    # Commit
    # ========================

    def commit(self, allow_simulated: bool = False) -> List[AttendanceRecord]:
        """
        Turn the observed set into attendance records and persist them.

        On success the session is closed. On any failure nothing is persisted
        and the session stays open with its observations.

        Raises:
            SessionClosedError: no open session
            MissingContextError: no context bound
            EmptySessionError: nobody was observed
            SimulatedCommitError: simulated observations without allow_simulated
            RecordStoreError: persistence failed
        """
        with self._lock:
            if not self._open:
                raise SessionClosedError("No open attendance session to commit")
            if not self._context:
                raise MissingContextError("Please select a course before posting attendance")
            if not self._observed:
                raise EmptySessionError("No faces detected to post attendance")

            simulated = [i for i, e in self._observed.items() if e.simulated]
            if simulated and not allow_simulated:
                raise SimulatedCommitError(
                    f"{len(simulated)} observations come from simulated detection"
                )

            timestamp = AttendanceRecord.now()
            records = [
                AttendanceRecord(
                    identity_id=identity_id,
                    context=self._context,
                    timestamp=timestamp,
                    status=AttendanceStatus.PRESENT,
                    capture_method=CaptureMethod.AUTOMATIC,
                    notes="simulated" if event.simulated else None,
                )
                for identity_id, event in self._observed.items()
            ]

            self.record_store.save_many(records)

            context = self._context
            self._open = False
            self._observed = {}

        self.sink.info(
            f"Posted attendance for {len(records)} students",
            context=context,
            simulated=len(simulated),
        )
        return records

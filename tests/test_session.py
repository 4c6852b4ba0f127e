import pytest

from attendance_node.core.exceptions import (
    EmptySessionError,
    MissingContextError,
    RecordStoreError,
    SessionClosedError,
    SimulatedCommitError,
)
from attendance_node.core.session import ObservationEvent, SessionAggregator
from attendance_node.storage.records import (
    AttendanceStatus,
    CaptureMethod,
    MemoryRecordStore,
    RecordStore,
)


class BrokenStore(RecordStore):
    def save_many(self, records):
        raise RecordStoreError("disk full")


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def session(store, sink):
    return SessionAggregator(store, sink=sink)


def test_start_yields_empty_open_session(session):
    session.start("CS101")

    assert session.is_open
    assert session.context == "CS101"
    assert session.observed == frozenset()


def test_start_discards_previous_observations(session):
    session.start("CS101")
    session.observe("A")
    session.start("CS101")

    assert session.observed == frozenset()


def test_observe_deduplicates(session):
    session.start("CS101")

    assert session.observe("A") is True
    assert session.observe("A") is False
    assert session.observed == {"A"}


def test_observe_outside_session_is_ignored(session):
    assert session.observe("A") is False
    assert session.observed == frozenset()


def test_handle_event(session):
    session.start("CS101")
    session.handle_event(ObservationEvent("A", distance=0.3))
    session.handle_event(ObservationEvent("A", distance=0.1))

    assert session.observed == {"A"}


def test_commit_produces_one_present_record_per_identity(session, store):
    session.start("CS101")
    for identity_id in ["A", "A", "B"]:
        session.observe(identity_id)

    records = session.commit()

    assert [r.identity_id for r in records] == ["A", "B"]
    assert all(r.context == "CS101" for r in records)
    assert all(r.status is AttendanceStatus.PRESENT for r in records)
    assert all(r.capture_method is CaptureMethod.AUTOMATIC for r in records)
    assert store.records == records
    assert not session.is_open


def test_commit_empty_session_fails_without_records(session, store):
    session.start("CS101")

    with pytest.raises(EmptySessionError):
        session.commit()

    assert store.records == []
    assert session.is_open


def test_commit_requires_context(session, store):
    session.start()
    session.observe("A")

    with pytest.raises(MissingContextError):
        session.commit()
    assert store.records == []

    session.set_context("CS101")
    assert len(session.commit()) == 1


def test_commit_requires_open_session(session):
    with pytest.raises(SessionClosedError):
        session.commit()

    session.start("CS101")
    session.observe("A")
    session.stop()

    with pytest.raises(SessionClosedError):
        session.commit()


def test_simulated_observations_need_override(session, store):
    session.start("CS101")
    session.observe("A", simulated=True)
    session.observe("B")

    with pytest.raises(SimulatedCommitError):
        session.commit()
    assert store.records == []
    assert session.simulated_observations == {"A"}

    records = session.commit(allow_simulated=True)
    assert {r.identity_id: r.notes for r in records} == {"A": "simulated", "B": None}


def test_store_failure_keeps_session_open(sink):
    session = SessionAggregator(BrokenStore(), sink=sink)
    session.start("CS101")
    session.observe("A")

    with pytest.raises(RecordStoreError):
        session.commit()

    assert session.is_open
    assert session.observed == {"A"}


def test_snapshot(session):
    session.start("CS101")
    session.observe("A")

    snapshot = session.snapshot()

    assert snapshot.context == "CS101"
    assert snapshot.observed == {"A"}
    assert snapshot.is_open
    assert snapshot.started_at is not None


def test_lifecycle_diagnostics(session, sink):
    session.start("CS101")
    session.observe("A")
    session.commit()

    messages = [e.message for e in sink.recent()]
    assert "Attendance session started" in messages
    assert "Posted attendance for 1 students" in messages

from attendance_node.storage.records import (
    AttendanceRecord,
    AttendanceStatus,
    CaptureMethod,
    SQLiteRecordStore,
)


def make_record(identity_id, context="CS101", status=AttendanceStatus.PRESENT):
    return AttendanceRecord(identity_id, context, AttendanceRecord.now(), status=status)


def test_save_and_read_back(tmp_path):
    store = SQLiteRecordStore(str(tmp_path / "attendance.db"))

    written = store.save_many([make_record("A"), make_record("B")])

    assert written == 2
    records = store.get_records()
    assert {r.identity_id for r in records} == {"A", "B"}
    assert all(r.capture_method is CaptureMethod.AUTOMATIC for r in records)


def test_filter_by_context(tmp_path):
    store = SQLiteRecordStore(str(tmp_path / "attendance.db"))
    store.save_many([make_record("A", "CS101"), make_record("B", "MA201")])

    assert [r.identity_id for r in store.get_records(context="MA201")] == ["B"]
    assert store.count("CS101") == 1
    assert store.count() == 2


def test_empty_save_is_a_no_op(tmp_path):
    store = SQLiteRecordStore(str(tmp_path / "attendance.db"))

    assert store.save_many([]) == 0
    assert store.count() == 0


def test_stats_by_status(tmp_path):
    store = SQLiteRecordStore(str(tmp_path / "attendance.db"))
    store.save_many([
        make_record("A"),
        make_record("B"),
        make_record("C", status=AttendanceStatus.LATE),
    ])

    stats = store.get_stats()

    assert stats["total_records"] == 3
    assert stats["records_by_status"] == {"Present": 2, "Late": 1}


def test_store_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "attendance.db")
    SQLiteRecordStore(path).save_many([make_record("A")])

    assert SQLiteRecordStore(path).count() == 1

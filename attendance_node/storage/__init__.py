"""Storage module for enrolled identities, gallery snapshots and attendance records."""

from .gallery import EnrolledIdentity, Gallery, GalleryBuilder
from .identities import IdentitySource, JsonIdentitySource, StaticIdentitySource
from .records import (
    AttendanceRecord,
    AttendanceStatus,
    CaptureMethod,
    MemoryRecordStore,
    RecordStore,
    SQLiteRecordStore,
)

__all__ = [
    "EnrolledIdentity",
    "Gallery",
    "GalleryBuilder",
    "IdentitySource",
    "JsonIdentitySource",
    "StaticIdentitySource",
    "AttendanceRecord",
    "AttendanceStatus",
    "CaptureMethod",
    "MemoryRecordStore",
    "RecordStore",
    "SQLiteRecordStore",
]

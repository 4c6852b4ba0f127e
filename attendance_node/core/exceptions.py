"""
Exception hierarchy for the attendance node.

Every error carries a diagnostic code and a suggested resolution so it can be
turned into a DiagnosticEvent without extra bookkeeping at the raise site.
"""


class AttendanceError(Exception):
    """Base exception for the attendance node."""

    code = "ATTENDANCE_000"
    suggestion = None

    def __init__(self, message: str = "", suggestion: str = None):
        super().__init__(message)
        if suggestion is not None:
            self.suggestion = suggestion


class ModelLoadError(AttendanceError):
    """Raised when model artifacts cannot be fetched, parsed or loaded."""

    code = "FACE_API_001"
    suggestion = (
        "Check that the model location is reachable and holds manifest.json "
        "with its weight files, then retry model initialization."
    )


class ModelNotReadyError(AttendanceError):
    """Raised when the face model is used before it reached a usable state."""

    code = "FACE_API_003"
    suggestion = "Initialize the face model (or retry after a failure) first."


class CameraAccessError(AttendanceError):
    """Raised when the camera cannot be opened."""

    code = "CAM_ACCESS_001"
    suggestion = "Check camera permissions and ensure a camera is connected, then retry."


class DetectionPassError(AttendanceError):
    """Raised when a single detect/embed/match pass fails."""

    code = "FACE_DETECT_001"
    suggestion = "Transient frame failure; tracking continues with the next frame."


class EmptyGalleryError(AttendanceError):
    """Raised when no enrolled identity is eligible for matching."""

    code = "FACE_MATCHER_001"
    suggestion = "Enroll identities with consent and a face embedding."


class EmptySessionError(AttendanceError):
    """Raised when committing a session with no observations."""

    code = "SESSION_001"
    suggestion = "Track until at least one identity is recognized."


class MissingContextError(AttendanceError):
    """Raised when committing a session that has no bound context."""

    code = "SESSION_002"
    suggestion = "Select a course before posting attendance."


class SessionClosedError(AttendanceError):
    """Raised when committing a session that is not open."""

    code = "SESSION_003"
    suggestion = "Start a session before committing."


class SimulatedCommitError(AttendanceError):
    """Raised when a commit would persist simulated observations."""

    code = "SESSION_004"
    suggestion = (
        "Observations came from simulated detection. Retry model loading, or "
        "commit with an explicit operator override."
    )


class RecordStoreError(AttendanceError):
    """Raised when attendance records cannot be persisted."""

    code = "STORE_001"
    suggestion = "Check the attendance database path and disk space."


class EnrollmentError(AttendanceError):
    """Raised when an identity cannot be enrolled from an image."""

    code = "FACE_EXTRACT_001"
    suggestion = "Try a different image with a single, clearly visible face."

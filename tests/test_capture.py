import pytest

from attendance_node.core.exceptions import CameraAccessError
from attendance_node.threads.capture import CaptureThread

from conftest import FakeFrameSource, frame_for, wait_for


def test_open_failure_is_raised_synchronously():
    capture = CaptureThread(FakeFrameSource(deny=True))

    with pytest.raises(CameraAccessError):
        capture.open()
    assert not capture.camera_opened


def test_latest_frame_wins():
    capture = CaptureThread(FakeFrameSource())
    capture._publish(frame_for(1), 1.0)
    capture._publish(frame_for(2), 2.0)

    frame, captured_at, _ = capture.take_latest_frame()

    assert frame[0, 0, 0] == 2
    assert captured_at == 2.0
    assert capture.frames_dropped == 1
    assert capture.take_latest_frame() is None


def test_run_and_stop_release_camera():
    source = FakeFrameSource([frame_for(1)])
    capture = CaptureThread(source, fps=100)
    capture.open()
    capture.start()

    assert wait_for(lambda: capture.frames_captured > 0)
    capture.stop()
    capture.join(2.0)

    assert source.released
    assert not capture.is_running


def test_thread_without_open_camera_exits():
    source = FakeFrameSource()
    capture = CaptureThread(source)
    capture.start()
    capture.join(2.0)

    assert source.reads == 0
    assert not source.released


def test_release_is_idempotent():
    source = FakeFrameSource()
    capture = CaptureThread(source)
    capture.open()

    capture.release()
    source.released = False
    capture.release()

    assert not source.released


def test_repeated_empty_reads_end_the_thread():
    class BlankCamera(FakeFrameSource):
        def read(self):
            return False, None

    source = BlankCamera()
    capture = CaptureThread(source, max_read_failures=3)
    capture.open()
    capture.start()
    capture.join(2.0)

    assert not capture.is_alive()
    assert isinstance(capture.error, CameraAccessError)
    assert capture.read_failures == 3
    assert source.released

import threading
import time

import numpy as np
import pytest

from attendance_node.config import EMBEDDING_DIM
from attendance_node.core.diagnostics import DiagnosticSink
from attendance_node.core.exceptions import CameraAccessError
from attendance_node.core.singletons import ModelLifecycleManager, SingletonMeta
from attendance_node.storage.gallery import EnrolledIdentity
from attendance_node.threads.capture import FrameSource
from attendance_node.vision.pipeline import FaceDetection


def unit(index, scale=1.0):
    """128-d vector with a single non-zero component."""
    vector = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    vector[index] = scale
    return vector


def frame_for(key):
    """Tiny frame whose first pixel tells the scripted analyzer who is in it."""
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    frame[0, 0, 0] = key
    return frame


class ScriptedAnalyzer:
    """Returns the embeddings registered for the frame's first pixel value."""

    def __init__(self, faces_by_key=None, simulated=False):
        self.faces_by_key = faces_by_key or {}
        self.simulated = simulated
        self.calls = 0
        self.closed = False

    def analyze(self, frame, captured_at=None):
        self.calls += 1
        captured_at = time.time() if captured_at is None else captured_at
        embeddings = self.faces_by_key.get(int(frame[0, 0, 0]), [])
        return [
            FaceDetection(
                bbox=(10.0 * i, 10.0, 10.0 * i + 20.0, 30.0),
                embedding=embedding,
                captured_at=captured_at,
                simulated=self.simulated,
            )
            for i, embedding in enumerate(embeddings)
        ]

    def extract_embedding(self, image):
        faces = self.analyze(image)
        return faces[0].embedding if faces else None

    def close(self):
        self.closed = True


class FailingAnalyzer(ScriptedAnalyzer):
    def analyze(self, frame, captured_at=None):
        self.calls += 1
        raise RuntimeError("inference exploded")


class BlockingAnalyzer(ScriptedAnalyzer):
    """Holds each pass until `release` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def analyze(self, frame, captured_at=None):
        self.entered.set()
        self.release.wait(5.0)
        return super().analyze(frame, captured_at)


class FakeFrameSource(FrameSource):
    """Camera stand-in: cycles through frames, records open/release."""

    def __init__(self, frames=None, deny=False):
        self.frames = frames or [frame_for(0)]
        self.deny = deny
        self.opened = False
        self.released = False
        self.reads = 0

    def open(self):
        if self.deny:
            raise CameraAccessError("Permission denied")
        self.opened = True

    def read(self):
        frame = self.frames[self.reads % len(self.frames)]
        self.reads += 1
        return True, frame

    def release(self):
        self.released = True


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def fresh_singletons():
    SingletonMeta.clear_instance(ModelLifecycleManager)
    yield
    SingletonMeta.clear_instance(ModelLifecycleManager)


@pytest.fixture
def sink():
    return DiagnosticSink()


@pytest.fixture
def emb_a():
    return unit(0)


@pytest.fixture
def emb_b():
    return unit(1)


@pytest.fixture
def identities(emb_a, emb_b):
    return [
        EnrolledIdentity("A", "Alice", True, emb_a),
        EnrolledIdentity("B", "Bob", True, emb_b),
    ]


@pytest.fixture
def make_manager(sink):
    """Build a lifecycle manager around an arbitrary loader."""
    def _make(loader, **kwargs):
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("load_timeout", 5.0)
        kwargs.setdefault("load_attempts", 1)
        kwargs.setdefault("allow_degraded", False)
        return ModelLifecycleManager(loader=loader, **kwargs)
    return _make


@pytest.fixture
def ready_manager(make_manager):
    """Manager already Ready with the given analyzer."""
    def _ready(analyzer):
        manager = make_manager(lambda location: analyzer)
        status = manager.initialize("models")
        assert status.is_ready
        return manager
    return _ready

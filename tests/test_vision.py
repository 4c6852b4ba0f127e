from types import SimpleNamespace

import numpy as np
import pytest

from attendance_node.core.exceptions import DetectionPassError, ModelLoadError
from attendance_node.vision import detector as detector_module
from attendance_node.vision import embedder as embedder_module
from attendance_node.vision.alignment import (
    FACE_TEMPLATE,
    crop_face,
    prepare_face,
    similarity_transform,
)
from attendance_node.vision.detector import RawFace, SCRFDDetector
from attendance_node.vision.embedder import FaceEmbedder
from attendance_node.vision.pipeline import FaceAnalyzer, SimulatedFaceAnalyzer

from conftest import frame_for, unit


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(self, batch=None, dim=128, fail=False):
        self.batch = batch
        self.dim = dim
        self.fail = fail
        self.batches = []

    def get_inputs(self):
        return [SimpleNamespace(name="input", shape=[self.batch, 3, 112, 112])]

    def get_outputs(self):
        return [SimpleNamespace(name="embedding", shape=[self.batch, self.dim])]

    def run(self, names, feeds):
        if self.fail:
            raise RuntimeError("bad input")
        batch = feeds["input"]
        self.batches.append(batch.shape[0])
        return [np.full((batch.shape[0], self.dim), 2.0, dtype=np.float32)]


@pytest.fixture
def make_embedder(monkeypatch):
    def _make(session, **kwargs):
        monkeypatch.setattr(embedder_module.ort, "InferenceSession", lambda path, providers=None: session)
        return FaceEmbedder("emb.onnx", **kwargs)
    return _make


def test_similarity_transform_of_template_is_identity():
    M = similarity_transform(FACE_TEMPLATE, FACE_TEMPLATE)

    assert np.allclose(M, [[1, 0, 0], [0, 1, 0]], atol=1e-4)


def test_crop_face_rejects_empty_box():
    image = np.zeros((100, 100, 3), dtype=np.uint8)

    assert crop_face(image, (50, 50, 50, 80)) is None
    assert crop_face(image, (10, 10, 60, 60)).shape == (112, 112, 3)


def test_prepare_face_prefers_landmarks():
    image = np.zeros((200, 200, 3), dtype=np.uint8)

    aligned = prepare_face(image, (0, 0, 10, 10), FACE_TEMPLATE + 20)
    assert aligned.shape == (112, 112, 3)
    assert prepare_face(image, (0, 0, 0, 0), None) is None


def test_embedder_batches_dynamic_inputs(make_embedder):
    session = FakeSession(batch="N")
    embedder = make_embedder(session)

    vectors = embedder.embed_batch([np.zeros((112, 112, 3), np.uint8)] * 3)

    assert session.batches == [3]
    assert all(v.shape == (128,) for v in vectors)


def test_embedder_runs_fixed_batch_one_by_one(make_embedder):
    session = FakeSession(batch=1)
    embedder = make_embedder(session)

    embedder.embed_batch([np.zeros((80, 80, 3), np.uint8)] * 2)

    assert session.batches == [1, 1]


def test_embedder_normalizes_when_asked(make_embedder):
    vector = make_embedder(FakeSession(), normalize=True).embed(np.zeros((112, 112, 3), np.uint8))

    assert np.linalg.norm(vector) == pytest.approx(1.0, rel=1e-5)


def test_embedder_rejects_wrong_dimension(make_embedder):
    with pytest.raises(ModelLoadError):
        make_embedder(FakeSession(dim=512))


def test_embedder_inference_failure(make_embedder):
    embedder = make_embedder(FakeSession(fail=True))

    with pytest.raises(DetectionPassError):
        embedder.embed(np.zeros((112, 112, 3), np.uint8))


def test_embedder_load_failure(monkeypatch):
    def broken(path, providers=None):
        raise RuntimeError("protobuf parsing failed")

    monkeypatch.setattr(embedder_module.ort, "InferenceSession", broken)

    with pytest.raises(ModelLoadError):
        FaceEmbedder("emb.onnx")


class StubDetector:
    def __init__(self, faces):
        self.faces = faces

    def detect(self, image):
        return self.faces


class StubEmbedder:
    def embed_batch(self, faces):
        return [unit(i) for i in range(len(faces))]


def test_analyzer_skips_tiny_faces_and_picks_largest():
    faces = [
        RawFace(np.array([0, 0, 20, 20], dtype=np.float32), 0.9, None),
        RawFace(np.array([10, 10, 70, 70], dtype=np.float32), 0.8, None),
        RawFace(np.array([100, 10, 200, 110], dtype=np.float32), 0.7, None),
    ]
    analyzer = FaceAnalyzer(StubDetector(faces), StubEmbedder(), min_face_size=40)
    image = np.zeros((240, 320, 3), dtype=np.uint8)

    detections = analyzer.analyze(image, captured_at=5.0)

    assert len(detections) == 2
    assert all(d.captured_at == 5.0 and not d.simulated for d in detections)
    assert analyzer.extract_embedding(image)[1] == 1.0


def test_analyzer_without_faces():
    analyzer = FaceAnalyzer(StubDetector([]), StubEmbedder())

    assert analyzer.analyze(frame_for(0)) == []
    assert analyzer.extract_embedding(frame_for(0)) is None


def test_simulated_embeddings_are_deterministic():
    analyzer = SimulatedFaceAnalyzer()

    first = analyzer.analyze(frame_for(3))[0]
    second = analyzer.analyze(frame_for(3))[0]

    assert first.simulated
    assert np.array_equal(first.embedding, second.embedding)


class FakeDetectorSession:
    """Nine-output SCRFD head with two overlapping hits at stride 32."""

    def get_inputs(self):
        return [SimpleNamespace(name="input.1", shape=[1, 3, 640, 640])]

    def get_outputs(self):
        return [SimpleNamespace(name=f"out{i}") for i in range(9)]

    def get_providers(self):
        return ["CPUExecutionProvider"]

    def run(self, names, feeds):
        counts = [(640 // s) ** 2 * 2 for s in (8, 16, 32)]
        scores = [np.zeros((n, 1), np.float32) for n in counts]
        boxes = [np.zeros((n, 4), np.float32) for n in counts]
        kps = [np.zeros((n, 10), np.float32) for n in counts]

        # cell (row 5, col 5) at stride 32 -> anchors 210 and 211, centre (160, 160)
        scores[2][210] = 0.9
        scores[2][211] = 0.8
        boxes[2][210] = boxes[2][211] = 1.0
        return scores + boxes + kps


def test_detector_decodes_and_suppresses_overlaps(monkeypatch):
    monkeypatch.setattr(detector_module.ort, "InferenceSession", lambda path, providers=None: FakeDetectorSession())
    detector = SCRFDDetector("det.onnx")

    faces = detector.detect(np.zeros((640, 640, 3), dtype=np.uint8))

    assert len(faces) == 1
    assert faces[0].score == pytest.approx(0.9)
    assert np.allclose(faces[0].bbox, [128, 128, 192, 192])
    assert faces[0].landmarks.shape == (5, 2)


def test_detector_load_failure(monkeypatch):
    def broken(path, providers=None):
        raise RuntimeError("file not found")

    monkeypatch.setattr(detector_module.ort, "InferenceSession", broken)

    with pytest.raises(ModelLoadError):
        SCRFDDetector("det.onnx")


def test_detector_inference_failure(monkeypatch):
    class BrokenSession(FakeDetectorSession):
        def run(self, names, feeds):
            raise RuntimeError("shape mismatch")

    monkeypatch.setattr(detector_module.ort, "InferenceSession", lambda path, providers=None: BrokenSession())
    detector = SCRFDDetector("det.onnx")

    with pytest.raises(DetectionPassError):
        detector.detect(np.zeros((480, 640, 3), dtype=np.uint8))

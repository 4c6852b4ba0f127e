import json

import cv2
import numpy as np
import pytest

from attendance_node.core.exceptions import EnrollmentError, ModelNotReadyError
from attendance_node.enroll import enroll_from_image
from attendance_node.storage.gallery import EnrolledIdentity, GalleryBuilder
from attendance_node.storage.identities import JsonIdentitySource, StaticIdentitySource

from conftest import ScriptedAnalyzer, frame_for, unit


def test_missing_file_means_nobody_enrolled(tmp_path):
    assert JsonIdentitySource(str(tmp_path / "identities.json")).load() == []


def test_save_and_load(tmp_path, identities):
    source = JsonIdentitySource(str(tmp_path / "identities.json"))
    source.save(identities)

    loaded = source.load()

    assert [i.identity_id for i in loaded] == ["A", "B"]
    assert loaded[0].display_name == "Alice"
    assert np.allclose(loaded[0].embedding, identities[0].embedding)


def test_malformed_entries_are_skipped(tmp_path, emb_a):
    path = tmp_path / "identities.json"
    path.write_text(json.dumps({"identities": [
        {"display_name": "no id"},
        {"identity_id": "A", "consent": True, "embedding": [float(v) for v in emb_a]},
    ]}))

    loaded = JsonIdentitySource(str(path)).load()

    assert [i.identity_id for i in loaded] == ["A"]
    assert loaded[0].display_name == "A"


def test_consent_must_be_a_real_boolean(tmp_path, emb_a):
    embedding = [float(v) for v in emb_a]
    path = tmp_path / "identities.json"
    path.write_text(json.dumps({"identities": [
        {"identity_id": "A", "consent": "false", "embedding": embedding},
        {"identity_id": "B", "consent": 1, "embedding": embedding},
        {"identity_id": "C", "consent": True, "embedding": embedding},
    ]}))

    loaded = JsonIdentitySource(str(path)).load()

    assert [i.consent for i in loaded] == [False, False, True]


def test_upsert_replaces_by_id(tmp_path, emb_a, emb_b):
    source = JsonIdentitySource(str(tmp_path / "identities.json"))
    source.upsert(EnrolledIdentity("A", "Alice", False, emb_a))
    source.upsert(EnrolledIdentity("A", "Alice", True, emb_b))

    loaded = source.load()

    assert len(loaded) == 1
    assert loaded[0].consent is True
    assert loaded[0].embedding[1] == 1.0


def test_loaded_identities_build_a_gallery(tmp_path, identities, sink):
    source = JsonIdentitySource(str(tmp_path / "identities.json"))
    source.save(identities)

    gallery = GalleryBuilder(sink=sink).build(source.load())

    assert set(gallery.identity_ids) == {"A", "B"}


def test_static_source_returns_copies(identities):
    source = StaticIdentitySource(identities)
    loaded = source.load()
    loaded.clear()

    assert len(source.load()) == 2


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "photo.png"
    cv2.imwrite(str(path), frame_for(1))
    return str(path)


def test_enroll_from_image(tmp_path, ready_manager, photo):
    manager = ready_manager(ScriptedAnalyzer({1: [unit(4)]}))
    source = JsonIdentitySource(str(tmp_path / "identities.json"))

    identity = enroll_from_image(manager, source, photo, "s-001", "Ada", consent=True)

    assert identity.is_eligible
    assert source.load()[0].embedding[4] == 1.0


def test_enroll_append_adds_extra_reference(tmp_path, ready_manager, photo, emb_a):
    manager = ready_manager(ScriptedAnalyzer({1: [unit(4)]}))
    source = JsonIdentitySource(str(tmp_path / "identities.json"))
    source.upsert(EnrolledIdentity("s-001", "Ada", True, emb_a))

    enroll_from_image(manager, source, photo, "s-001", append=True)

    stored = source.load()[0]
    assert stored.embedding[0] == 1.0
    assert len(stored.extra_embeddings) == 1
    assert stored.display_name == "Ada"


def test_enroll_without_face(tmp_path, ready_manager, photo):
    manager = ready_manager(ScriptedAnalyzer({}))
    source = JsonIdentitySource(str(tmp_path / "identities.json"))

    with pytest.raises(EnrollmentError) as exc:
        enroll_from_image(manager, source, photo, "s-001")

    assert exc.value.code == "FACE_EXTRACT_001"
    assert source.load() == []


def test_enroll_unreadable_image(tmp_path, ready_manager):
    manager = ready_manager(ScriptedAnalyzer({}))
    source = JsonIdentitySource(str(tmp_path / "identities.json"))

    with pytest.raises(EnrollmentError):
        enroll_from_image(manager, source, str(tmp_path / "missing.png"), "s-001")


def test_enroll_needs_ready_model(tmp_path, make_manager, photo):
    manager = make_manager(lambda location: ScriptedAnalyzer())
    source = JsonIdentitySource(str(tmp_path / "identities.json"))

    with pytest.raises(ModelNotReadyError):
        enroll_from_image(manager, source, photo, "s-001")

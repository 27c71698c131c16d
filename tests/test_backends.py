import numpy as np
import pytest

from attendance_service import backends
from attendance_service.backends import DeepFaceDetector, l2_normalize
from attendance_service.dependencies import build_services
from attendance_service.face_matching import FaceMatcher
from tests.helpers import FRAME, ScriptedLandmarkDetector

rng = np.random.default_rng(7)
# Raw Facenet embeddings have components of a few units and a norm around 11
ENROLLED = rng.normal(size=128)
SAME_PERSON = ENROLLED + rng.normal(scale=0.3, size=128)
STRANGER = rng.normal(size=128)


@pytest.fixture
def represent(monkeypatch):
    """Replace DeepFace.represent with a queue of raw embeddings."""
    queue = []
    calls = []

    def fake_represent(img_path, **kwargs):
        calls.append(kwargs)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return [{
            "embedding": list(item),
            "facial_area": {"x": 220, "y": 140, "w": 200, "h": 200},
            "face_confidence": 0.98,
        }]

    monkeypatch.setattr(backends.DeepFace, "represent", fake_represent)
    fake_represent.queue = queue
    fake_represent.calls = calls
    return fake_represent


def test_l2_normalize():
    assert np.linalg.norm(l2_normalize(ENROLLED)) == pytest.approx(1.0)
    assert np.array_equal(l2_normalize(np.zeros(4)), np.zeros(4))


def test_detect_returns_unit_length_descriptors(represent):
    represent.queue.append(ENROLLED)

    [detection] = DeepFaceDetector().detect(FRAME)

    assert np.linalg.norm(ENROLLED) > 5
    assert np.linalg.norm(detection.descriptor) == pytest.approx(1.0)
    assert detection.box.width == 200
    assert represent.calls[0]["enforce_detection"]
    assert represent.calls[0]["model_name"] == "Facenet"


def test_no_face_yields_no_detections(represent):
    represent.queue.append(ValueError("Face could not be detected"))
    assert DeepFaceDetector().detect(FRAME) == []


def test_matcher_uses_the_detector_threshold():
    assert FaceMatcher(DeepFaceDetector()).threshold == 0.80
    assert FaceMatcher(DeepFaceDetector(), threshold=0.6).threshold == 0.6


def test_same_person_matches_at_facenet_scale(represent):
    # Raw distance is several units, far beyond any unit-scale threshold
    assert np.linalg.norm(ENROLLED - SAME_PERSON) > 1.0
    represent.queue.extend([ENROLLED, SAME_PERSON, STRANGER])
    matcher = FaceMatcher(DeepFaceDetector())

    enrolled = matcher.descriptor(FRAME)
    same = matcher.compare(matcher.descriptor(FRAME), enrolled, matcher.threshold)
    stranger = matcher.compare(matcher.descriptor(FRAME), enrolled, matcher.threshold)

    assert same.match
    assert same.confidence > 50
    assert not stranger.match


def test_registered_template_is_normalized(represent, store):
    represent.queue.extend([ENROLLED])
    services = build_services(store, DeepFaceDetector(), ScriptedLandmarkDetector())

    template, _ = services.enrollment.register("student-42", FRAME)

    assert len(represent.calls) == 1
    assert np.linalg.norm(template.descriptor) == pytest.approx(1.0)

import pytest

from attendance_service.dependencies import build_services
from attendance_service.models import StudentIdentity
from attendance_service.storage import InMemoryStore
from tests.helpers import CLASSROOM, FakeClock, ScriptedFaceDetector, ScriptedLandmarkDetector


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def face_detector():
    return ScriptedFaceDetector()


@pytest.fixture
def landmark_detector():
    return ScriptedLandmarkDetector()


@pytest.fixture
def services(store, face_detector, landmark_detector, clock):
    return build_services(store, face_detector, landmark_detector, clock=clock)


@pytest.fixture
def session(services):
    created, _ = services.sessions.create_session("teacher-1", "Algorithms", CLASSROOM)
    return created


@pytest.fixture
def student():
    return StudentIdentity(student_id="student-42", name="Amira Ben Salah", email="amira@example.edu")

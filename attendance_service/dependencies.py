import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import HTTPException, status

from attendance_service.config import settings
from attendance_service.detection import FaceDetector, LandmarkDetector
from attendance_service.enrollment import FaceEnrollment
from attendance_service.face_matching import FaceMatcher
from attendance_service.geofence import GeofenceValidator
from attendance_service.liveness import LivenessDetector
from attendance_service.models import utcnow
from attendance_service.pipeline import VerificationPipeline
from attendance_service.recorder import AttendanceRecorder
from attendance_service.sessions import SessionManager
from attendance_service.storage import AttendanceStore, FirestoreStore, InMemoryStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: AttendanceStore
    sessions: SessionManager
    enrollment: FaceEnrollment
    pipeline: VerificationPipeline


def build_services(
    store: AttendanceStore,
    face_detector: FaceDetector,
    landmark_detector: LandmarkDetector,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Wire the pipeline components around one store and one pair of detectors."""
    sessions = SessionManager(store, clock=clock)
    matcher = FaceMatcher(face_detector)
    enrollment = FaceEnrollment(store, matcher, clock=clock)
    pipeline = VerificationPipeline(
        store=store,
        sessions=sessions,
        geofence=GeofenceValidator(),
        liveness=LivenessDetector(landmark_detector),
        matcher=matcher,
        enrollment=enrollment,
        recorder=AttendanceRecorder(store, clock=clock),
    )
    return Services(store=store, sessions=sessions, enrollment=enrollment, pipeline=pipeline)


def create_default_services() -> Services:
    """Services backed by the configured store and the DeepFace/MediaPipe detectors."""
    # Imported here so the heavy model stacks load only when the service starts
    from attendance_service.backends import DeepFaceDetector, MediaPipeLandmarkDetector

    if settings.STORAGE_BACKEND == "memory":
        logger.warning("Using in-memory storage; attendance will not survive a restart")
        store: AttendanceStore = InMemoryStore()
    else:
        store = FirestoreStore()

    return build_services(store, DeepFaceDetector(), MediaPipeLandmarkDetector())


_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verification service not available",
        )
    return _services

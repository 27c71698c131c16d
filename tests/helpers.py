"""Synthetic detectors, frames and locations for driving the pipeline without models."""

from datetime import datetime, timedelta, timezone

import numpy as np

from attendance_service.detection import (
    BoundingBox,
    EyeLandmarks,
    FaceDetection,
    FaceDetector,
    LandmarkDetector,
)
from attendance_service.frames import BufferedFrameSource
from attendance_service.models import DeviceLocation, FaceTemplate, SessionLocation

# Meters per degree of latitude on the 6371 km sphere
METERS_PER_DEGREE = 6371000.0 * np.pi / 180.0

FRAME = np.zeros((480, 640, 3), dtype=np.uint8)
BASE_DESCRIPTOR = np.linspace(-0.5, 0.5, 128)
CENTERED_BOX = BoundingBox(x=220, y=140, width=200, height=200)

CLASSROOM = SessionLocation(latitude=36.8065, longitude=10.1815, address="Room 101")

OPEN = 0.35
CLOSED = 0.2


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def descriptor_at(distance, base=BASE_DESCRIPTOR):
    """A descriptor exactly ``distance`` away from ``base``."""
    shifted = np.array(base, dtype=np.float64)
    shifted[0] += distance
    return shifted


def face(descriptor=None, box=CENTERED_BOX):
    if descriptor is None:
        descriptor = BASE_DESCRIPTOR
    return FaceDetection(box=box, descriptor=np.asarray(descriptor, dtype=np.float64))


def match_at(distance):
    """Detector result for a single face at ``distance`` from the base template."""
    return [face(descriptor_at(distance))]


def eye_points(ear):
    """Six eye landmarks whose aspect ratio is exactly ``ear``."""
    half = ear / 2.0
    return np.array([
        (0.0, 0.0),
        (0.33, half),
        (0.66, half),
        (1.0, 0.0),
        (0.66, -half),
        (0.33, -half),
    ])


class ScriptedFaceDetector(FaceDetector):
    """
    Replays one scripted result per call.

    Script items are a list of detections or an exception to raise. Once the
    script runs out, ``default`` is returned.
    """

    def __init__(self, script=(), default=None):
        self.script = list(script)
        self.default = [face()] if default is None else default
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return list(item)


class ScriptedLandmarkDetector(LandmarkDetector):
    """Replays one EAR value per call; ``None`` means no face in the frame."""

    def __init__(self, ears=(), default=OPEN):
        self.ears = list(ears)
        self.default = default
        self.calls = 0

    def eye_landmarks(self, frame):
        self.calls += 1
        ear = self.ears.pop(0) if self.ears else self.default
        if ear is None:
            return []
        return [EyeLandmarks(left=eye_points(ear), right=eye_points(ear))]


def frames(count):
    return BufferedFrameSource([FRAME] * count)


def location_north_of(origin, meters, accuracy=None):
    return DeviceLocation(
        latitude=origin.latitude + meters / METERS_PER_DEGREE,
        longitude=origin.longitude,
        accuracy=accuracy,
    )


def register_template(store, student_id, descriptor=None, clock=None):
    if descriptor is None:
        descriptor = BASE_DESCRIPTOR
    store.save_face_template(FaceTemplate(
        student_id=student_id,
        descriptor=[float(v) for v in descriptor],
        registered_at=(clock or FakeClock())(),
    ))

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional
from datetime import datetime, timezone
from enum import Enum

from attendance_service.config import settings

# One quality frame, a full liveness window and the matching frames
MAX_REQUEST_FRAMES = 1 + settings.LIVENESS_MAX_FRAMES + settings.FACE_FRAME_COUNT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # Firestore hands back aware datetimes; anything naive is assumed UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire and in documents."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="python")


class VerificationStage(str, Enum):
    VALIDATING_TOKEN = "validating_token"
    CHECKING_LOCATION = "checking_location"
    CAPTURING = "capturing"
    LIVENESS_CHECKING = "liveness_checking"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LivenessState(str, Enum):
    DETECTING = "detecting"
    EYES_OPEN = "eyes_open"
    BLINK_OBSERVED = "blink_observed"
    COMPLETE = "complete"


# Locations

class SessionLocation(CamelModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = "Manual Location"


class DeviceLocation(CamelModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy radius in meters")


# Sessions

class StudentIdentity(CamelModel):
    student_id: str = Field(..., min_length=1)
    name: str = ""
    email: Optional[str] = None


class Attendee(CamelModel):
    student_id: str
    student_name: str = ""
    marked_at: UtcDatetime


class Session(CamelModel):
    session_id: str
    teacher_id: str
    subject: str
    location: SessionLocation
    created_at: UtcDatetime
    expires_at: UtcDatetime
    is_active: bool = True
    ended_at: Optional[UtcDatetime] = None
    attendees: List[Attendee] = Field(default_factory=list)
    attendee_count: int = 0
    qr_data: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def has_attendee(self, student_id: str) -> bool:
        return any(a.student_id == student_id for a in self.attendees)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "Session":
        return cls.model_validate(data)


class QRPayload(CamelModel):
    session_id: str = Field(..., min_length=1)
    location: Optional[SessionLocation] = None
    subject: Optional[str] = None
    teacher_id: Optional[str] = None
    timestamp: Optional[int] = Field(None, description="Issue time in epoch milliseconds")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# Biometrics

class FaceTemplate(CamelModel):
    student_id: str
    descriptor: List[float]
    registered_at: UtcDatetime


class VerificationAttempt(CamelModel):
    """Per-frame match result; never persisted."""
    frame_index: int
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    descriptor_distance: Optional[float] = None
    matched: bool = False
    confidence: float = 0.0
    error: Optional[str] = None


class FaceComparison(CamelModel):
    match: bool
    distance: float
    confidence: float


class MultiFrameResult(CamelModel):
    success: bool
    avg_confidence: float
    success_rate: float
    matched_frames: int
    detected_frames: int
    frame_count: int
    required_matches: int
    per_frame_results: List[VerificationAttempt] = Field(default_factory=list)


class LivenessResult(CamelModel):
    passed: bool
    state: LivenessState
    frames_processed: int
    elapsed_seconds: float
    min_ear: Optional[float] = None
    max_ear: Optional[float] = None


class GeofenceResult(CamelModel):
    is_valid: bool
    distance: float
    tolerance_used: float
    base_tolerance: float
    accuracy: Optional[float] = None


# Attendance

class Evidence(CamelModel):
    qr_verified: bool = False
    location_verified: bool = False
    face_verified: bool = False

    @property
    def complete(self) -> bool:
        return self.qr_verified and self.location_verified and self.face_verified


class AttendanceRecord(CamelModel):
    session_id: str
    student_id: str
    student_name: str = ""
    student_email: Optional[str] = None
    marked_at: UtcDatetime
    location_verified: bool
    qr_verified: bool
    face_verified: bool
    status: Literal["present"] = "present"
    location: Optional[DeviceLocation] = None


class VerificationOutcome(CamelModel):
    success: bool
    stage: VerificationStage
    failed_stage: Optional[VerificationStage] = None
    evidence: Evidence
    error_code: Optional[str] = None
    message: str
    retryable: bool = False
    already_present: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
    record: Optional[AttendanceRecord] = None
    timestamp: UtcDatetime = Field(default_factory=utcnow)


# API models

class CreateSessionRequest(CamelModel):
    teacher_id: str = Field(..., min_length=1, description="Authenticated teacher ID")
    subject: str = Field(..., min_length=1, description="Subject taught in this session")
    location: SessionLocation


class CreateSessionResponse(CamelModel):
    session: Session
    qr_data: str = Field(..., description="JSON payload to embed in the QR image")


class RegisterFaceRequest(CamelModel):
    student_id: str = Field(..., min_length=1)
    image: str = Field(..., description="Base64 encoded image of student")


class FaceRegistrationResult(CamelModel):
    success: bool
    student_id: str
    registered_at: UtcDatetime
    quality: float = Field(..., description="Descriptor variance score, 0-100")
    message: str


class VerifyAttendanceRequest(CamelModel):
    qr_data: str = Field(..., description="Decoded QR text")
    student: StudentIdentity
    location: DeviceLocation
    frames: List[str] = Field(
        default_factory=list,
        max_length=MAX_REQUEST_FRAMES,
        description="Base64 encoded camera frames, in capture order",
    )


class LiveVerificationStart(CamelModel):
    qr_data: str
    student: StudentIdentity
    location: DeviceLocation

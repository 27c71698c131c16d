"""
Error taxonomy for the attendance verification pipeline.

Expected failures (a student outside the geofence, an expired QR code, a
blink that never came) derive from ``VerificationFailure`` and are turned
into a failed outcome by the pipeline. Everything else derives directly from
``AttendanceError`` and propagates to the caller.
"""

from typing import Any, Dict, Optional


class AttendanceError(Exception):
    code = "AttendanceError"
    retryable = True
    default_message = "Attendance verification failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class VerificationFailure(AttendanceError):
    """A failure the student can usually recover from by retrying."""


# Token stage

class SessionNotFound(VerificationFailure):
    code = "SessionNotFound"
    default_message = "Invalid QR code: session not found"


class SessionInactive(VerificationFailure):
    code = "SessionInactive"
    default_message = "This attendance session has been ended by the teacher"


class ExpiredSession(VerificationFailure):
    code = "ExpiredSession"
    default_message = "QR code has expired"


class InvalidToken(VerificationFailure):
    code = "InvalidToken"
    default_message = "QR code could not be read as an attendance token"


class LegacyTokenRejected(VerificationFailure):
    code = "LegacyTokenRejected"
    default_message = "This QR code has no embedded location. Ask your teacher to generate a new one"


# Location stage

class GeofenceViolation(VerificationFailure):
    code = "GeofenceViolation"

    def __init__(self, distance: float, tolerance: float):
        self.distance = distance
        self.tolerance = tolerance
        super().__init__(
            f"You are {round(distance)}m away, but need to be within "
            f"{round(tolerance)}m of the session location",
            distance=distance,
            tolerance=tolerance,
        )


# Biometric stages

class LivenessTimeout(VerificationFailure):
    code = "LivenessTimeout"
    default_message = "No blink detected in time. Please look at the camera and blink"


class NoFaceDetected(VerificationFailure):
    code = "NoFaceDetected"
    default_message = "No face detected in the image"


class MultipleFacesDetected(VerificationFailure):
    code = "MultipleFacesDetected"
    default_message = "Multiple faces detected. Please ensure only one face is visible"


class PoorImageQuality(VerificationFailure):
    code = "PoorImageQuality"
    default_message = "Face quality is too low for recognition"


class FaceNotRegistered(VerificationFailure):
    code = "FaceNotRegistered"
    default_message = "No registered face found. Please register your face first"


class FaceMismatch(VerificationFailure):
    code = "FaceMismatch"

    def __init__(self, avg_confidence: float, success_rate: float):
        self.avg_confidence = avg_confidence
        self.success_rate = success_rate
        super().__init__(
            f"Identity verification failed ({round(avg_confidence)}% confidence)",
            avg_confidence=avg_confidence,
            success_rate=success_rate,
        )


# Commit stage

class DuplicateAttendance(VerificationFailure):
    code = "DuplicateAttendance"
    retryable = False
    default_message = "Attendance already marked for this session"


class EvidenceIncomplete(VerificationFailure):
    code = "EvidenceIncomplete"
    retryable = False
    default_message = "Attendance requires QR, location and face verification"


class VerificationCancelled(VerificationFailure):
    code = "VerificationCancelled"
    default_message = "Verification was cancelled"


# Exceptional conditions

class StorageFailure(AttendanceError):
    code = "StorageFailure"
    default_message = "Attendance storage is unavailable"


class CorruptTemplate(AttendanceError):
    code = "CorruptTemplate"
    retryable = False
    default_message = "Stored face template is corrupted"


class InvalidTransition(AttendanceError):
    code = "InvalidTransition"
    retryable = False
    default_message = "Illegal verification state transition"

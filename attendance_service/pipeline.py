"""
Attendance verification pipeline.

One ``VerificationRun`` per attempt carries the explicit state machine::

    VALIDATING_TOKEN -> CHECKING_LOCATION -> CAPTURING -> LIVENESS_CHECKING
        -> VERIFYING -> COMMITTING -> COMMITTED

with FAILED and CANCELLED reachable from any non-terminal stage. Stages run
cheapest first and a failure stops the run, so an expired QR code never
touches the GPS fix or the camera.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Any

from attendance_service.config import settings
from attendance_service.enrollment import FaceEnrollment
from attendance_service.errors import (
    DuplicateAttendance,
    FaceMismatch,
    GeofenceViolation,
    InvalidTransition,
    LivenessTimeout,
    NoFaceDetected,
    StorageFailure,
    VerificationCancelled,
    VerificationFailure,
)
from attendance_service.face_matching import FaceMatcher
from attendance_service.frames import CancellationToken, FrameSource, FrameSourceExhausted
from attendance_service.geofence import GeofenceValidator
from attendance_service.liveness import LivenessDetector
from attendance_service.models import (
    AttendanceRecord,
    DeviceLocation,
    Evidence,
    Session,
    StudentIdentity,
    VerificationOutcome,
    VerificationStage,
    utcnow,
)
from attendance_service.recorder import AttendanceRecorder
from attendance_service.sessions import SessionManager
from attendance_service.storage import AttendanceStore

logger = logging.getLogger(__name__)

Stage = VerificationStage

_NEXT_STAGE = {
    Stage.VALIDATING_TOKEN: Stage.CHECKING_LOCATION,
    Stage.CHECKING_LOCATION: Stage.CAPTURING,
    Stage.CAPTURING: Stage.LIVENESS_CHECKING,
    Stage.LIVENESS_CHECKING: Stage.VERIFYING,
    Stage.VERIFYING: Stage.COMMITTING,
    Stage.COMMITTING: Stage.COMMITTED,
}

TERMINAL_STAGES = frozenset({Stage.COMMITTED, Stage.FAILED, Stage.CANCELLED})


@dataclass
class VerificationRun:
    student_id: str
    stage: VerificationStage = Stage.VALIDATING_TOKEN
    evidence: Evidence = field(default_factory=Evidence)
    history: List[VerificationStage] = field(default_factory=lambda: [Stage.VALIDATING_TOKEN])
    failed_stage: Optional[VerificationStage] = None
    session: Optional[Session] = None

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def _move(self, stage: VerificationStage) -> None:
        self.stage = stage
        self.history.append(stage)

    def advance(self, stage: VerificationStage) -> None:
        if _NEXT_STAGE.get(self.stage) != stage:
            raise InvalidTransition(f"Cannot move from {self.stage.value} to {stage.value}")
        self._move(stage)

    def fail(self) -> None:
        if self.terminal:
            raise InvalidTransition(f"Run already finished in {self.stage.value}")
        self.failed_stage = self.stage
        self._move(Stage.FAILED)

    def cancel(self) -> None:
        if self.terminal:
            raise InvalidTransition(f"Run already finished in {self.stage.value}")
        self.failed_stage = self.stage
        self._move(Stage.CANCELLED)


StageListener = Callable[[VerificationRun], Awaitable[None]]


class VerificationPipeline:
    def __init__(
        self,
        store: AttendanceStore,
        sessions: SessionManager,
        geofence: GeofenceValidator,
        liveness: LivenessDetector,
        matcher: FaceMatcher,
        enrollment: FaceEnrollment,
        recorder: AttendanceRecorder,
        frame_timeout: Optional[float] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.geofence = geofence
        self.liveness = liveness
        self.matcher = matcher
        self.enrollment = enrollment
        self.recorder = recorder
        self.frame_timeout = settings.FRAME_TIMEOUT_SECONDS if frame_timeout is None else frame_timeout

    async def verify(
        self,
        qr_data: str,
        student: StudentIdentity,
        location: DeviceLocation,
        frame_source: FrameSource,
        cancel_token: Optional[CancellationToken] = None,
        on_stage: Optional[StageListener] = None,
    ) -> VerificationOutcome:
        """
        Run one student's verification end to end.

        Expected failures come back as an unsuccessful outcome; storage
        faults and corrupted templates propagate to the caller.
        """
        token = cancel_token or CancellationToken()
        run = VerificationRun(student_id=student.student_id)
        details: Dict[str, Any] = {}

        try:
            record = await self._execute(run, qr_data, student, location, frame_source, token, details, on_stage)
        except VerificationCancelled as e:
            run.cancel()
            outcome = self._failed_outcome(run, e, details)
            logger.info(f"Verification for {student.student_id} cancelled during {run.failed_stage.value}")
        except VerificationFailure as e:
            run.fail()
            outcome = self._failed_outcome(run, e, details)
            logger.warning(f"Verification for {student.student_id} failed at {run.failed_stage.value}: {e.code}")
        else:
            outcome = VerificationOutcome(
                success=True,
                stage=run.stage,
                evidence=run.evidence,
                message="Attendance marked successfully!",
                details=details,
                record=record,
            )

        await self._notify(on_stage, run)
        await self._log_attempt(run, student, outcome)
        return outcome

    async def _execute(self, run, qr_data, student, location, frame_source, token, details, on_stage) -> AttendanceRecord:
        # Token
        token.raise_if_cancelled()
        session = await asyncio.to_thread(self.sessions.validate_token, qr_data)
        run.session = session
        run.evidence.qr_verified = True
        if session.has_attendee(student.student_id):
            raise DuplicateAttendance()
        await self._advance(run, Stage.CHECKING_LOCATION, token, on_stage)

        # Location
        geofence = self.geofence.check(location, session.location)
        details["geofence"] = geofence.model_dump(by_alias=True)
        if not geofence.is_valid:
            raise GeofenceViolation(geofence.distance, geofence.tolerance_used)
        run.evidence.location_verified = True
        template = await asyncio.to_thread(self.enrollment.load_template, student.student_id)
        await self._advance(run, Stage.CAPTURING, token, on_stage)

        # Capture and quality gate
        try:
            frame = await token.guard(frame_source.read(), timeout=self.frame_timeout)
        except (FrameSourceExhausted, asyncio.TimeoutError) as e:
            raise NoFaceDetected("No camera frame received") from e
        await asyncio.to_thread(self.matcher.check_quality, frame)
        await self._advance(run, Stage.LIVENESS_CHECKING, token, on_stage)

        # Liveness
        liveness = await self.liveness.run(frame_source, token)
        details["liveness"] = liveness.model_dump(by_alias=True, mode="json")
        if not liveness.passed:
            raise LivenessTimeout(frames=liveness.frames_processed, state=liveness.state.value)
        await self._advance(run, Stage.VERIFYING, token, on_stage)

        # Identity
        match = await self.matcher.verify_multi_frame(frame_source, template.descriptor, cancel_token=token)
        details["match"] = match.model_dump(by_alias=True, mode="json")
        if not match.success:
            raise FaceMismatch(match.avg_confidence, match.success_rate)
        run.evidence.face_verified = True
        await self._advance(run, Stage.COMMITTING, token, on_stage)

        # Commit; cancellation is no longer honoured past this point
        record = await asyncio.to_thread(self.recorder.commit, session, student, run.evidence, location)
        run.advance(Stage.COMMITTED)
        return record

    async def _advance(self, run, stage, token, on_stage) -> None:
        token.raise_if_cancelled()
        run.advance(stage)
        logger.debug(f"Verification for {run.student_id} -> {stage.value}")
        await self._notify(on_stage, run)

    @staticmethod
    async def _notify(on_stage: Optional[StageListener], run: VerificationRun) -> None:
        if on_stage is not None:
            await on_stage(run)

    @staticmethod
    def _failed_outcome(run: VerificationRun, error: VerificationFailure, details: Dict[str, Any]) -> VerificationOutcome:
        return VerificationOutcome(
            success=False,
            stage=run.stage,
            failed_stage=run.failed_stage,
            evidence=run.evidence,
            error_code=error.code,
            message=error.message,
            retryable=error.retryable,
            already_present=isinstance(error, DuplicateAttendance),
            details={**details, **error.details},
        )

    async def _log_attempt(self, run: VerificationRun, student: StudentIdentity, outcome: VerificationOutcome) -> None:
        match = outcome.details.get("match") or {}
        entry = {
            "studentId": student.student_id,
            "sessionId": run.session.session_id if run.session else None,
            "success": outcome.success,
            "stage": (run.failed_stage or run.stage).value,
            "errorCode": outcome.error_code,
            "confidence": match.get("avgConfidence", 0),
            "timestamp": utcnow(),
        }
        try:
            await asyncio.to_thread(self.store.log_verification, entry)
        except StorageFailure as e:
            logger.warning(f"Failed to log verification attempt: {e}")

import logging
from datetime import datetime
from typing import Callable, Optional

from attendance_service.errors import (
    DuplicateAttendance,
    EvidenceIncomplete,
    ExpiredSession,
    SessionInactive,
    SessionNotFound,
)
from attendance_service.models import (
    Attendee,
    AttendanceRecord,
    DeviceLocation,
    Evidence,
    Session,
    StudentIdentity,
    utcnow,
)
from attendance_service.storage import AppendResult, AttendanceStore

logger = logging.getLogger(__name__)

_REJECTIONS = {
    AppendResult.NOT_FOUND: SessionNotFound,
    AppendResult.INACTIVE: SessionInactive,
    AppendResult.EXPIRED: ExpiredSession,
    AppendResult.DUPLICATE: DuplicateAttendance,
}


class AttendanceRecorder:
    def __init__(self, store: AttendanceStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def commit(
        self,
        session: Session,
        student: StudentIdentity,
        evidence: Evidence,
        location: Optional[DeviceLocation] = None,
    ) -> AttendanceRecord:
        """
        Write the attendance record for a fully verified student.

        The session is re-read rather than trusted from the caller, and the
        final append is an atomic compare-and-append in the store: a second
        commit for the same student never produces a second record.
        """
        if not evidence.complete:
            raise EvidenceIncomplete(evidence=evidence.model_dump(by_alias=True))

        current = self.store.get_session(session.session_id)
        now = self.clock()
        if current is None:
            raise SessionNotFound()
        if not current.is_active:
            raise SessionInactive()
        if current.is_expired(now):
            raise ExpiredSession()
        if current.has_attendee(student.student_id):
            logger.info(f"Student {student.student_id} already present in session {session.session_id}")
            raise DuplicateAttendance()

        attendee = Attendee(student_id=student.student_id, student_name=student.name, marked_at=now)
        record = AttendanceRecord(
            session_id=session.session_id,
            student_id=student.student_id,
            student_name=student.name,
            student_email=student.email,
            marked_at=now,
            location_verified=evidence.location_verified,
            qr_verified=evidence.qr_verified,
            face_verified=evidence.face_verified,
            location=location,
        )

        result = self.store.append_attendee(session.session_id, attendee, record, now)
        if result != AppendResult.APPENDED:
            logger.info(f"Commit for {student.student_id} in session {session.session_id} rejected: {result.value}")
            raise _REJECTIONS[result]()

        logger.info(f"✓ Marked {student.name or student.student_id} present in session {session.session_id}")
        return record

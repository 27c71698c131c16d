import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError

from attendance_service.config import settings
from attendance_service.errors import (
    ExpiredSession,
    InvalidToken,
    LegacyTokenRejected,
    SessionInactive,
    SessionNotFound,
)
from attendance_service.models import AttendanceRecord, QRPayload, Session, SessionLocation, utcnow
from attendance_service.storage import AttendanceStore

logger = logging.getLogger(__name__)


def generate_session_id(now: datetime) -> str:
    """Millisecond timestamp in hex followed by a random suffix."""
    return f"{int(now.timestamp() * 1000):x}{secrets.token_hex(5)}"


def parse_token(payload: str) -> Tuple[QRPayload, bool]:
    """
    Parse decoded QR text.

    Returns the payload and whether it was a legacy token, i.e. a bare
    session id instead of the JSON object issued by ``create_session``.
    """
    text = (payload or "").strip()
    if not text:
        raise InvalidToken("QR code is empty")

    try:
        data = json.loads(text)
    except ValueError:
        return QRPayload(session_id=text), True

    if isinstance(data, str):
        if not data.strip():
            raise InvalidToken("QR code is empty")
        return QRPayload(session_id=data.strip()), True
    if isinstance(data, int) and not isinstance(data, bool):
        # Generated ids can be all digits
        return QRPayload(session_id=text), True
    if not isinstance(data, dict):
        raise InvalidToken()

    try:
        return QRPayload.model_validate(data), False
    except ValidationError as e:
        logger.warning(f"Rejected malformed QR payload: {e.error_count()} validation errors")
        raise InvalidToken() from e


class SessionManager:
    def __init__(
        self,
        store: AttendanceStore,
        duration: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.duration = duration or timedelta(hours=settings.SESSION_DURATION_HOURS)
        self.clock = clock

    def create_session(self, teacher_id: str, subject: str, location: SessionLocation) -> Tuple[Session, QRPayload]:
        """Open a new attendance session and return it with the QR payload to display."""
        if not teacher_id:
            raise ValueError("Teacher ID is required")

        now = self.clock()
        session_id = generate_session_id(now)
        payload = QRPayload(
            session_id=session_id,
            location=location,
            subject=subject,
            teacher_id=teacher_id,
            timestamp=int(now.timestamp() * 1000),
        )
        session = Session(
            session_id=session_id,
            teacher_id=teacher_id,
            subject=subject,
            location=location,
            created_at=now,
            expires_at=now + self.duration,
            is_active=True,
            attendees=[],
            attendee_count=0,
            qr_data=payload.to_json(),
        )
        self.store.create_session(session)
        logger.info(f"Teacher {teacher_id} opened session {session_id} for '{subject}' (expires {session.expires_at.isoformat()})")
        return session, payload

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    def validate_token(self, payload: str) -> Session:
        """
        Resolve decoded QR text to a session that can still accept attendees.

        Only a storage lookup happens here, so this is always the first and
        cheapest stage of a verification.
        """
        token, legacy = parse_token(payload)
        session = self.store.get_session(token.session_id)

        if session is None:
            logger.warning(f"QR token references unknown session {token.session_id}")
            raise SessionNotFound()
        if not session.is_active:
            raise SessionInactive()
        if session.is_expired(self.clock()):
            logger.info(f"QR token for session {session.session_id} expired at {session.expires_at.isoformat()}")
            raise ExpiredSession()

        if legacy:
            # A bare id carries no location, so it can never be geofenced
            logger.warning(f"Rejected legacy QR token for session {session.session_id}")
            raise LegacyTokenRejected()
        if token.teacher_id is not None and token.teacher_id != session.teacher_id:
            logger.warning(f"QR token teacher mismatch for session {session.session_id}")
            raise InvalidToken("QR code does not belong to this session")

        return session

    def end_session(self, session_id: str) -> Session:
        """Mark the session inactive. Ending an ended session changes nothing."""
        session = self.get_session(session_id)
        if not session.is_active:
            logger.info(f"Session {session_id} already ended")
            return session

        ended_at = self.clock()
        if not self.store.update_session(session_id, {"isActive": False, "endedAt": ended_at}):
            raise SessionNotFound()

        logger.info(f"Session {session_id} ended with {session.attendee_count} attendees")
        return session.model_copy(update={"is_active": False, "ended_at": ended_at})

    def list_attendance(self, session_id: str) -> List[AttendanceRecord]:
        self.get_session(session_id)
        return self.store.list_records(session_id)

    def active_sessions(self, teacher_id: str) -> List[Session]:
        """Active, unexpired sessions for a teacher, newest first."""
        now = self.clock()
        sessions = [
            s for s in self.store.list_sessions(teacher_id)
            if s.is_active and not s.is_expired(now)
        ]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

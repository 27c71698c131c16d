import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions

from attendance_service.config import settings
from attendance_service.errors import StorageFailure
from attendance_service.models import Attendee, AttendanceRecord, FaceTemplate, Session

logger = logging.getLogger(__name__)


class AppendResult(str, Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


def record_document_id(session_id: str, student_id: str) -> str:
    """Deterministic id that makes a second record for the same pair impossible."""
    return f"{session_id}_{student_id}"


class AttendanceStore(ABC):
    """
    Persistence collaborator for the verification pipeline.

    Implementations only need read-by-id, write-new and update-by-id, plus
    one atomic compare-and-append for attendees.
    """

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    def create_session(self, session: Session) -> None:
        ...

    @abstractmethod
    def update_session(self, session_id: str, fields: Dict[str, Any]) -> bool:
        """Apply document-level field updates. Returns False when the session does not exist."""

    @abstractmethod
    def list_sessions(self, teacher_id: str) -> List[Session]:
        ...

    @abstractmethod
    def append_attendee(
        self,
        session_id: str,
        attendee: Attendee,
        record: AttendanceRecord,
        now: datetime,
    ) -> AppendResult:
        """
        Atomically append ``attendee`` to the session and write ``record``.

        Must guarantee that concurrent calls for the same (session, student)
        pair leave exactly one attendee entry and one record behind.
        """

    @abstractmethod
    def list_records(self, session_id: str) -> List[AttendanceRecord]:
        ...

    @abstractmethod
    def get_face_template(self, student_id: str) -> Optional[Dict[str, Any]]:
        """Raw template document; validation is left to the enrollment layer."""

    @abstractmethod
    def save_face_template(self, template: FaceTemplate) -> None:
        ...

    @abstractmethod
    def log_verification(self, entry: Dict[str, Any]) -> None:
        ...


def _check_appendable(session: Optional[Session], student_id: str, now: datetime) -> Optional[AppendResult]:
    if session is None:
        return AppendResult.NOT_FOUND
    if not session.is_active:
        return AppendResult.INACTIVE
    if session.is_expired(now):
        return AppendResult.EXPIRED
    if session.has_attendee(student_id):
        return AppendResult.DUPLICATE
    return None


class InMemoryStore(AttendanceStore):
    """
    Dict-backed store for local runs and tests.

    Documents are deep-copied in and out so callers never share state with
    the store. A single lock guards every read and write; each append is a
    short check-and-mutate of in-process dictionaries.
    """

    def __init__(self):
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._records: Dict[str, Dict[str, Any]] = {}
        self._templates: Dict[str, Dict[str, Any]] = {}
        self.verification_logs: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            data = copy.deepcopy(self._sessions.get(session_id))
        return Session.from_document(data) if data is not None else None

    def create_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session.to_document()

    def update_session(self, session_id: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            data = self._sessions.get(session_id)
            if data is None:
                return False
            data.update(copy.deepcopy(fields))
            return True

    def list_sessions(self, teacher_id: str) -> List[Session]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._sessions.values() if d.get("teacherId") == teacher_id]
        return [Session.from_document(d) for d in docs]

    def append_attendee(self, session_id, attendee, record, now) -> AppendResult:
        record_id = record_document_id(session_id, attendee.student_id)
        with self._lock:
            data = self._sessions.get(session_id)
            session = Session.from_document(copy.deepcopy(data)) if data is not None else None
            rejection = _check_appendable(session, attendee.student_id, now)
            if rejection is None and record_id in self._records:
                rejection = AppendResult.DUPLICATE
            if rejection is not None:
                return rejection

            data.setdefault("attendees", []).append(attendee.to_document())
            data["attendeeCount"] = data.get("attendeeCount", 0) + 1
            self._records[record_id] = record.to_document()

        logger.debug(f"Appended {attendee.student_id} to session {session_id}")
        return AppendResult.APPENDED

    def list_records(self, session_id: str) -> List[AttendanceRecord]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._records.values() if d.get("sessionId") == session_id]
        records = [AttendanceRecord.model_validate(d) for d in docs]
        records.sort(key=lambda r: r.marked_at, reverse=True)
        return records

    def get_face_template(self, student_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._templates.get(student_id))

    def save_face_template(self, template: FaceTemplate) -> None:
        with self._lock:
            self._templates[template.student_id] = template.to_document()

    def log_verification(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self.verification_logs.append(copy.deepcopy(entry))


class FirestoreStore(AttendanceStore):
    def __init__(self, client=None):
        """Use the given Firestore client, or initialize the Firebase Admin SDK."""
        self.db = client
        if self.db is None:
            self.initialize_firebase()

    def initialize_firebase(self):
        """Initialize Firebase connection."""
        try:
            if not firebase_admin._apps:
                if settings.FIREBASE_CREDENTIALS_PATH:
                    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
                    firebase_admin.initialize_app(cred)
                else:
                    # Use default credentials (for deployment environments)
                    firebase_admin.initialize_app()

                logger.info("Firebase Admin SDK initialized successfully")

            self.db = firestore.client()

        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            raise StorageFailure(f"Failed to initialize Firebase: {e}") from e

    @property
    def _sessions(self):
        return self.db.collection(settings.SESSIONS_COLLECTION)

    @property
    def _records(self):
        return self.db.collection(settings.RECORDS_COLLECTION)

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore error while {description}: {e}")
            raise StorageFailure(f"Firestore error while {description}") from e

    def get_session(self, session_id: str) -> Optional[Session]:
        doc = self._call("fetching session", self._sessions.document(session_id).get)
        if not doc.exists:
            return None
        return Session.from_document(doc.to_dict())

    def create_session(self, session: Session) -> None:
        ref = self._sessions.document(session.session_id)
        self._call("creating session", ref.create, session.to_document())
        logger.info(f"Created session document {session.session_id}")

    def update_session(self, session_id: str, fields: Dict[str, Any]) -> bool:
        try:
            self._sessions.document(session_id).update(fields)
        except google_exceptions.NotFound:
            return False
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore error while updating session {session_id}: {e}")
            raise StorageFailure("Firestore error while updating session") from e
        return True

    def list_sessions(self, teacher_id: str) -> List[Session]:
        query = self._sessions.where("teacherId", "==", teacher_id)
        docs = self._call("listing sessions", lambda: list(query.stream()))
        sessions = [Session.from_document(doc.to_dict()) for doc in docs]
        logger.info(f"Retrieved {len(sessions)} sessions for teacher {teacher_id}")
        return sessions

    def append_attendee(self, session_id, attendee, record, now) -> AppendResult:
        # Session state comes from a plain read so concurrent students never
        # contend on the shared session document inside their transactions
        session = self.get_session(session_id)
        rejection = _check_appendable(session, attendee.student_id, now)
        if rejection is not None:
            logger.info(f"Append of {attendee.student_id} to session {session_id}: {rejection.value}")
            return rejection

        session_ref = self._sessions.document(session_id)
        record_ref = self._records.document(record_document_id(session_id, attendee.student_id))

        @firestore.transactional
        def _append(transaction) -> AppendResult:
            # The per-student record document is the uniqueness guard
            if record_ref.get(transaction=transaction).exists:
                return AppendResult.DUPLICATE

            transaction.create(record_ref, record.to_document())
            transaction.update(session_ref, {
                "attendees": firestore.ArrayUnion([attendee.to_document()]),
                "attendeeCount": firestore.Increment(1),
            })
            return AppendResult.APPENDED

        result = self._call("appending attendee", _append, self.db.transaction())
        logger.info(f"Append of {attendee.student_id} to session {session_id}: {result.value}")
        return result

    def list_records(self, session_id: str) -> List[AttendanceRecord]:
        query = self._records.where("sessionId", "==", session_id)
        docs = self._call("listing attendance records", lambda: list(query.stream()))
        records = [AttendanceRecord.model_validate(doc.to_dict()) for doc in docs]
        # Sorted here rather than in Firestore to avoid a composite index
        records.sort(key=lambda r: r.marked_at, reverse=True)
        return records

    def get_face_template(self, student_id: str) -> Optional[Dict[str, Any]]:
        ref = self.db.collection(settings.TEMPLATES_COLLECTION).document(student_id)
        doc = self._call("fetching face template", ref.get)
        return doc.to_dict() if doc.exists else None

    def save_face_template(self, template: FaceTemplate) -> None:
        ref = self.db.collection(settings.TEMPLATES_COLLECTION).document(template.student_id)
        self._call("saving face template", ref.set, template.to_document())
        logger.info(f"Stored face template for student {template.student_id}")

    def log_verification(self, entry: Dict[str, Any]) -> None:
        collection = self.db.collection(settings.VERIFICATION_LOGS_COLLECTION)
        self._call("logging verification attempt", collection.add, entry)

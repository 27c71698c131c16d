import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True)

    # App Settings
    APP_NAME: str = "Attendance Verification Service"
    API_V1_STR: str = "/api/v1"

    # Storage Settings
    STORAGE_BACKEND: str = "firestore"  # firestore or memory
    FIREBASE_CREDENTIALS_PATH: str = os.getenv("FIREBASE_CREDENTIALS_PATH", "")
    SESSIONS_COLLECTION: str = "attendanceSessions"
    RECORDS_COLLECTION: str = "attendanceRecords"
    TEMPLATES_COLLECTION: str = "faceEncodings"
    VERIFICATION_LOGS_COLLECTION: str = "verificationLogs"

    # Session Settings
    SESSION_DURATION_HOURS: float = 3.0
    GEOFENCE_TOLERANCE_METERS: float = 50.0

    # Face Recognition Settings
    MODEL_NAME: str = "Facenet"  # 128-d descriptors
    DETECTOR_BACKEND: str = "opencv"
    DESCRIPTOR_SIZE: int = 128
    # Euclidean distance for unit-scale descriptors. DeepFaceDetector emits
    # L2-normalized Facenet embeddings and uses DeepFace's euclidean_l2 cutoff instead.
    FACE_MATCH_THRESHOLD: float = 0.45
    DEEPFACE_MATCH_THRESHOLD: float = 0.80
    FACE_FRAME_COUNT: int = 3
    FACE_FRAME_INTERVAL: float = 0.5
    FACE_REQUIRED_MATCHES: Optional[int] = None  # None means strict majority of FACE_FRAME_COUNT
    MIN_FACE_SIZE: int = 80
    EDGE_MARGIN: int = 10

    # Liveness Settings
    EAR_OPEN_THRESHOLD: float = 0.3
    EAR_CLOSED_THRESHOLD: float = 0.25
    LIVENESS_REQUIRE_REOPEN: bool = False
    LIVENESS_MAX_FRAMES: int = 100
    LIVENESS_FRAME_INTERVAL: float = 0.1
    LIVENESS_TIMEOUT_SECONDS: float = 10.0

    # Per-frame ceiling shared by liveness and matching
    FRAME_TIMEOUT_SECONDS: float = 1.0

settings = Settings()

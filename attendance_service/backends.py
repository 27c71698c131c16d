import logging
import threading
from typing import List

import numpy as np
from deepface import DeepFace

from attendance_service.config import settings
from attendance_service.detection import (
    BoundingBox,
    EyeLandmarks,
    FaceDetection,
    FaceDetector,
    LandmarkDetector,
)

logger = logging.getLogger(__name__)

# MediaPipe face mesh indices, ordered for the eye aspect ratio
LEFT_EYE = [362, 385, 387, 263, 373, 380]
RIGHT_EYE = [33, 160, 158, 133, 153, 144]


def l2_normalize(embedding) -> np.ndarray:
    """Scale an embedding to unit length so distances compare against the euclidean_l2 threshold."""
    vector = np.asarray(embedding, dtype=np.float64)
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


class DeepFaceDetector(FaceDetector):
    def __init__(self, model_name: str = None, detector_backend: str = None, match_threshold: float = None):
        self.model_name = model_name or settings.MODEL_NAME
        self.detector_backend = detector_backend or settings.DETECTOR_BACKEND
        self.match_threshold = match_threshold or settings.DEEPFACE_MATCH_THRESHOLD

    def detect(self, frame: np.ndarray) -> List[FaceDetection]:
        """Extract every face with its embedding using DeepFace."""
        try:
            # Frames are RGB, DeepFace works on BGR arrays
            embedding_objs = DeepFace.represent(
                img_path=np.ascontiguousarray(frame[:, :, ::-1]),
                model_name=self.model_name,
                enforce_detection=True,
                detector_backend=self.detector_backend,
            )
        except ValueError as e:
            # Face could not be detected
            logger.debug(f"Face detection failed: {e}")
            return []

        detections = []
        for obj in embedding_objs:
            area = obj.get("facial_area") or {}
            detections.append(FaceDetection(
                box=BoundingBox(
                    x=float(area.get("x", 0)),
                    y=float(area.get("y", 0)),
                    width=float(area.get("w", 0)),
                    height=float(area.get("h", 0)),
                ),
                descriptor=l2_normalize(obj["embedding"]),
                score=float(obj.get("face_confidence") or 0.0),
            ))
        return detections


class MediaPipeLandmarkDetector(LandmarkDetector):
    def __init__(self, max_faces: int = 2):
        # Optional dependency, installed with the "liveness" extra
        import mediapipe as mp

        # Static mode keeps no tracking state between students sharing the detector
        self._face_mesh = mp.solutions.face_mesh.FaceMesh(
            static_image_mode=True,
            max_num_faces=max_faces,
            refine_landmarks=True,
            min_detection_confidence=0.5,
        )
        self._lock = threading.Lock()

    def eye_landmarks(self, frame: np.ndarray) -> List[EyeLandmarks]:
        h, w = frame.shape[:2]
        with self._lock:
            results = self._face_mesh.process(frame)

        faces = []
        for face in results.multi_face_landmarks or []:
            pts = np.array([(lm.x * w, lm.y * h) for lm in face.landmark])
            faces.append(EyeLandmarks(left=pts[LEFT_EYE], right=pts[RIGHT_EYE]))
        return faces

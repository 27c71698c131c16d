import logging
import math
from typing import Callable, Optional, Tuple
from datetime import datetime

import numpy as np

from attendance_service.config import settings
from attendance_service.errors import CorruptTemplate, FaceNotRegistered
from attendance_service.face_matching import FaceMatcher
from attendance_service.models import FaceTemplate, utcnow
from attendance_service.storage import AttendanceStore

logger = logging.getLogger(__name__)

# Below this variance score a template is kept but flagged for re-registration
POOR_QUALITY_SCORE = 10.0


class FaceEnrollment:
    def __init__(
        self,
        store: AttendanceStore,
        matcher: FaceMatcher,
        descriptor_size: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.matcher = matcher
        self.descriptor_size = settings.DESCRIPTOR_SIZE if descriptor_size is None else descriptor_size
        self.clock = clock

    def register(self, student_id: str, frame: np.ndarray) -> Tuple[FaceTemplate, float]:
        """
        Register (or re-register) a student's face.

        Runs the quality gate, extracts the descriptor and overwrites any
        previous template. Returns the template and its quality score.
        """
        detection = self.matcher.check_quality(frame)
        descriptor = self.matcher.descriptor_of(detection)
        if descriptor.shape != (self.descriptor_size,):
            raise CorruptTemplate(
                f"Detector produced a {descriptor.shape} descriptor, expected ({self.descriptor_size},)"
            )

        quality = FaceMatcher.encoding_quality(descriptor)
        if quality < POOR_QUALITY_SCORE:
            logger.warning(f"Face template for {student_id} has poor quality ({quality})")

        template = FaceTemplate(
            student_id=student_id,
            descriptor=[float(v) for v in descriptor],
            registered_at=self.clock(),
        )
        self.store.save_face_template(template)
        logger.info(f"Registered face template for student {student_id}")
        return template, quality

    def load_template(self, student_id: str) -> FaceTemplate:
        data = self.store.get_face_template(student_id)
        if data is None:
            raise FaceNotRegistered()

        descriptor = data.get("descriptor")
        if (not isinstance(descriptor, (list, tuple))
                or len(descriptor) != self.descriptor_size
                or not all(isinstance(v, (int, float)) and math.isfinite(v) for v in descriptor)):
            logger.error(f"Stored face template for {student_id} is corrupted")
            raise CorruptTemplate(student_id=student_id)

        return FaceTemplate.model_validate({**data, "studentId": data.get("studentId", student_id)})

import asyncio
import logging
from typing import List, Optional, Sequence, Union

import numpy as np

from attendance_service.config import settings
from attendance_service.detection import FaceDetection, FaceDetector
from attendance_service.errors import (
    CorruptTemplate,
    MultipleFacesDetected,
    NoFaceDetected,
    PoorImageQuality,
    VerificationCancelled,
)
from attendance_service.frames import CancellationToken, FrameSource, FrameSourceExhausted
from attendance_service.models import FaceComparison, MultiFrameResult, VerificationAttempt

logger = logging.getLogger(__name__)

Descriptor = Union[np.ndarray, Sequence[float]]


def majority(frame_count: int) -> int:
    return frame_count // 2 + 1


class FaceMatcher:
    def __init__(
        self,
        face_detector: FaceDetector,
        threshold: Optional[float] = None,
        frame_count: Optional[int] = None,
        frame_interval: Optional[float] = None,
        required_matches: Optional[int] = None,
        min_face_size: Optional[int] = None,
        edge_margin: Optional[int] = None,
        frame_timeout: Optional[float] = None,
    ):
        self.detector = face_detector
        if threshold is None:
            threshold = face_detector.match_threshold or settings.FACE_MATCH_THRESHOLD
        self.threshold = threshold
        self.frame_count = settings.FACE_FRAME_COUNT if frame_count is None else frame_count
        self.frame_interval = settings.FACE_FRAME_INTERVAL if frame_interval is None else frame_interval
        self.required_matches = settings.FACE_REQUIRED_MATCHES if required_matches is None else required_matches
        self.min_face_size = settings.MIN_FACE_SIZE if min_face_size is None else min_face_size
        self.edge_margin = settings.EDGE_MARGIN if edge_margin is None else edge_margin
        self.frame_timeout = settings.FRAME_TIMEOUT_SECONDS if frame_timeout is None else frame_timeout

    def detect_single(self, frame: np.ndarray) -> FaceDetection:
        """The one face in ``frame``; an ambiguous frame is an error, never resolved heuristically."""
        detections = self.detector.detect(frame)
        if not detections:
            raise NoFaceDetected()
        if len(detections) > 1:
            raise MultipleFacesDetected(faces=len(detections))
        return detections[0]

    @staticmethod
    def descriptor_of(detection: FaceDetection) -> np.ndarray:
        if detection.descriptor is None:
            raise NoFaceDetected("Face found but no descriptor could be extracted")
        return np.asarray(detection.descriptor, dtype=np.float64)

    def descriptor(self, frame: np.ndarray) -> np.ndarray:
        return self.descriptor_of(self.detect_single(frame))

    def check_quality(self, frame: np.ndarray) -> FaceDetection:
        """
        Quality gate run once before registration or verification.

        The face must be at least ``min_face_size`` pixels on each side and
        keep ``edge_margin`` pixels clear of every frame edge.
        """
        detection = self.detect_single(frame)
        box = detection.box
        frame_height, frame_width = frame.shape[:2]

        if box.width < self.min_face_size or box.height < self.min_face_size:
            raise PoorImageQuality(
                "Face too small - please move closer",
                width=box.width,
                height=box.height,
                min_size=self.min_face_size,
            )

        margin = self.edge_margin
        if (box.x < margin or box.y < margin
                or box.x + box.width > frame_width - margin
                or box.y + box.height > frame_height - margin):
            raise PoorImageQuality("Please center your face in the frame")

        return detection

    @staticmethod
    def compare(d1: Optional[Descriptor], d2: Optional[Descriptor], threshold: float) -> FaceComparison:
        """Euclidean match; confidence falls linearly from 100 at distance 0 to 0 at distance 1."""
        if d1 is None or d2 is None:
            return FaceComparison(match=False, distance=1.0, confidence=0.0)

        a = np.asarray(d1, dtype=np.float64)
        b = np.asarray(d2, dtype=np.float64)
        if a.shape != b.shape:
            raise CorruptTemplate(f"Descriptor shapes differ: {a.shape} vs {b.shape}")

        distance = float(np.linalg.norm(a - b))
        confidence = max(0.0, min(100.0, (1.0 - distance) * 100.0))
        return FaceComparison(match=distance < threshold, distance=distance, confidence=round(confidence))

    @staticmethod
    def encoding_quality(descriptor: Descriptor) -> float:
        """Descriptor variance as a 0-100 score; low values suggest a washed-out template."""
        values = np.asarray(descriptor, dtype=np.float64)
        if values.size == 0:
            return 0.0
        return round(min(float(np.var(values)), 1.0) * 100, 2)

    def quorum(self, frame_count: int) -> int:
        required = self.required_matches or majority(frame_count)
        if not 1 <= required <= frame_count:
            raise ValueError(f"Required matches {required} is outside 1..{frame_count}")
        return required

    async def _read_descriptor(self, source: FrameSource) -> np.ndarray:
        frame = await source.read_latest()
        return await asyncio.to_thread(self.descriptor, frame)

    async def verify_multi_frame(
        self,
        source: FrameSource,
        stored_descriptor: Descriptor,
        frame_count: Optional[int] = None,
        threshold: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MultiFrameResult:
        """
        Compare ``frame_count`` frames, spaced in time, against the stored template.

        A frame without a usable face is a non-match rather than being
        skipped, and the verdict counts matches against ``frame_count``, so
        looking away from the camera can only hurt. ``success_rate`` and
        ``avg_confidence`` are reported over frames that produced a detection.
        """
        frame_count = self.frame_count if frame_count is None else frame_count
        threshold = self.threshold if threshold is None else threshold
        token = cancel_token or CancellationToken()
        required = self.quorum(frame_count)

        attempts: List[VerificationAttempt] = []
        for i in range(frame_count):
            try:
                current = await token.guard(self._read_descriptor(source), timeout=self.frame_timeout)
                comparison = self.compare(current, stored_descriptor, threshold)
                attempts.append(VerificationAttempt(
                    frame_index=i,
                    descriptor_distance=comparison.distance,
                    matched=comparison.match,
                    confidence=comparison.confidence,
                ))
            except (VerificationCancelled, CorruptTemplate):
                raise
            except FrameSourceExhausted:
                logger.info(f"Frame source exhausted at verification frame {i}")
                attempts.extend(
                    VerificationAttempt(frame_index=j, error="FrameUnavailable")
                    for j in range(i, frame_count)
                )
                break
            except (NoFaceDetected, MultipleFacesDetected) as e:
                logger.info(f"Frame {i} failed: {e.message}")
                attempts.append(VerificationAttempt(frame_index=i, error=e.code))
            except asyncio.TimeoutError:
                logger.info(f"Frame {i} timed out after {self.frame_timeout}s")
                attempts.append(VerificationAttempt(frame_index=i, error="FrameTimeout"))
            except Exception as e:
                logger.warning(f"Frame {i} detector error: {e}")
                attempts.append(VerificationAttempt(frame_index=i, error="DetectorError"))

            if i < frame_count - 1:
                await token.sleep(self.frame_interval if source.realtime else 0)

        detected = [a for a in attempts if a.error is None]
        matched = [a for a in detected if a.matched]
        success_rate = len(matched) / len(detected) * 100 if detected else 0.0
        avg_confidence = sum(a.confidence for a in detected) / len(detected) if detected else 0.0
        success = len(matched) >= required

        logger.info(
            f"Multi-frame verification {'passed' if success else 'failed'}: "
            f"{len(matched)}/{frame_count} frames matched (need {required}), "
            f"{len(detected)} detected, avg confidence {avg_confidence:.0f}%"
        )
        return MultiFrameResult(
            success=success,
            avg_confidence=round(avg_confidence),
            success_rate=round(success_rate),
            matched_frames=len(matched),
            detected_frames=len(detected),
            frame_count=frame_count,
            required_matches=required,
            per_frame_results=attempts,
        )

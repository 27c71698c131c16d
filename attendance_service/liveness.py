import asyncio
import logging
from typing import List, Optional

import numpy as np

from attendance_service.config import settings
from attendance_service.detection import LandmarkDetector
from attendance_service.errors import VerificationCancelled
from attendance_service.frames import CancellationToken, FrameSource, FrameSourceExhausted
from attendance_service.models import LivenessResult, LivenessState

logger = logging.getLogger(__name__)


def eye_aspect_ratio(points) -> float:
    """
    Eye Aspect Ratio over six eye landmarks.

    EAR = (||p2-p6|| + ||p3-p5||) / (2 * ||p1-p4||)
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.shape != (6, 2):
        raise ValueError(f"Expected 6 eye landmarks, got shape {pts.shape}")

    vertical_1 = np.linalg.norm(pts[1] - pts[5])
    vertical_2 = np.linalg.norm(pts[2] - pts[4])
    horizontal = np.linalg.norm(pts[0] - pts[3])
    if horizontal == 0:
        raise ValueError("Degenerate eye landmarks")
    return float((vertical_1 + vertical_2) / (2.0 * horizontal))


class BlinkTracker:
    """
    Blink state machine, fed one EAR sample at a time.

    A blink only counts after open eyes were observed, so a photograph with
    closed eyes can never complete the check.
    """

    def __init__(
        self,
        open_threshold: Optional[float] = None,
        closed_threshold: Optional[float] = None,
        require_reopen: Optional[bool] = None,
    ):
        self.open_threshold = settings.EAR_OPEN_THRESHOLD if open_threshold is None else open_threshold
        self.closed_threshold = settings.EAR_CLOSED_THRESHOLD if closed_threshold is None else closed_threshold
        self.require_reopen = settings.LIVENESS_REQUIRE_REOPEN if require_reopen is None else require_reopen
        if self.closed_threshold > self.open_threshold:
            raise ValueError("Closed-eye threshold must not exceed the open-eye threshold")

        self.state = LivenessState.DETECTING
        self.history: List[LivenessState] = [self.state]

    @property
    def complete(self) -> bool:
        return self.state == LivenessState.COMPLETE

    def _move(self, state: LivenessState) -> None:
        self.state = state
        self.history.append(state)

    def observe(self, ear: float) -> LivenessState:
        if self.state == LivenessState.DETECTING:
            if ear > self.open_threshold:
                self._move(LivenessState.EYES_OPEN)
        elif self.state == LivenessState.EYES_OPEN:
            if ear < self.closed_threshold:
                self._move(LivenessState.BLINK_OBSERVED)
                if not self.require_reopen:
                    self._move(LivenessState.COMPLETE)
        elif self.state == LivenessState.BLINK_OBSERVED:
            if ear > self.open_threshold:
                self._move(LivenessState.COMPLETE)
        return self.state


class LivenessDetector:
    def __init__(
        self,
        landmark_detector: LandmarkDetector,
        open_threshold: Optional[float] = None,
        closed_threshold: Optional[float] = None,
        require_reopen: Optional[bool] = None,
        max_frames: Optional[int] = None,
        frame_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        frame_timeout: Optional[float] = None,
    ):
        self.detector = landmark_detector
        self.open_threshold = open_threshold
        self.closed_threshold = closed_threshold
        self.require_reopen = require_reopen
        self.max_frames = settings.LIVENESS_MAX_FRAMES if max_frames is None else max_frames
        self.frame_interval = settings.LIVENESS_FRAME_INTERVAL if frame_interval is None else frame_interval
        self.timeout = settings.LIVENESS_TIMEOUT_SECONDS if timeout is None else timeout
        self.frame_timeout = settings.FRAME_TIMEOUT_SECONDS if frame_timeout is None else frame_timeout

    async def _measure(self, source: FrameSource) -> Optional[float]:
        frame = await source.read()
        faces = await asyncio.to_thread(self.detector.eye_landmarks, frame)
        if len(faces) != 1:
            logger.debug(f"Liveness frame skipped: {len(faces)} faces")
            return None
        face = faces[0]
        return (eye_aspect_ratio(face.left) + eye_aspect_ratio(face.right)) / 2.0

    async def run(self, source: FrameSource, cancel_token: Optional[CancellationToken] = None) -> LivenessResult:
        """
        Watch the feed until a blink is seen or the budget runs out.

        One frame is processed per step, then the loop yields for
        ``frame_interval``. Errors on a single frame are logged and the next
        frame is tried; only cancellation aborts the loop early.
        """
        token = cancel_token or CancellationToken()
        tracker = BlinkTracker(self.open_threshold, self.closed_threshold, self.require_reopen)
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.timeout
        ears: List[float] = []
        frames = 0

        while frames < self.max_frames:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("Liveness wall-clock budget exhausted")
                break

            frames += 1
            try:
                ear = await token.guard(self._measure(source), timeout=min(self.frame_timeout, remaining))
            except VerificationCancelled:
                logger.info(f"Liveness check cancelled after {frames} frames")
                raise
            except FrameSourceExhausted:
                logger.info(f"Frame source exhausted after {frames - 1} liveness frames")
                frames -= 1
                break
            except asyncio.TimeoutError:
                logger.debug(f"Liveness frame {frames} timed out")
                ear = None
            except Exception as e:
                logger.debug(f"Liveness frame {frames} failed: {e}")
                ear = None

            if ear is not None:
                ears.append(ear)
                previous = tracker.state
                state = tracker.observe(ear)
                if state != previous:
                    logger.debug(f"Liveness {previous.value} -> {state.value} at frame {frames} (EAR {ear:.3f})")
                if tracker.complete:
                    break

            await token.sleep(self.frame_interval if source.realtime else 0)

        elapsed = loop.time() - started
        if tracker.complete:
            logger.info(f"Liveness confirmed after {frames} frames ({elapsed:.2f}s)")
        else:
            logger.info(f"Liveness not confirmed: state {tracker.state.value} after {frames} frames")

        return LivenessResult(
            passed=tracker.complete,
            state=tracker.state,
            frames_processed=frames,
            elapsed_seconds=round(elapsed, 3),
            min_ear=min(ears) if ears else None,
            max_ear=max(ears) if ears else None,
        )

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Awaitable, List, Optional, Sequence, TypeVar

import numpy as np
from PIL import Image, UnidentifiedImageError

from attendance_service.errors import VerificationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def decode_frame(base64_string: str) -> np.ndarray:
    """Convert a base64 (optionally data-URL) image to an RGB numpy array."""
    if "," in base64_string:
        base64_string = base64_string.split(",")[1]

    try:
        image_data = base64.b64decode(base64_string, validate=True)
        image = Image.open(BytesIO(image_data))
        if image.mode != "RGB":
            image = image.convert("RGB")
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Invalid image data: {e}") from e

    return np.array(image)


def decode_frames(images: Sequence[str]) -> List[np.ndarray]:
    return [decode_frame(image) for image in images]


class FrameSourceExhausted(Exception):
    """Raised by ``FrameSource.read`` once no further frames will arrive."""


class FrameSource(ABC):
    """A single student's camera feed."""

    # Live feeds are paced by the consumer; pre-captured frames are not
    realtime = True

    @abstractmethod
    async def read(self) -> np.ndarray:
        ...

    async def read_latest(self) -> np.ndarray:
        """Most recent frame, skipping any backlog. Defaults to ``read``."""
        return await self.read()


class BufferedFrameSource(FrameSource):
    """Frames captured ahead of time by the client, consumed in order."""

    realtime = False

    def __init__(self, frames: Sequence[np.ndarray]):
        self._frames = list(frames)
        self._index = 0

    async def read(self) -> np.ndarray:
        if self._index >= len(self._frames):
            raise FrameSourceExhausted()
        frame = self._frames[self._index]
        self._index += 1
        return frame


_CLOSED = object()


class QueueFrameSource(FrameSource):
    """
    Live feed pushed by a transport such as a WebSocket.

    The queue is bounded; when the consumer falls behind, the oldest frame
    is dropped so the detector always works on recent footage.
    """

    def __init__(self, maxsize: int = 30):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def put(self, frame: np.ndarray) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def read(self) -> np.ndarray:
        frame = await self._queue.get()
        if frame is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise FrameSourceExhausted()
        return frame

    async def read_latest(self) -> np.ndarray:
        latest = None
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            latest = frame
        if latest is not None:
            return latest
        return await self.read()


class CancellationToken:
    """Cooperative cancellation for one verification run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise VerificationCancelled(reason=self.reason)

    async def sleep(self, seconds: float) -> None:
        """Yield to the event loop for ``seconds``, waking early on cancellation."""
        if seconds <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T], timeout: float) -> T:
        """
        Await ``awaitable`` for at most ``timeout`` seconds.

        Raises ``asyncio.TimeoutError`` on timeout and ``VerificationCancelled``
        as soon as the token fires, whichever comes first.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        self.raise_if_cancelled()
        raise asyncio.TimeoutError()

import asyncio
import base64
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from attendance_service.errors import VerificationCancelled
from attendance_service.frames import (
    BufferedFrameSource,
    CancellationToken,
    FrameSourceExhausted,
    QueueFrameSource,
    decode_frame,
)


def png_base64(mode="RGB", size=(4, 3)):
    buffer = BytesIO()
    Image.new(mode, size).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def test_decode_frame_strips_data_url():
    frame = decode_frame("data:image/png;base64," + png_base64())
    assert frame.shape == (3, 4, 3)


def test_decode_frame_converts_to_rgb():
    assert decode_frame(png_base64(mode="L")).shape == (3, 4, 3)


@pytest.mark.parametrize("payload", ["", "!!!", base64.b64encode(b"not an image").decode()])
def test_decode_frame_rejects_garbage(payload):
    with pytest.raises(ValueError):
        decode_frame(payload)


def test_buffered_source_runs_out():
    async def scenario():
        source = BufferedFrameSource([np.zeros(1), np.ones(1)])
        first = await source.read()
        second = await source.read_latest()
        with pytest.raises(FrameSourceExhausted):
            await source.read()
        return first, second

    first, second = asyncio.run(scenario())
    assert first[0] == 0 and second[0] == 1


def test_queue_source_drops_oldest_frame():
    async def scenario():
        source = QueueFrameSource(maxsize=2)
        for value in range(3):
            source.put(np.full(1, value))
        return [(await source.read())[0] for _ in range(2)]

    assert asyncio.run(scenario()) == [1, 2]


def test_queue_source_latest_skips_backlog():
    async def scenario():
        source = QueueFrameSource()
        for value in range(5):
            source.put(np.full(1, value))
        latest = await source.read_latest()
        source.close()
        with pytest.raises(FrameSourceExhausted):
            await source.read_latest()
        with pytest.raises(FrameSourceExhausted):
            await source.read()
        return latest[0]

    assert asyncio.run(scenario()) == 4


def test_closed_queue_ignores_new_frames():
    async def scenario():
        source = QueueFrameSource()
        source.close()
        source.put(np.zeros(1))
        await source.read()

    with pytest.raises(FrameSourceExhausted):
        asyncio.run(scenario())


def test_guard_times_out():
    async def scenario():
        await CancellationToken().guard(QueueFrameSource().read(), timeout=0.01)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())


def test_guard_returns_result():
    async def scenario():
        return await CancellationToken().guard(asyncio.sleep(0, result="frame"), timeout=1)

    assert asyncio.run(scenario()) == "frame"


def test_guard_wakes_on_cancel():
    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "client disconnected")
        try:
            await token.guard(QueueFrameSource().read(), timeout=5)
        except VerificationCancelled as e:
            return e.details["reason"]

    assert asyncio.run(scenario()) == "client disconnected"


def test_cancelled_token_refuses_new_work():
    async def scenario():
        token = CancellationToken()
        token.cancel()
        await token.guard(asyncio.sleep(10), timeout=20)

    with pytest.raises(VerificationCancelled):
        asyncio.run(scenario())


def test_sleep_wakes_on_cancel():
    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        await token.sleep(5)

    with pytest.raises(VerificationCancelled):
        asyncio.run(scenario())

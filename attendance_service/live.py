import asyncio
import logging
import uuid

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from attendance_service.dependencies import get_services
from attendance_service.errors import AttendanceError
from attendance_service.frames import CancellationToken, QueueFrameSource, decode_frame
from attendance_service.models import LiveVerificationStart
from attendance_service.pipeline import VerificationRun
from attendance_service.ws_manager import manager

router = APIRouter()
logger = logging.getLogger(__name__)


async def _handle_message(message: dict, attempt_id: str, source: QueueFrameSource, token: CancellationToken) -> None:
    kind = message.get("type") if isinstance(message, dict) else None
    if kind == "frame":
        try:
            source.put(await asyncio.to_thread(decode_frame, message.get("image") or ""))
        except ValueError as e:
            await manager.send_message({"type": "error", "code": "InvalidFrame", "message": str(e)}, attempt_id)
    elif kind == "cancel":
        token.cancel("cancelled by student")
    elif kind == "end":
        source.close()
    else:
        logger.debug(f"Ignoring message of type {kind!r} on attempt {attempt_id}")


@router.websocket("/ws/verify")
async def live_verification(websocket: WebSocket):
    """
    Stream camera frames for one verification attempt.

    The first message carries the decoded QR text, the student and the GPS
    fix; every later message is a frame, ``cancel`` or ``end``. The server
    pushes a ``stage`` message on every transition and one final ``outcome``.
    Closing the socket cancels the attempt.
    """
    try:
        services = get_services()
    except HTTPException:
        await websocket.close(code=1013)  # Try again later
        return

    attempt_id = str(uuid.uuid4())
    await manager.connect(websocket, attempt_id)

    try:
        start = LiveVerificationStart.model_validate(await websocket.receive_json())
    except (ValidationError, ValueError) as e:
        logger.warning(f"Rejected live verification start for {attempt_id}: {e}")
        await manager.send_message({"type": "error", "code": "InvalidRequest", "message": "Invalid start message"}, attempt_id)
        manager.disconnect(attempt_id)
        await websocket.close(code=1003)
        return
    except WebSocketDisconnect:
        manager.disconnect(attempt_id)
        return

    source = QueueFrameSource()
    token = CancellationToken()

    async def on_stage(run: VerificationRun) -> None:
        await manager.send_message({
            "type": "stage",
            "attemptId": attempt_id,
            "stage": run.stage.value,
            "evidence": run.evidence.model_dump(by_alias=True),
        }, attempt_id)

    task = asyncio.create_task(services.pipeline.verify(
        start.qr_data,
        start.student,
        start.location,
        source,
        cancel_token=token,
        on_stage=on_stage,
    ))

    try:
        while not task.done():
            receive = asyncio.ensure_future(websocket.receive_json())
            done, _ = await asyncio.wait({task, receive}, return_when=asyncio.FIRST_COMPLETED)
            if receive in done:
                try:
                    message = receive.result()
                except ValueError:
                    await manager.send_message({"type": "error", "code": "InvalidRequest", "message": "Messages must be JSON"}, attempt_id)
                    continue
                await _handle_message(message, attempt_id, source, token)
            else:
                receive.cancel()

        outcome = task.result()
        await manager.send_message(
            {"type": "outcome", "outcome": outcome.model_dump(by_alias=True, mode="json")},
            attempt_id,
        )
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"Student disconnected during attempt {attempt_id}, cancelling")
        token.cancel("client disconnected")
    except AttendanceError as e:
        logger.error(f"Live verification {attempt_id} aborted: {e.code}")
        await manager.send_message({"type": "error", **e.to_dict()}, attempt_id)
        await websocket.close(code=1011)
    finally:
        manager.disconnect(attempt_id)
        if not task.done():
            token.cancel("connection closed")
            source.close()
            try:
                await task
            except AttendanceError as e:
                logger.error(f"Live verification {attempt_id} failed after disconnect: {e.code}")

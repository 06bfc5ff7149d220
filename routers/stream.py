"""Stream router – the viewer WebSocket."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

import main
from config import MISSING_DEVICE_ERROR
from models import ErrorMessage
from relay import Consumer, ControlSurface, RelayError

logger = logging.getLogger(__name__)

router = APIRouter()


# Release tasks still running after their handler was cancelled
_releases: set[asyncio.Task] = set()


async def _release(control: ControlSurface, consumer: Consumer, *tasks: asyncio.Task) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await control.on_disconnect(consumer)


async def _receive_control(websocket: WebSocket, control: ControlSurface, consumer: Consumer) -> str:
    """Read control messages until the viewer leaves. Returns why the loop ended."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return "disconnect"
        text = message.get("text")
        if text is None:
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        if not await control.on_message(consumer, text):
            return "detach"


@router.websocket("/ws")
async def device_stream(
    websocket: WebSocket,
    device_id: Optional[str] = Query(None),
    udid: Optional[str] = Query(None, description="Alias of device_id"),
    _: None = Depends(main.verify_ws_api_key),
):
    """
    Attach a viewer to a device's log stream.

    The first message is the backlog batch (when the device already has
    history), followed by live batches every interval. `stopped` is the last
    message when the log tool ends; the socket is then closed normally.
    """
    await websocket.accept()

    device_id = (device_id or udid or "").strip()
    if not device_id:
        await websocket.send_text(ErrorMessage(message=MISSING_DEVICE_ERROR).model_dump_json())
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    control: ControlSurface = websocket.app.state.control
    settings = control.registry.settings
    consumer = Consumer(
        device_id,
        websocket.send_text,
        max_buffered_bytes=settings.max_buffered_bytes,
        max_queued_messages=settings.max_queued_messages,
    )

    try:
        await control.on_connect(device_id, consumer)
    except RelayError as e:
        logger.error(f"Attach to {device_id} failed: {e}")
        await websocket.send_text(ErrorMessage(message=str(e)).model_dump_json())
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    sender = asyncio.create_task(consumer.run(), name=f"consumer-send-{consumer.consumer_id}")
    receiver = asyncio.create_task(
        _receive_control(websocket, control, consumer), name=f"consumer-recv-{consumer.consumer_id}"
    )
    ended_by = "stopped"
    try:
        done, _pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver in done and not receiver.cancelled() and receiver.exception() is None:
            ended_by = receiver.result()
    finally:
        # Own task, so the detach completes even when this handler is cancelled
        release = asyncio.create_task(
            _release(control, consumer, sender, receiver), name=f"consumer-release-{consumer.consumer_id}"
        )
        _releases.add(release)
        release.add_done_callback(_releases.discard)
        await asyncio.shield(release)

    logger.debug(f"Consumer {consumer.consumer_id} for {device_id} ended ({ended_by})")
    if ended_by != "disconnect":
        try:
            await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
        except (RuntimeError, WebSocketDisconnect):
            # Already closed by the peer
            pass

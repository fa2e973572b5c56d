import asyncio
import json
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ghostwriter.config import settings
from ghostwriter.realtime.context import SessionStatus
from ghostwriter.realtime.lifecycle import RealtimeSessionController
from ghostwriter.realtime.media import MediaSource
from ghostwriter.schemas.events import UiEvent

router = APIRouter()
logger = structlog.get_logger()


async def _safe_send_json(websocket: WebSocket, payload: dict) -> bool:
    try:
        await websocket.send_json(payload)
        return True
    except (RuntimeError, WebSocketDisconnect):
        return False


async def _send_heartbeat(websocket: WebSocket, handle: str) -> None:
    try:
        while True:
            await asyncio.sleep(settings.heartbeat_interval_seconds)
            ping = UiEvent(handle=handle, type="system.ping", ts_created=datetime.now(UTC), payload={})
            if not await _safe_send_json(websocket, ping.model_dump(mode="json")):
                return
    except asyncio.CancelledError:
        return


async def _forward_remote_audio(websocket: WebSocket, controller: RealtimeSessionController) -> None:
    """Relay assistant audio to the browser as binary frames."""
    try:
        while controller.status not in (SessionStatus.ENDED, SessionStatus.ERROR):
            queue = controller.remote_audio
            if queue is None:
                await asyncio.sleep(0.05)
                continue
            chunk = await queue.get()
            await websocket.send_bytes(chunk)
    except (RuntimeError, WebSocketDisconnect):
        return
    except asyncio.CancelledError:
        return


async def _handle_control(controller: RealtimeSessionController, raw: str) -> None:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ws_invalid_control_message", handle=controller.handle)
        return
    if not isinstance(message, dict):
        return
    kind = message.get("type")
    if kind == "system.pong":
        return
    if kind == "session.stop":
        await controller.stop("Stopped by user")
    elif kind == "conversation.text" and isinstance(message.get("text"), str) and message["text"].strip():
        await controller.send_text(message["text"].strip())
    elif kind == "session.language" and isinstance(message.get("language"), str):
        await controller.set_language(message["language"])
    elif kind == "session.noise_profile" and isinstance(message.get("noiseProfile"), str):
        await controller.set_noise_profile(message["noiseProfile"])
    elif kind == "session.turn_detection" and isinstance(message.get("turnDetection"), str):
        controller.set_turn_detection(message["turnDetection"])
    else:
        logger.warning("ws_unsupported_control_type", handle=controller.handle, control_type=kind)


@router.websocket("/ws/realtime/{handle}")
async def realtime_ws(websocket: WebSocket, handle: str):
    registry = websocket.app.state.registry
    controller = registry.get(handle)
    grant = registry.grant(handle)
    if controller is None or grant is None or grant.settled:
        await websocket.close(code=1008, reason="Session not found or already attached")
        return

    await websocket.accept()
    structlog.contextvars.bind_contextvars(handle=handle)
    logger.info("ws_connected", handle=handle)

    async def forward(event: dict) -> bool:
        return await _safe_send_json(websocket, event)

    controller.add_listener(forward)
    source = MediaSource()
    grant.grant(source)
    heartbeat = asyncio.create_task(_send_heartbeat(websocket, handle))
    audio = asyncio.create_task(_forward_remote_audio(websocket, controller))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes"):
                source.push(message["bytes"])
            elif message.get("text"):
                try:
                    await _handle_control(controller, message["text"])
                except ValueError as exc:
                    logger.warning("ws_control_rejected", handle=handle, error=str(exc))
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("ws_disconnected", handle=handle)
        controller.remove_listener(forward)
        source.end()
        heartbeat.cancel()
        audio.cancel()
        await controller.stop("Client disconnected")
        registry.remove(handle)
        structlog.contextvars.unbind_contextvars("handle")

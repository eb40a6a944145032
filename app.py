import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import get_backend
from channel import EventChannel
from client import ChatClient
from constants import LOG_FILE, LOG_LEVEL
from errors import StoreWriteFailed, SyncError
from logging_config import get_logger, setup_logging
from notifications import NotificationGate, WebSocketAlert
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

# One change feed per process; every connection's subscriptions share it.
event_channel: Optional[EventChannel] = None


def get_channel() -> EventChannel:
    global event_channel
    if event_channel is None:
        event_channel = EventChannel(get_backend())
    return event_channel


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = get_backend()
    if await backend.ping():
        logger.info("Redis client connected successfully")
    else:
        logger.warning("Redis is not reachable yet; subscriptions will keep retrying")
    yield
    global event_channel
    if event_channel is not None:
        await event_channel.aclose()
        event_channel = None
    await backend.aclose()
    logger.info("Shut down event channel and store connections")


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


def _dump(model) -> dict:
    return model.model_dump(mode="json")


def _frame_sender(websocket: WebSocket):
    async def send(frame: dict):
        await websocket.send_text(json.dumps(frame))
    return send


def _parse_frame(data: str) -> dict:
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        # Plain text is treated as a chat message
        return {"type": "message", "body": data}
    if not isinstance(frame, dict):
        return {"type": "message", "body": str(frame)}
    return frame


async def _redirect(websocket: WebSocket, error: SyncError):
    """Fatal session errors send the client back to the entry point."""
    logger.info(f"Redirecting client out: {error.code} ({error.message})")
    try:
        await websocket.send_text(json.dumps({"type": "redirect", "to": "/", **error.to_dict()}))
        await websocket.close(code=1008, reason=error.code)
    except Exception as e:
        logger.debug(f"Error closing WebSocket: {e}")


@app.websocket("/rooms/ws")
async def directory_websocket(websocket: WebSocket, display_name: Optional[str] = None):
    """Streams the room list: a `rooms` snapshot, then one `room_created` frame per new room.

    Inbound frames:
    - {"type": "create_room", "name": "..."}: replies with `room_ready` for navigation
    - {"type": "set_name", "display_name": "..."}
    """
    await websocket.accept()
    send = _frame_sender(websocket)

    async def room_created(room):
        await send({"type": "room_created", "room": _dump(room)})

    client = ChatClient(get_backend(), get_channel(), on_room_created=room_created)
    try:
        if display_name and display_name.strip():
            client.set_identity(display_name)
        try:
            rooms = await client.open()
        except SyncError as e:
            await _redirect(websocket, e)
            return
        await send({"type": "rooms", "rooms": [_dump(room) for room in rooms]})

        while True:
            frame = _parse_frame(await websocket.receive_text())
            frame_type = frame.get("type")
            try:
                if frame_type == "set_name":
                    client.set_identity(frame.get("display_name", ""))
                    await send({"type": "identity", "display_name": client.session.identity.display_name})
                elif frame_type == "create_room":
                    room = await client.create_room(frame.get("name", ""))
                    await send({"type": "room_ready", "room": _dump(room)})
                else:
                    logger.debug(f"Ignoring unknown directory frame type: {frame_type}")
            except SyncError as e:
                await send({"type": "error", **e.to_dict()})
    except WebSocketDisconnect:
        logger.info("Directory WebSocket disconnected normally")
    finally:
        client.close()


@app.websocket("/rooms/{room_id}/ws")
async def room_websocket(websocket: WebSocket, room_id: str, display_name: Optional[str] = None):
    """Live view of one room.

    Outbound frames: `room`, `history`, `message`, `scroll`, `sound`, `sound_state`,
    `sync_state`, `redirect`, `error`. Inbound frames: `message` (with `body`),
    `enable_sound`, `sound_failed` (with `action` and `reason`), `leave`.
    """
    logger.info(f"WebSocket connection attempt for room: {room_id}, display_name: {display_name}")
    await websocket.accept()
    send = _frame_sender(websocket)
    gate = NotificationGate(WebSocketAlert(send))
    reported_sound = {"enabled": None}

    async def send_sound_state():
        if reported_sound["enabled"] != gate.state.enabled:
            reported_sound["enabled"] = gate.state.enabled
            await send({"type": "sound_state", "enabled": gate.state.enabled, "reason": gate.last_failure})

    async def on_room(room):
        await send({"type": "room", "room": _dump(room)})

    async def on_degraded(reason):
        await send({"type": "sync_state", "degraded": reason is not None, "reason": reason})

    async def on_reset(messages):
        await send({"type": "history", "messages": [_dump(m) for m in messages]})

    async def on_message(message):
        await send({"type": "message", "message": _dump(message)})

    async def on_scroll():
        await send({"type": "scroll"})
        # Playback may have failed on the way here; re-offer the enable action
        await send_sound_state()

    client = ChatClient(
        get_backend(),
        get_channel(),
        gate=gate,
        on_reset=on_reset,
        on_message=on_message,
        on_scroll=on_scroll,
        on_room=on_room,
        on_degraded=on_degraded,
    )
    try:
        try:
            if display_name and display_name.strip():
                client.set_identity(display_name)
            room = await client.join_room(room_id)
        except SyncError as e:
            await _redirect(websocket, e)
            return
        if room is None:
            return
        await send_sound_state()

        while True:
            frame = _parse_frame(await websocket.receive_text())
            frame_type = frame.get("type", "message")
            if frame_type == "message":
                try:
                    await client.send(frame.get("body", ""))
                except StoreWriteFailed as e:
                    await send({"type": "error", **e.to_dict()})
            elif frame_type == "enable_sound":
                await client.enable_sound()
                await send_sound_state()
            elif frame_type == "sound_failed":
                # The browser rejected the unlock or playback after we sent it
                client.gate.report_failure(frame.get("reason", ""), frame.get("action", "play"))
                await send_sound_state()
            elif frame_type == "leave":
                client.leave_room()
                await send({"type": "redirect", "to": "/", "code": "Left"})
                await websocket.close()
                break
            else:
                logger.debug(f"Ignoring unknown frame type {frame_type} in room {room_id}")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally in room {room_id}")
    finally:
        client.close()

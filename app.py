from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from routers.rooms import rooms_router
from backend import JoinResult, relay_backend
from connections import RoomConnections
from constants import LOG_FILE, LOG_LEVEL, MAX_MESSAGE_BYTES
from exceptions import MalformedRequest, RoomNotFound
from schemas.rooms import (
    ErrorEvent,
    Frame,
    GenerateShareTokenRequest,
    JoinRoomRequest,
    PresenceEvent,
    RoomJoinedEvent,
    SendMessageRequest,
    ShareTokenEvent,
)
import events
import uuid
import json
from typing import Any, Dict, Optional, Type, TypeVar
from logging_config import get_logger, setup_logging, short_token

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


@asynccontextmanager
async def lifespan(app: FastAPI):
    relay_backend.start()
    try:
        yield
    finally:
        relay_backend.stop()


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

# Sockets attached to each room on this instance, keyed by primary token
room_connections = RoomConnections()


def parse_frame(raw: Optional[str]) -> Frame:
    if raw is None:
        raise MalformedRequest("Binary frames are not supported")
    if len(raw.encode("utf-8")) > MAX_MESSAGE_BYTES:
        raise MalformedRequest(f"Frame exceeds {MAX_MESSAGE_BYTES} bytes")
    try:
        return Frame.model_validate(json.loads(raw))
    except json.JSONDecodeError:
        raise MalformedRequest("Frame is not valid JSON")
    except ValidationError:
        raise MalformedRequest("Frame must be an object with an 'event' name and a 'data' object")


def parse_request(model: Type[RequestT], data: Dict[str, Any]) -> RequestT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise MalformedRequest(f"Invalid or missing fields: {', '.join(fields)}")


async def handle_join_room(websocket: WebSocket, connection_id: str, data: Dict[str, Any]) -> None:
    request = parse_request(JoinRoomRequest, data)
    primary = relay_backend.resolve_primary(request.room_token)
    if primary is None:
        raise RoomNotFound(request.room_token)

    previous = relay_backend.session_of(connection_id)
    try:
        async with room_connections.lock(primary):
            result = await join_and_announce(websocket, connection_id, request)
    except RoomNotFound:
        # The room vanished after resolution; a re-bind has already released the old room
        if previous is not None and relay_backend.session_of(connection_id) is None:
            room_connections.detach(connection_id)
            await announce_departure(previous.primary_room_token, previous.username)
        raise

    if previous is not None and previous.binding != (result.primary_token, request.username):
        await announce_departure(previous.primary_room_token, previous.username)


async def join_and_announce(websocket: WebSocket, connection_id: str, request: JoinRoomRequest) -> JoinResult:
    result = relay_backend.join(connection_id, request.room_token, request.username)
    room_connections.attach(result.primary_token, connection_id, websocket)
    await room_connections.send(websocket, events.ROOM_JOINED, RoomJoinedEvent(
        room_token=result.primary_token,
        user_count=result.user_count,
        messages=result.messages,
        used_share_token=result.used_share_token,
    ).model_dump())
    await room_connections.broadcast(result.primary_token, events.USER_JOINED, PresenceEvent(
        username=request.username,
        user_count=result.user_count,
    ).model_dump())
    return result


async def handle_send_message(websocket: WebSocket, connection_id: str, data: Dict[str, Any]) -> None:
    request = parse_request(SendMessageRequest, data)
    primary = relay_backend.resolve_primary(request.room_token)
    if primary is None:
        logger.debug(f"Message from connection {connection_id} dropped: room {short_token(request.room_token)} not found")
        return
    async with room_connections.lock(primary):
        message = relay_backend.send(primary, request.username, request.encrypted_message, request.timestamp)
        if message is None:
            return
        await room_connections.broadcast(primary, events.NEW_MESSAGE, message.model_dump())


async def handle_generate_share_token(websocket: WebSocket, connection_id: str, data: Dict[str, Any]) -> None:
    request = parse_request(GenerateShareTokenRequest, data)
    try:
        share_token = relay_backend.generate_share_token(request.room_token)
    except RoomNotFound:
        logger.info(f"Share token refused for connection {connection_id}: room {short_token(request.room_token)} not found")
        share_token = None
    await room_connections.send(websocket, events.SHARE_TOKEN, ShareTokenEvent(share_token=share_token).model_dump())


async def announce_departure(room_token: str, username: str) -> None:
    # Another connection may still hold the same username in this room
    if relay_backend.is_member(room_token, username):
        return
    if room_token not in room_connections.rooms:
        return
    async with room_connections.lock(room_token):
        await room_connections.broadcast(room_token, events.USER_LEFT, PresenceEvent(
            username=username,
            user_count=relay_backend.user_count(room_token),
        ).model_dump())


async def handle_disconnect(connection_id: str) -> None:
    room_connections.detach(connection_id)
    session = relay_backend.disconnect(connection_id)
    if session is None:
        return
    await announce_departure(session.primary_room_token, session.username)


EVENT_HANDLERS = {
    events.JOIN_ROOM: handle_join_room,
    events.SEND_MESSAGE: handle_send_message,
    events.GENERATE_SHARE_TOKEN: handle_generate_share_token,
}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Relay endpoint. Frames are JSON objects of the form {"event": ..., "data": {...}}."""
    await websocket.accept()
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection accepted: {connection_id}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            try:
                frame = parse_frame(raw)
                handler = EVENT_HANDLERS.get(frame.event)
                if handler is None:
                    raise MalformedRequest(f"Unknown event: {frame.event}")
                logger.debug(f"Received {frame.event} from connection {connection_id}")
                await handler(websocket, connection_id, frame.data)
            except RoomNotFound as e:
                logger.info(f"Connection {connection_id}: room {short_token(e.token)} not found")
                await room_connections.send(websocket, events.ROOM_ERROR, ErrorEvent(message=str(e)).model_dump())
            except MalformedRequest as e:
                logger.warning(f"Malformed frame from connection {connection_id}: {e}")
                await room_connections.send(websocket, events.ERROR, ErrorEvent(message=str(e)).model_dump())
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await handle_disconnect(connection_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

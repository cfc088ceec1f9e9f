from fastapi import APIRouter, HTTPException, Query, Request
from schemas.rooms import CheckRoomResponse, CreateRoomResponse, RoomDetailsResponse, ShareTokenResponse
from backend import relay_backend
from datetime import datetime, timezone
from exceptions import RoomNotFound
from logging_config import get_logger, short_token

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])

# Registry calls take short in-memory locks, so these endpoints are plain
# functions and run on FastAPI's threadpool.


def websocket_url(request: Request) -> str:
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


@rooms_router.post("/", status_code=201, response_model=CreateRoomResponse)
def create_room(request: Request):
    # Response 201: { "room_token": "3f9a...", "ws_url": "wss://api.example.com/ws" }
    client_host = request.client.host if request.client else "unknown"
    room_token = relay_backend.create_room()
    logger.info(f"Room {short_token(room_token)} created for {client_host}")
    return CreateRoomResponse(room_token=room_token, ws_url=websocket_url(request))


@rooms_router.get("/check", response_model=CheckRoomResponse)
def check_room(token: str = Query(..., min_length=1, description="Primary or share token")):
    """Existence check used by clients before opening the socket.

    Resolves share tokens, so the response carries the primary token that the
    client will be bound to.
    """
    primary = relay_backend.resolve_primary(token)
    if primary is None:
        logger.debug(f"Check for unknown room {short_token(token)}")
        return CheckRoomResponse(exists=False)
    return CheckRoomResponse(
        exists=True,
        user_count=relay_backend.user_count(primary),
        primary_room_token=primary,
    )


@rooms_router.post("/{token}/share", response_model=ShareTokenResponse)
def generate_share_token(token: str):
    try:
        share_token = relay_backend.generate_share_token(token)
    except RoomNotFound as e:
        logger.warning(f"Share token request failed: room {short_token(token)} not found")
        raise HTTPException(status_code=404, detail=str(e))
    return ShareTokenResponse(share_token=share_token)


@rooms_router.get("/{token}", response_model=RoomDetailsResponse)
def get_room_details(token: str):
    """Room details: primary token, creation time, online users, history size and share token count."""
    info = relay_backend.room_info(token)
    if info is None:
        logger.warning(f"Room details failed: room {short_token(token)} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return RoomDetailsResponse(
        room_token=info.primary_token,
        created_at=datetime.fromtimestamp(info.created_at, tz=timezone.utc).isoformat(),
        user_count=info.user_count,
        message_count=info.message_count,
        share_token_count=info.share_token_count,
    )

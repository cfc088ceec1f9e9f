from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from message_log import Message


class CreateRoomResponse(BaseModel):
    room_token: str
    ws_url: str

class CheckRoomResponse(BaseModel):
    exists: bool
    user_count: int = 0
    primary_room_token: Optional[str] = None

class ShareTokenResponse(BaseModel):
    share_token: str

class RoomDetailsResponse(BaseModel):
    room_token: str
    created_at: str
    user_count: int
    message_count: int
    share_token_count: int


# WebSocket frames: {"event": "...", "data": {...}}

class Frame(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

class JoinRoomRequest(BaseModel):
    room_token: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, max_length=64)

class SendMessageRequest(BaseModel):
    room_token: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, max_length=64)
    encrypted_message: str = Field(..., min_length=1)
    timestamp: int

class GenerateShareTokenRequest(BaseModel):
    room_token: str = Field(..., min_length=1)

class RoomJoinedEvent(BaseModel):
    room_token: str
    user_count: int
    messages: List[Message]
    used_share_token: bool = False

class PresenceEvent(BaseModel):
    username: str
    user_count: int

class ShareTokenEvent(BaseModel):
    share_token: Optional[str]

class ErrorEvent(BaseModel):
    message: str

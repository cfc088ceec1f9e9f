"""In-memory registry of relay rooms.

A room has one primary token and any number of share tokens aliasing it.
Every public method accepts either kind of token and resolves it through
``resolve_primary`` first.

Locking:
    - ``_rooms_lock`` guards the primary-token table
    - ``_aliases_lock`` guards the share-token table
    - each ``Room.lock`` guards that room's members, history and share tokens

Table locks are held only for dictionary access. A room lock may be held
while taking a table lock, never the other way round, so unrelated rooms do
not contend with each other.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from constants import MAX_ROOM_HISTORY, ROOM_TOKEN_BYTES, SHARE_TOKEN_BYTES
from logging_config import get_logger, short_token
from message_log import Message, MessageLog
from token_generator import generate_token

logger = get_logger(__name__)


@dataclass(eq=False)
class Room:
    primary_token: str
    created_at: float
    history: MessageLog
    members: Set[str] = field(default_factory=set)
    share_tokens: Set[str] = field(default_factory=set)
    # Clock value when the room last became empty, None while occupied
    empty_since: Optional[float] = None
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(frozen=True)
class RoomInfo:
    primary_token: str
    created_at: float
    user_count: int
    message_count: int
    share_token_count: int


class RoomRegistry:
    def __init__(
        self,
        max_history: Optional[int] = MAX_ROOM_HISTORY,
        room_token_bytes: int = ROOM_TOKEN_BYTES,
        share_token_bytes: int = SHARE_TOKEN_BYTES,
        clock: Callable[[], float] = time.time,
        on_room_empty: Optional[Callable[[str], None]] = None,
    ):
        self.max_history = max_history
        self.room_token_bytes = room_token_bytes
        self.share_token_bytes = share_token_bytes
        self.clock = clock
        # Called with the primary token after the last member leaves
        self.on_room_empty = on_room_empty

        self._rooms: Dict[str, Room] = {}
        self._aliases: Dict[str, str] = {}  # share token -> primary token
        self._rooms_lock = threading.Lock()
        self._aliases_lock = threading.Lock()

    def __len__(self) -> int:
        with self._rooms_lock:
            return len(self._rooms)

    # -- resolution --------------------------------------------------------

    def resolve_primary(self, token: Optional[str]) -> Optional[str]:
        """Map a primary or share token to the live room's primary token."""
        if not token:
            return None
        with self._rooms_lock:
            if token in self._rooms:
                return token
        with self._aliases_lock:
            primary = self._aliases.get(token)
        if primary is None:
            return None
        with self._rooms_lock:
            return primary if primary in self._rooms else None

    def exists(self, token: Optional[str]) -> bool:
        return self.resolve_primary(token) is not None

    def _get_room(self, token: Optional[str]) -> Optional[Room]:
        primary = self.resolve_primary(token)
        if primary is None:
            return None
        with self._rooms_lock:
            return self._rooms.get(primary)

    def _token_in_use(self, token: str) -> bool:
        with self._rooms_lock:
            if token in self._rooms:
                return True
        with self._aliases_lock:
            return token in self._aliases

    # -- lifecycle ---------------------------------------------------------

    def create_room(self) -> str:
        now = self.clock()
        while True:
            token = generate_token(self.room_token_bytes)
            if self._token_in_use(token):
                continue
            room = Room(
                primary_token=token,
                created_at=now,
                history=MessageLog(self.max_history),
                empty_since=now,
            )
            with self._rooms_lock:
                if token in self._rooms:
                    continue
                self._rooms[token] = room
            logger.info(f"Room created: {short_token(token)}")
            return token

    def generate_share_token(self, token: Optional[str]) -> Optional[str]:
        room = self._get_room(token)
        if room is None:
            logger.debug(f"Share token requested for unknown room {short_token(token)}")
            return None
        with room.lock:
            if room.closed:
                return None
            while True:
                share_token = generate_token(self.share_token_bytes)
                if self._token_in_use(share_token):
                    continue
                with self._aliases_lock:
                    if share_token in self._aliases:
                        continue
                    self._aliases[share_token] = room.primary_token
                break
            room.share_tokens.add(share_token)
        logger.info(
            f"Share token {short_token(share_token)} generated for room {short_token(room.primary_token)} "
            f"({len(room.share_tokens)} active)"
        )
        return share_token

    def delete_room(self, token: Optional[str], *, min_idle_seconds: float = 0.0) -> bool:
        """Delete an empty room together with all of its share tokens.

        Emptiness is re-checked under the room lock, so a user who joined after
        the deletion was requested keeps the room alive. With
        ``min_idle_seconds`` the room must also have been empty at least that
        long. Returns True if the room was deleted.
        """
        room = self._get_room(token)
        if room is None:
            return False
        with room.lock:
            idle_for = self._idle_for(room, self.clock())
            if idle_for is None or idle_for < min_idle_seconds:
                return False
            room.closed = True
            with self._aliases_lock:
                for share_token in room.share_tokens:
                    self._aliases.pop(share_token, None)
            with self._rooms_lock:
                self._rooms.pop(room.primary_token, None)
        logger.info(
            f"Room deleted: {short_token(room.primary_token)} "
            f"(share tokens: {len(room.share_tokens)}, messages: {room.history.total_appended})"
        )
        return True

    def idle_rooms(self, min_idle_seconds: float) -> List[str]:
        """Primary tokens of rooms that have been empty at least ``min_idle_seconds``."""
        now = self.clock()
        with self._rooms_lock:
            rooms = list(self._rooms.values())
        idle = []
        for room in rooms:
            with room.lock:
                idle_for = self._idle_for(room, now)
            if idle_for is not None and idle_for >= min_idle_seconds:
                idle.append(room.primary_token)
        return idle

    def idle_seconds(self, token: Optional[str]) -> Optional[float]:
        """How long the room has been empty; None if it is occupied or gone."""
        room = self._get_room(token)
        if room is None:
            return None
        with room.lock:
            return self._idle_for(room, self.clock())

    @staticmethod
    def _idle_for(room: Room, now: float) -> Optional[float]:
        if room.closed or room.members:
            return None
        empty_since = room.empty_since if room.empty_since is not None else room.created_at
        return max(0.0, now - empty_since)

    # -- membership --------------------------------------------------------

    def join(self, token: Optional[str], username: str) -> bool:
        room = self._get_room(token)
        if room is None:
            return False
        with room.lock:
            if room.closed:
                return False
            room.members.add(username)
            room.empty_since = None
            count = len(room.members)
        logger.debug(f"{username} joined room {short_token(room.primary_token)} ({count} members)")
        return True

    def leave(self, token: Optional[str], username: str) -> Optional[int]:
        """Remove ``username``; returns the remaining member count or None if nothing changed."""
        room = self._get_room(token)
        if room is None:
            return None
        with room.lock:
            if room.closed or username not in room.members:
                return None
            room.members.discard(username)
            remaining = len(room.members)
            if remaining == 0:
                room.empty_since = self.clock()
        logger.debug(f"{username} left room {short_token(room.primary_token)} ({remaining} members)")
        if remaining == 0:
            logger.info(f"Room {short_token(room.primary_token)} is empty")
            if self.on_room_empty is not None:
                self.on_room_empty(room.primary_token)
        return remaining

    def user_count(self, token: Optional[str]) -> int:
        room = self._get_room(token)
        if room is None:
            return 0
        with room.lock:
            return 0 if room.closed else len(room.members)

    def members(self, token: Optional[str]) -> Set[str]:
        room = self._get_room(token)
        if room is None:
            return set()
        with room.lock:
            return set() if room.closed else set(room.members)

    # -- history -----------------------------------------------------------

    def append_message(self, token: Optional[str], message: Message) -> bool:
        """Append to the room's history. False means the room is gone and the message was dropped."""
        room = self._get_room(token)
        if room is None:
            return False
        with room.lock:
            if room.closed:
                return False
            room.history.append(message)
        return True

    def recent_messages(self, token: Optional[str], limit: int) -> List[Message]:
        room = self._get_room(token)
        if room is None:
            return []
        with room.lock:
            if room.closed:
                return []
            return room.history.recent(limit)

    def room_info(self, token: Optional[str]) -> Optional[RoomInfo]:
        room = self._get_room(token)
        if room is None:
            return None
        with room.lock:
            if room.closed:
                return None
            return RoomInfo(
                primary_token=room.primary_token,
                created_at=room.created_at,
                user_count=len(room.members),
                message_count=len(room.history),
                share_token_count=len(room.share_tokens),
            )

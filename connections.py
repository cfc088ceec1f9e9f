"""Local WebSocket fan-out for relay rooms.

Tracks the sockets attached to each room (by primary token) and broadcasts
frames to them concurrently. Broadcasting for a room happens under that room's
``asyncio.Lock`` so frames reach every member in the order they were
produced.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import WebSocket

from logging_config import get_logger, short_token

logger = get_logger(__name__)


class RoomConnections:
    def __init__(self) -> None:
        # primary token -> {connection_id: websocket}
        self.rooms: Dict[str, Dict[str, WebSocket]] = {}
        # connection_id -> primary token
        self.connection_rooms: Dict[str, str] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # primary token -> tasks holding or waiting on that room's lock
        self._lock_users: Dict[str, int] = {}

    def attach(self, room_token: str, connection_id: str, websocket: WebSocket) -> None:
        """Attach a socket to a room, detaching it from any room it was in before."""
        previous = self.connection_rooms.get(connection_id)
        if previous is not None and previous != room_token:
            self.detach(connection_id)
        self.rooms.setdefault(room_token, {})[connection_id] = websocket
        self.connection_rooms[connection_id] = room_token
        logger.debug(
            f"Attached connection {connection_id} to room {short_token(room_token)} "
            f"(local connections: {len(self.rooms[room_token])})"
        )

    def detach(self, connection_id: str) -> Optional[str]:
        room_token = self.connection_rooms.pop(connection_id, None)
        if room_token is None:
            return None
        sockets = self.rooms.get(room_token)
        if sockets is not None:
            sockets.pop(connection_id, None)
            if not sockets:
                del self.rooms[room_token]
                logger.debug(f"No more local connections in room {short_token(room_token)}")
        return room_token

    @asynccontextmanager
    async def lock(self, room_token: str) -> AsyncIterator[None]:
        """Hold the room's lock across append + broadcast so delivery order equals append order.

        The lock entry is dropped once no task holds or waits on it.
        """
        lock = self._room_locks.get(room_token)
        if lock is None:
            lock = self._room_locks[room_token] = asyncio.Lock()
        self._lock_users[room_token] = self._lock_users.get(room_token, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[room_token] - 1
            if remaining:
                self._lock_users[room_token] = remaining
            else:
                del self._lock_users[room_token]
                del self._room_locks[room_token]

    async def send(self, websocket: WebSocket, event: str, data: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug(f"Failed to send {event} to connection: {e}")
            return False

    async def broadcast(self, room_token: str, event: str, data: Dict[str, Any]) -> int:
        """Send a frame to every local socket in the room; returns how many deliveries succeeded.

        Sockets that fail are detached; the transport's disconnect handling
        releases their sessions.
        """
        targets: List[tuple] = list(self.rooms.get(room_token, {}).items())
        if not targets:
            return 0
        results = await asyncio.gather(
            *[self.send(ws, event, data) for _, ws in targets],
            return_exceptions=True,
        )
        failed = [conn_id for (conn_id, _), ok in zip(targets, results) if ok is not True]
        for conn_id in failed:
            self.detach(conn_id)
            logger.warning(f"Dropped unreachable connection {conn_id} from room {short_token(room_token)}")
        logger.debug(f"Broadcast {event} to {len(targets) - len(failed)}/{len(targets)} connections in room {short_token(room_token)}")
        return len(targets) - len(failed)

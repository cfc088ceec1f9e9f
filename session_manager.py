import threading
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from logging_config import get_logger, short_token
from room_registry import RoomRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class Session:
    connection_id: str
    username: str
    primary_room_token: str
    used_share_token: bool = False

    @property
    def binding(self) -> Tuple[str, str]:
        return (self.primary_room_token, self.username)


class SessionManager:
    """Binds transport connections to a (username, room) pair.

    Room membership is keyed by username, so the same user connected twice to
    one room (two browser tabs) is a single member. The manager tracks which
    connections hold each (room, username) pair and only asks the registry to
    drop the member when the last of them goes away.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self._sessions: Dict[str, Session] = {}
        # (primary token, username) -> connection ids bound to it
        self._bindings: Dict[Tuple[str, str], Set[str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_of(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    def bind(self, connection_id: str, username: str, requested_token: str) -> Optional[Session]:
        """Bind ``connection_id`` to the room behind ``requested_token``.

        Returns the new Session, or None when the token does not resolve to a
        live room (no session is created in that case). Re-binding a
        connection replaces its previous session and releases the old room.
        """
        primary = self.registry.resolve_primary(requested_token)
        if primary is None:
            logger.info(f"Bind rejected for connection {connection_id}: room {short_token(requested_token)} not found")
            return None

        session = Session(
            connection_id=connection_id,
            username=username,
            primary_room_token=primary,
            used_share_token=requested_token != primary,
        )
        release_previous = False
        with self._lock:
            previous = self._sessions.get(connection_id)
            self._sessions[connection_id] = session
            if previous is not None and previous.binding != session.binding:
                release_previous = self._release(previous)
            self._bindings.setdefault(session.binding, set()).add(connection_id)

        if release_previous:
            self._leave_room(previous)

        if not self.registry.join(primary, username):
            # Room was deleted between resolution and join
            with self._lock:
                if self._sessions.get(connection_id) == session:
                    del self._sessions[connection_id]
                self._release(session)
            logger.info(f"Bind rejected for connection {connection_id}: room {short_token(primary)} vanished")
            return None

        logger.info(
            f"Connection {connection_id} bound as {username} to room {short_token(primary)}"
            f"{' via share token' if session.used_share_token else ''}"
        )
        return session

    def unbind(self, connection_id: str) -> Optional[Session]:
        """Drop the connection's session, if any. Safe to call for connections that never joined."""
        with self._lock:
            session = self._sessions.pop(connection_id, None)
            if session is None:
                return None
            last_binding = self._release(session)

        if last_binding:
            self._leave_room(session)
        logger.info(
            f"Connection {connection_id} ({session.username}) unbound from room {short_token(session.primary_room_token)}"
        )
        return session

    def _release(self, session: Session) -> bool:
        """Forget one binding; True if no connection holds that (room, username) any more.

        Must be called with ``_lock`` held.
        """
        holders = self._bindings.get(session.binding)
        if holders is None:
            return False
        holders.discard(session.connection_id)
        if holders:
            return False
        del self._bindings[session.binding]
        return True

    def _leave_room(self, session: Session) -> None:
        room_token, username = session.binding
        self.registry.leave(room_token, username)
        # Another connection may have bound the same user while we were leaving
        with self._lock:
            rebound = session.binding in self._bindings
        if rebound:
            self.registry.join(room_token, username)

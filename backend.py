from dataclasses import dataclass, field
from typing import List, Optional

from constants import HISTORY_LIMIT, MAX_ROOM_HISTORY, ROOM_RETENTION_SECONDS, ROOM_SWEEP_INTERVAL_SECONDS
from exceptions import RoomNotFound
from expiration_sweeper import ExpirationSweeper
from logging_config import get_logger, short_token
from message_log import Message
from room_registry import RoomInfo, RoomRegistry
from session_manager import Session, SessionManager

logger = get_logger(__name__)


@dataclass
class JoinResult:
    primary_token: str
    user_count: int
    messages: List[Message] = field(default_factory=list)
    used_share_token: bool = False


class RelayBackend:
    """The room relay's call surface for the transport layer.

    Wires a RoomRegistry, a SessionManager and an ExpirationSweeper together.
    Nothing here touches the network; broadcasting the results is up to the
    caller.
    """

    def __init__(
        self,
        registry: Optional[RoomRegistry] = None,
        retention_seconds: float = ROOM_RETENTION_SECONDS,
        sweep_interval_seconds: float = ROOM_SWEEP_INTERVAL_SECONDS,
        history_limit: int = HISTORY_LIMIT,
        sweeper: Optional[ExpirationSweeper] = None,
    ):
        self.registry = registry if registry is not None else RoomRegistry(max_history=MAX_ROOM_HISTORY)
        self.sessions = SessionManager(self.registry)
        self.sweeper = sweeper if sweeper is not None else ExpirationSweeper(
            self.registry,
            retention_seconds=retention_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
        )
        self.registry.on_room_empty = self.sweeper.schedule_deletion
        self.history_limit = history_limit
        logger.info(
            f"Initializing RelayBackend (retention={self.sweeper.retention_seconds}s, "
            f"sweep_interval={self.sweeper.sweep_interval_seconds}s, history_limit={history_limit})"
        )

    def start(self) -> None:
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()

    def create_room(self) -> str:
        return self.registry.create_room()

    def room_exists(self, token: Optional[str]) -> bool:
        return self.registry.exists(token)

    def resolve_primary(self, token: Optional[str]) -> Optional[str]:
        return self.registry.resolve_primary(token)

    def user_count(self, token: Optional[str]) -> int:
        return self.registry.user_count(token)

    def is_member(self, token: Optional[str], username: str) -> bool:
        return username in self.registry.members(token)

    def room_info(self, token: Optional[str]) -> Optional[RoomInfo]:
        return self.registry.room_info(token)

    def join(self, connection_id: str, token: str, username: str) -> JoinResult:
        """Bind the connection to the room and return what the joiner needs to render it.

        Raises RoomNotFound if the token does not resolve to a live room.
        """
        session = self.sessions.bind(connection_id, username, token)
        if session is None:
            raise RoomNotFound(token)
        primary = session.primary_room_token
        result = JoinResult(
            primary_token=primary,
            user_count=self.registry.user_count(primary),
            messages=self.registry.recent_messages(primary, self.history_limit),
            used_share_token=session.used_share_token,
        )
        logger.info(
            f"{username} joined room {short_token(primary)}: "
            f"{result.user_count} users, {len(result.messages)} messages replayed"
        )
        return result

    def send(self, token: str, username: str, encrypted_message: str, timestamp: int) -> Optional[Message]:
        """Append a message to the room's history.

        Returns the stored Message, or None when the room is gone; such
        messages are dropped silently.
        """
        primary = self.registry.resolve_primary(token)
        if primary is None:
            logger.debug(f"Message from {username} dropped: room {short_token(token)} not found")
            return None
        message = Message(username=username, encrypted_message=encrypted_message, timestamp=timestamp)
        if not self.registry.append_message(primary, message):
            logger.debug(f"Message from {username} dropped: room {short_token(primary)} deleted meanwhile")
            return None
        logger.debug(f"Message {message.message_id} from {username} appended to room {short_token(primary)}")
        return message

    def generate_share_token(self, token: str) -> str:
        share_token = self.registry.generate_share_token(token)
        if share_token is None:
            raise RoomNotFound(token)
        return share_token

    def disconnect(self, connection_id: str) -> Optional[Session]:
        """Release whatever the connection was bound to; a no-op for connections that never joined."""
        return self.sessions.unbind(connection_id)

    def session_of(self, connection_id: str) -> Optional[Session]:
        return self.sessions.session_of(connection_id)


relay_backend = RelayBackend()

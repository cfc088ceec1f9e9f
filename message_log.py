from collections import deque
from itertools import islice
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from token_generator import generate_message_id


class Message(BaseModel):
    """A relayed chat message. The payload is ciphertext and is never inspected."""

    model_config = ConfigDict(frozen=True)

    username: str
    encrypted_message: str
    timestamp: int = Field(..., description="Client-supplied epoch milliseconds, not verified")
    message_id: str = Field(default_factory=generate_message_id)


class MessageLog:
    """Append-only history of one room.

    Holds at most ``max_messages`` entries, evicting the oldest first
    (``None`` keeps everything). Not synchronised on its own: the owning room's
    lock serialises access.
    """

    def __init__(self, max_messages: Optional[int] = None):
        if max_messages is not None and max_messages < 1:
            raise ValueError(f"max_messages must be positive, got {max_messages}")
        self.max_messages = max_messages
        self._messages = deque(maxlen=max_messages)
        self.total_appended = 0

    def append(self, message: Message) -> None:
        self._messages.append(message)
        self.total_appended += 1

    def recent(self, limit: int) -> List[Message]:
        """Last ``limit`` messages, oldest first, as a snapshot list."""
        if limit <= 0:
            return []
        size = len(self._messages)
        if limit >= size:
            return list(self._messages)
        return list(islice(self._messages, size - limit, size))

    def __len__(self) -> int:
        return len(self._messages)

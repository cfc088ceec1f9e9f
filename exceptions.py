class RelayError(Exception):
    """Base class for errors surfaced to relay clients."""


class RoomNotFound(RelayError):
    """The token does not resolve to a live room."""

    def __init__(self, token: str):
        super().__init__("Room does not exist or has expired")
        self.token = token


class MalformedRequest(RelayError):
    """A client frame is missing required fields or cannot be decoded."""

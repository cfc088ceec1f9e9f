import secrets
import uuid

DEFAULT_TOKEN_BYTES = 16


def generate_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return ``byte_length`` CSPRNG bytes as lowercase hex.

    Room and share tokens are access capabilities: whoever holds one can join
    the room and read its history, so they must come from ``secrets``.
    """
    if byte_length < 1:
        raise ValueError(f"byte_length must be positive, got {byte_length}")
    return secrets.token_hex(byte_length)


def generate_message_id() -> str:
    """Random 128-bit id used by clients to dedupe messages."""
    return str(uuid.uuid4())

import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Token widths in bytes; hex-encoded tokens are twice as long
ROOM_TOKEN_BYTES = int(os.getenv("ROOM_TOKEN_BYTES", 16))
SHARE_TOKEN_BYTES = int(os.getenv("SHARE_TOKEN_BYTES", 16))

# An empty room is deleted once it has been empty this long
ROOM_RETENTION_SECONDS = float(os.getenv("ROOM_RETENTION_SECONDS", 3600))
# Full scan for abandoned rooms; 0 disables the periodic sweep
ROOM_SWEEP_INTERVAL_SECONDS = float(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 300))

# Messages replayed to a client when it joins
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", 50))
# Messages retained per room; oldest are evicted first
MAX_ROOM_HISTORY = int(os.getenv("MAX_ROOM_HISTORY", 1000))

MAX_MESSAGE_BYTES = int(os.getenv("MAX_MESSAGE_BYTES", 1024 * 1024))

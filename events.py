# Client -> server
JOIN_ROOM = "join-room"
SEND_MESSAGE = "send-message"
GENERATE_SHARE_TOKEN = "generate-share-token"

# Server -> client
ROOM_JOINED = "room-joined"  # sent to the joining connection only
ROOM_ERROR = "room-error"
USER_JOINED = "user-joined"  # broadcast to the room
USER_LEFT = "user-left"  # broadcast to the room
NEW_MESSAGE = "new-message"  # broadcast to the room
SHARE_TOKEN = "share-token"  # reply to generate-share-token
ERROR = "error"  # malformed frame

# **Frame format**
# - `{"event": "<name>", "data": {...}}` in both directions
# - `room_token` may be a primary or a share token on every client event;
#   the server always answers with the primary token

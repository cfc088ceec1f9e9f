"""End-to-end tests for the relay WebSocket endpoint."""
import app as app_module
import events


def emit(ws, event, **data):
    ws.send_json({"event": event, "data": data})


def receive(ws, expected_event):
    frame = ws.receive_json()
    assert frame["event"] == expected_event, frame
    return frame["data"]


def join(ws, room_token, username):
    emit(ws, events.JOIN_ROOM, room_token=room_token, username=username)
    joined = receive(ws, events.ROOM_JOINED)
    presence = receive(ws, events.USER_JOINED)
    assert presence["username"] == username
    return joined


def test_two_clients_relay_through_share_token(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as alice_ws:
        joined = join(alice_ws, token, "alice")
        assert joined == {"room_token": token, "user_count": 1, "messages": [], "used_share_token": False}

        emit(alice_ws, events.SEND_MESSAGE, room_token=token, username="alice",
             encrypted_message="ciphertext1", timestamp=1_700_000_000_000)
        message = receive(alice_ws, events.NEW_MESSAGE)
        assert message["encrypted_message"] == "ciphertext1"
        assert message["username"] == "alice"
        assert message["timestamp"] == 1_700_000_000_000
        assert message["message_id"]

        emit(alice_ws, events.GENERATE_SHARE_TOKEN, room_token=token)
        share = receive(alice_ws, events.SHARE_TOKEN)["share_token"]
        assert share and share != token

        with api_client.websocket_connect("/ws") as bob_ws:
            joined = join(bob_ws, share, "bob")
            assert joined["room_token"] == token
            assert joined["user_count"] == 2
            assert joined["used_share_token"] is True
            assert joined["messages"] == [message]

            assert receive(alice_ws, events.USER_JOINED) == {"username": "bob", "user_count": 2}

            emit(bob_ws, events.SEND_MESSAGE, room_token=share, username="bob",
                 encrypted_message="ciphertext2", timestamp=1_700_000_000_001)
            assert receive(alice_ws, events.NEW_MESSAGE)["encrypted_message"] == "ciphertext2"
            assert receive(bob_ws, events.NEW_MESSAGE)["encrypted_message"] == "ciphertext2"

        assert receive(alice_ws, events.USER_LEFT) == {"username": "bob", "user_count": 1}

    assert backend.user_count(token) == 0
    assert backend.room_exists(token)


def test_messages_arrive_in_append_order(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as sender, api_client.websocket_connect("/ws") as reader:
        join(sender, token, "alice")
        join(reader, token, "bob")
        receive(sender, events.USER_JOINED)

        for n in range(5):
            emit(sender, events.SEND_MESSAGE, room_token=token, username="alice",
                 encrypted_message=f"c{n}", timestamp=n)

        received = [receive(reader, events.NEW_MESSAGE)["encrypted_message"] for _ in range(5)]
        assert received == [f"c{n}" for n in range(5)]
        assert [m.encrypted_message for m in backend.registry.recent_messages(token, 5)] == received


def test_join_unknown_room(api_client, backend):
    with api_client.websocket_connect("/ws") as ws:
        emit(ws, events.JOIN_ROOM, room_token="missing", username="alice")
        error = receive(ws, events.ROOM_ERROR)
        assert error["message"] == "Room does not exist or has expired"

    assert len(backend.sessions) == 0


def test_share_token_for_unknown_room_is_null(api_client):
    with api_client.websocket_connect("/ws") as ws:
        emit(ws, events.GENERATE_SHARE_TOKEN, room_token="missing")
        assert receive(ws, events.SHARE_TOKEN) == {"share_token": None}


def test_send_to_unknown_room_is_silently_dropped(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as ws:
        emit(ws, events.SEND_MESSAGE, room_token="missing", username="alice",
             encrypted_message="lost", timestamp=1)
        # The next frame the client sees answers the following request
        emit(ws, events.GENERATE_SHARE_TOKEN, room_token=token)
        assert receive(ws, events.SHARE_TOKEN)["share_token"]


def test_malformed_frames_keep_connection_open(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert "JSON" in receive(ws, events.ERROR)["message"]

        emit(ws, "dance")
        assert receive(ws, events.ERROR)["message"] == "Unknown event: dance"

        emit(ws, events.JOIN_ROOM, room_token=token)
        assert "username" in receive(ws, events.ERROR)["message"]

        emit(ws, events.SEND_MESSAGE, room_token=token, username="alice", encrypted_message="x")
        assert "timestamp" in receive(ws, events.ERROR)["message"]

        join(ws, token, "alice")


def test_disconnect_schedules_room_cleanup(api_client, backend, timers, clock):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as ws:
        join(ws, token, "alice")

    assert backend.user_count(token) == 0
    assert backend.sweeper.is_scheduled(token)

    timers.fire_all(clock)
    assert not backend.room_exists(token)


def test_rejoining_another_room_moves_the_connection(api_client, backend):
    first = backend.create_room()
    second = backend.create_room()

    with api_client.websocket_connect("/ws") as watcher, api_client.websocket_connect("/ws") as mover:
        join(watcher, first, "watcher")
        join(mover, first, "mover")
        receive(watcher, events.USER_JOINED)

        join(mover, second, "mover")
        assert receive(watcher, events.USER_LEFT) == {"username": "mover", "user_count": 1}

        assert backend.is_member(second, "mover")
        assert not backend.is_member(first, "mover")


def test_room_locks_are_released_after_last_disconnect(api_client, backend):
    tokens = [backend.create_room() for _ in range(5)]

    for n, token in enumerate(tokens):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, token, f"user{n}")
            emit(ws, events.SEND_MESSAGE, room_token=token, username=f"user{n}",
                 encrypted_message="c", timestamp=n)
            receive(ws, events.NEW_MESSAGE)

    connections = app_module.room_connections
    assert connections.rooms == {}
    assert connections._room_locks == {}

    for token in tokens:
        backend.registry.delete_room(token)
    assert len(backend.registry) == 0
    assert connections._room_locks == {}


def test_send_without_joining_leaves_no_room_lock(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as ws:
        emit(ws, events.SEND_MESSAGE, room_token=token, username="alice",
             encrypted_message="c", timestamp=1)
        emit(ws, events.GENERATE_SHARE_TOKEN, room_token=token)
        receive(ws, events.SHARE_TOKEN)

    assert backend.registry.recent_messages(token, 10)[0].encrypted_message == "c"
    assert app_module.room_connections._room_locks == {}


def test_binary_frame_gets_error_reply(api_client, backend):
    token = backend.create_room()

    with api_client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\x00\x01")
        assert receive(ws, events.ERROR)["message"] == "Binary frames are not supported"

        join(ws, token, "alice")


def test_rejoin_into_room_deleted_mid_join_leaves_old_room(api_client, backend, monkeypatch):
    first = backend.create_room()
    second = backend.create_room()

    with api_client.websocket_connect("/ws") as watcher, api_client.websocket_connect("/ws") as mover:
        join(watcher, first, "watcher")
        join(mover, first, "mover")
        receive(watcher, events.USER_JOINED)

        registry_join = backend.registry.join

        def join_after_delete(room_token, username):
            if room_token == second:
                backend.registry.delete_room(room_token)
            return registry_join(room_token, username)

        monkeypatch.setattr(backend.registry, "join", join_after_delete)

        emit(mover, events.JOIN_ROOM, room_token=second, username="mover")
        assert receive(mover, events.ROOM_ERROR)["message"] == "Room does not exist or has expired"
        assert receive(watcher, events.USER_LEFT) == {"username": "mover", "user_count": 1}

        assert len(app_module.room_connections.rooms[first]) == 1
        assert not backend.is_member(first, "mover")

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from messenger.realtime import events

PASSWORD = "password123"


def register_and_login(client: TestClient, username: str) -> tuple[str, str]:
    """Returns the new user's id and auth token."""
    email = f"{username}@example.com"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "username": username},
    )
    assert response.status_code == 201, response.text
    user_id = response.json()["id"]

    response = client.post(
        "/auth/jwt/login", data={"username": email, "password": PASSWORD}
    )
    assert response.status_code == 204, response.text
    token = response.headers["set-cookie"].split(";")[0].split("=", 1)[1]
    client.cookies.clear()
    return user_id, token


def auth(token: str) -> dict[str, str]:
    return {"Cookie": f"fastapiusersauth={token}"}


def sync_socket(websocket) -> None:
    """Round-trips an unknown intent, so every earlier intent has been handled."""
    websocket.send_json({"event": "ping"})
    frame = websocket.receive_json()
    assert frame == {
        "event": events.ERROR,
        "data": {"event": "ping", "message": "Unknown event 'ping'"},
    }


def test_rejects_missing_or_invalid_token(live_client: TestClient):
    for url in ("/ws", "/ws?token=not-a-jwt"):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with live_client.websocket_connect(url) as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 1008


def test_realtime_conversation_flow(live_client: TestClient):
    alice_id, alice_token = register_and_login(live_client, "alice")
    bob_id, bob_token = register_and_login(live_client, "bob")
    response = live_client.post(
        "/api/conversations", json={"participants": [bob_id]}, headers=auth(alice_token)
    )
    assert response.status_code == 201, response.text
    conversation_id = response.json()["data"]["id"]

    with live_client.websocket_connect(f"/ws?token={alice_token}") as alice_ws, \
            live_client.websocket_connect(f"/ws?token={bob_token}") as bob_ws:
        for websocket in (alice_ws, bob_ws):
            websocket.send_json({"event": events.AUTH_JOIN})
            websocket.send_json(
                {"event": events.CONVERSATION_JOIN, "data": {"conversationId": conversation_id}}
            )
            sync_socket(websocket)

        alice_ws.send_json(
            {
                "event": events.MESSAGE_SEND,
                "data": {"conversationId": conversation_id, "content": "hello bob"},
                "ackId": "a1",
            }
        )

        # Personal channel, then the conversation room, then the acknowledgement
        personal = alice_ws.receive_json()
        room = alice_ws.receive_json()
        ack = alice_ws.receive_json()
        assert personal["event"] == room["event"] == events.MESSAGE_NEW
        message = personal["data"]
        assert message["content"] == "hello bob"
        assert message["sender"]["id"] == alice_id
        assert ack == {
            "event": events.ACK,
            "data": {"ackId": "a1", "status": "ok", "messageId": message["id"]},
        }

        received = [bob_ws.receive_json() for _ in range(3)]
        assert [frame["event"] for frame in received] == [
            events.MESSAGE_NEW,
            events.MESSAGE_NEW,
            events.NOTIFICATION_NEW,
        ]
        notification = received[2]["data"]
        assert notification["type"] == "message"
        assert notification["entity"] == {"type": "message", "id": message["id"]}
        assert notification["metadata"] == {"conversationId": conversation_id}

        # Typing reaches the other viewers only
        bob_ws.send_json(
            {"event": events.TYPING_START, "data": {"conversationId": conversation_id}}
        )
        typing = alice_ws.receive_json()
        assert typing == {
            "event": events.TYPING_START,
            "data": {"conversationId": conversation_id, "userId": bob_id},
        }

        bob_ws.send_json(
            {
                "event": events.MESSAGE_READ,
                "data": {"conversationId": conversation_id, "messageIds": [message["id"]]},
            }
        )
        read = alice_ws.receive_json()
        assert read["event"] == events.MESSAGE_READ
        assert read["data"] == {
            "conversationId": conversation_id,
            "messageIds": [message["id"]],
            "readerId": bob_id,
        }

    response = live_client.get(f"/api/messages/{conversation_id}", headers=auth(alice_token))
    (stored,) = response.json()["data"]["items"]
    assert stored["readBy"] == [bob_id]

    response = live_client.get("/api/notifications", headers=auth(bob_token))
    assert response.json()["data"]["totalUnread"] == 1


def test_intent_errors(live_client: TestClient):
    _, alice_token = register_and_login(live_client, "alice")
    bob_id, bob_token = register_and_login(live_client, "bob")
    _, carol_token = register_and_login(live_client, "carol")
    response = live_client.post(
        "/api/conversations", json={"participants": [bob_id]}, headers=auth(alice_token)
    )
    conversation_id = response.json()["data"]["id"]

    with live_client.websocket_connect(f"/ws?token={carol_token}") as carol_ws:
        carol_ws.send_text("{not json")
        assert carol_ws.receive_json() == {
            "event": events.ERROR,
            "data": {"event": None, "message": "Malformed frame"},
        }

        carol_ws.send_json(
            {"event": events.CONVERSATION_JOIN, "data": {"conversationId": conversation_id}}
        )
        assert carol_ws.receive_json() == {
            "event": events.ERROR,
            "data": {"event": events.CONVERSATION_JOIN, "message": "Conversation not found."},
        }

        carol_ws.send_json(
            {
                "event": events.MESSAGE_SEND,
                "data": {"conversationId": conversation_id, "content": "sneaky"},
                "ackId": "c1",
            }
        )
        assert carol_ws.receive_json() == {
            "event": events.ACK,
            "data": {"ackId": "c1", "status": "error", "message": "Conversation not found."},
        }

        carol_ws.send_json(
            {"event": events.MESSAGE_SEND, "data": {"conversationId": "nope"}, "ackId": "c2"}
        )
        ack = carol_ws.receive_json()
        assert ack["data"]["status"] == "error"
        assert ack["data"]["ackId"] == "c2"

        # Not in the room, so nothing is relayed and the next reply is the sync error
        carol_ws.send_json(
            {"event": events.TYPING_START, "data": {"conversationId": conversation_id}}
        )
        sync_socket(carol_ws)

    response = live_client.get(f"/api/messages/{conversation_id}", headers=auth(alice_token))
    assert response.json()["data"]["items"] == []

"""
Tests for the /communication/ws realtime channel
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from bloodchain.models.conversation import conversation_id_for


def ws_url(token):
    return f"/communication/ws?token={token}"


class TestHandshake:
    """Test suite for connecting to the realtime channel"""

    def test_rejects_missing_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/communication/ws") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(ws_url("nonsense")) as ws:
                ws.receive_json()

    def test_connected_frame(self, client, token_for):
        with client.websocket_connect(ws_url(token_for("hosp-1"))) as ws:
            frame = ws.receive_json()
        assert frame["event"] == "connected"
        assert frame["data"]["participantId"] == "hosp-1"
        assert frame["data"]["sessionId"]

    def test_authorization_header(self, client, auth):
        with client.websocket_connect("/communication/ws", headers=auth("bank-1")) as ws:
            assert ws.receive_json()["data"]["participantId"] == "bank-1"

    def test_ping(self, client, token_for):
        with client.websocket_connect(ws_url(token_for("hosp-1"))) as ws:
            ws.receive_json()
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"event": "pong", "data": {}}


class TestEvents:
    """Test suite for ledger events pushed over the channel"""

    def test_receiver_notified_of_append(self, client, auth, token_for):
        with client.websocket_connect(ws_url(token_for("hosp-1"))) as ws:
            ws.receive_json()
            response = client.post(
                "/communication/send",
                data={"receiverId": "hosp-1", "content": "Blood units available", "sosId": "SOS-42"},
                headers=auth("bank-1"),
            )
            frame = ws.receive_json()

        message = response.json()["data"]
        assert frame == {
            "event": "message_appended",
            "data": {
                "conversationId": message["conversationId"],
                "messageId": message["id"],
                "sequenceNumber": 0,
                "sosId": "SOS-42",
            },
        }

    def test_sender_notified_of_read(self, client, auth, token_for):
        sent = client.post(
            "/communication/send",
            data={"receiverId": "hosp-1", "content": "Blood units available"},
            headers=auth("bank-1"),
        ).json()["data"]

        with client.websocket_connect(ws_url(token_for("bank-1"))) as ws:
            ws.receive_json()
            client.post(f"/communication/message/{sent['id']}/read", headers=auth("hosp-1"))
            frame = ws.receive_json()

        assert frame["event"] == "message_read"
        assert frame["data"]["messageId"] == sent["id"]
        assert frame["data"]["readAt"] is not None


class TestSubscriptions:
    """Test suite for conversation channel subscriptions"""

    def test_admin_subscribes_to_conversation(self, client, auth, token_for):
        client.post("/communication/send", data={"receiverId": "hosp-1", "content": "first"}, headers=auth("bank-1"))
        conversation_id = conversation_id_for("bank-1", "hosp-1")

        with client.websocket_connect(ws_url(token_for("admin-1"))) as ws:
            ws.receive_json()
            ws.send_json({"action": "subscribe", "conversationId": conversation_id})
            assert ws.receive_json() == {"event": "subscribed", "data": {"conversationId": conversation_id}}

            client.post("/communication/send", data={"receiverId": "bank-1", "content": "second"}, headers=auth("hosp-1"))
            frame = ws.receive_json()

        assert frame["event"] == "message_appended"
        assert frame["data"]["sequenceNumber"] == 1

    def test_outsider_cannot_subscribe(self, client, auth, token_for):
        client.post("/communication/send", data={"receiverId": "hosp-1", "content": "first"}, headers=auth("bank-1"))
        conversation_id = conversation_id_for("bank-1", "hosp-1")

        with client.websocket_connect(ws_url(token_for("hosp-2"))) as ws:
            ws.receive_json()
            ws.send_json({"action": "subscribe", "conversationId": conversation_id})
            frame = ws.receive_json()

        assert frame["event"] == "error"
        assert frame["data"]["conversationId"] == conversation_id

    def test_unknown_action(self, client, token_for):
        with client.websocket_connect(ws_url(token_for("hosp-1"))) as ws:
            ws.receive_json()
            ws.send_json({"action": "shout"})
            assert ws.receive_json()["event"] == "error"

    def test_non_json_frame(self, client, token_for):
        with client.websocket_connect(ws_url(token_for("hosp-1"))) as ws:
            ws.receive_json()
            ws.send_text("hello")
            assert ws.receive_json()["event"] == "error"

"""
test_realtime_ws.py — End-to-end tests for the WS /ws channel.

Uses Starlette's TestClient (outside its context manager, so the app
lifespan never tries to reach MongoDB) with get_db / get_hub overridden.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from oceanwatch.core.security import create_access_token
from oceanwatch.models.user import UserProfile
from oceanwatch.routes.realtime import _drain_outbox


@pytest.fixture()
def ws_client(fake_db, hub):
    from oceanwatch.core.database import get_db
    from oceanwatch.main import app
    from oceanwatch.services.realtime import get_hub

    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_hub] = lambda: hub
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def analyst_token(fake_db):
    """Insert an analyst synchronously (the socket tests are plain functions)."""
    oid = ObjectId()
    now = datetime.now(tz=timezone.utc)
    fake_db["users"]._docs[oid] = {
        "_id": oid,
        "name": "Asha Analyst",
        "email": "asha@example.com",
        "hashed_password": "not-a-real-hash",
        "role": "analyst",
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    return create_access_token(str(oid), role="analyst")


BBOX = {"minLat": 12.5, "maxLat": 13.5, "minLon": 79.5, "maxLon": 80.5}


class TestAuthenticate:
    def test_valid_token(self, ws_client, analyst_token, hub):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {"token": analyst_token}})
            msg = ws.receive_json()

            assert msg["event"] == "authenticated"
            assert msg["data"]["user"]["email"] == "asha@example.com"
            assert msg["data"]["user"]["role"] == "analyst"
            assert hub.role_counts() == {"analyst": 1}

    def test_invalid_token(self, ws_client, hub):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {"token": "garbage"}})
            msg = ws.receive_json()

            assert msg == {"event": "auth_error", "data": {"error": "Invalid token"}}
            assert hub.role_counts() == {}

    def test_missing_token(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {}})
            assert ws.receive_json()["event"] == "auth_error"

    def test_unknown_user(self, ws_client):
        token = create_access_token(str(ObjectId()))
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {"token": token}})
            msg = ws.receive_json()

            assert msg == {"event": "auth_error", "data": {"error": "User not found"}}

    def test_connection_survives_failed_attempt(self, ws_client, analyst_token):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {"token": "garbage"}})
            assert ws.receive_json()["event"] == "auth_error"

            ws.send_json({"event": "authenticate", "data": {"token": analyst_token}})
            assert ws.receive_json()["event"] == "authenticated"


class TestLocationSubscription:
    def test_subscribe_before_authenticating(self, ws_client, hub):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "subscribe_location", "data": {"bbox": BBOX}})
            msg = ws.receive_json()

            assert msg == {"event": "location_subscribed", "data": {"bbox": BBOX}}
            assert hub.connected_count == 1

    def test_unsubscribe(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "subscribe_location", "data": {"bbox": BBOX}})
            ws.receive_json()
            ws.send_json({"event": "unsubscribe_location", "data": {"bbox": BBOX}})

            assert ws.receive_json() == {"event": "location_unsubscribed", "data": {"bbox": BBOX}}

    @pytest.mark.parametrize("bbox", [
        {**BBOX, "minLat": 14.0},
        {"minLat": 12.5, "maxLat": 13.5},
        {**BBOX, "maxLon": 500},
        None,
    ])
    def test_invalid_bbox(self, ws_client, hub, bbox):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "subscribe_location", "data": {"bbox": bbox}})
            msg = ws.receive_json()

            assert msg["event"] == "error"
            assert msg["data"]["event"] == "subscribe_location"
            assert msg["data"]["error"].startswith("Invalid bbox")


class TestMalformedFrames:
    def test_unknown_event(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "launch_rocket", "data": {}})
            msg = ws.receive_json()

            assert msg == {"event": "error", "data": {"event": "launch_rocket", "error": "Unknown event 'launch_rocket'"}}

    def test_not_json(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_text("hello")
            msg = ws.receive_json()

            assert msg["event"] == "error"
            assert msg["data"]["event"] is None

    def test_missing_event_name(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"data": {}})
            assert ws.receive_json()["event"] == "error"

    def test_data_must_be_object(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": ["token"]})
            msg = ws.receive_json()

            assert msg["event"] == "error"
            assert msg["data"]["error"] == "data must be an object"

    def test_errors_do_not_close_the_socket(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            ws.receive_json()
            ws.send_json({"event": "subscribe_location", "data": {"bbox": BBOX}})

            assert ws.receive_json()["event"] == "location_subscribed"


class TestWriterFailure:
    async def test_failed_send_disconnects_and_closes(self, hub):
        websocket = AsyncMock()
        websocket.send_json.side_effect = RuntimeError("socket is gone")
        session = hub.connect()
        hub.authenticate(
            session.connection_id,
            UserProfile(id="u1", name="Asha Analyst", email="asha@example.com", role="analyst"),
        )

        await _drain_outbox(hub, websocket, session)

        websocket.close.assert_awaited_once()
        assert hub.session(session.connection_id) is None
        assert hub.topic_members("role:analyst") == frozenset()
        assert hub.connected_count == 0

    async def test_close_error_is_contained(self, hub):
        websocket = AsyncMock()
        websocket.send_json.side_effect = RuntimeError("socket is gone")
        websocket.close.side_effect = RuntimeError("already closed")
        session = hub.connect()
        hub.send_error(session.connection_id, None, "queued so the writer has something to send")

        await _drain_outbox(hub, websocket, session)

        assert hub.session(session.connection_id) is None

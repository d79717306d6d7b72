"""
realtime.py — WebSocket transport for the realtime hub.

Route:
  WS /ws

Every frame, in both directions, is a JSON object:
  { "event": "<name>", "data": { ... } }

Client → server:
  authenticate          {"token": "<JWT from /auth/login>"}
  subscribe_location    {"bbox": {"minLat": 10, "maxLat": 20, "minLon": 70, "maxLon": 80}}
  unsubscribe_location  {"bbox": {...}}

Server → client: see oceanwatch.services.realtime.

A connection starts unauthenticated. It may subscribe to locations right
away (anonymous map viewers), but only `authenticate` gets it into the
"authenticated" and role rooms. Nothing survives a disconnect: a client
that reconnects authenticates and subscribes again.

Manual test (install wscat: npm i -g wscat):
  wscat -c ws://localhost:8000/ws
  > {"event": "authenticate", "data": {"token": "..."}}
"""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from oceanwatch.core.database import get_db
from oceanwatch.core.security import decode_access_token
from oceanwatch.models.report import BoundingBox
from oceanwatch.models.user import UserProfile
from oceanwatch.routes.auth import find_user
from oceanwatch.services.realtime import ConnectionSession, RealtimeHub, get_hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _drain_outbox(hub: RealtimeHub, websocket: WebSocket, session: ConnectionSession) -> None:
    """
    Single writer per connection: sends queued messages in order.

    A failed send ends the session: it leaves every room at once so
    broadcasts stop queueing for it, and the socket is closed so the
    reader loop unblocks.
    """
    while True:
        message = await session.outbox.get()
        try:
            await websocket.send_json(message)
        except Exception as exc:
            logger.info("Send to %s failed, closing connection: %s", session.connection_id, exc)
            hub.disconnect(session.connection_id)
            try:
                await websocket.close()
            except Exception as close_exc:
                logger.debug("Close after failed send on %s: %s", session.connection_id, close_exc)
            return


async def _authenticate(hub: RealtimeHub, db, connection_id: str, data: dict) -> None:
    token = data.get("token")
    user_id = decode_access_token(token) if isinstance(token, str) else None
    if not user_id:
        hub.reject_authentication(connection_id, "Invalid token")
        return

    if db is None:
        hub.reject_authentication(connection_id, "Authentication unavailable")
        return

    user = await find_user(db, user_id)
    if user is None:
        hub.reject_authentication(connection_id, "User not found")
        return

    hub.authenticate(connection_id, UserProfile(**user.model_dump(include={"id", "name", "email", "role"})))


def _location(hub: RealtimeHub, connection_id: str, event: str, data: dict) -> None:
    try:
        bbox = BoundingBox.model_validate(data.get("bbox"))
    except ValidationError as exc:
        errors = "; ".join(e["msg"] for e in exc.errors())
        hub.send_error(connection_id, event, f"Invalid bbox: {errors}")
        return

    if event == "subscribe_location":
        hub.subscribe_location(connection_id, bbox)
    else:
        hub.unsubscribe_location(connection_id, bbox)


async def _dispatch(hub: RealtimeHub, db, connection_id: str, raw: str) -> None:
    try:
        frame = json.loads(raw)
    except ValueError:
        hub.send_error(connection_id, None, "Frames must be JSON")
        return

    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        hub.send_error(connection_id, None, "Frames must look like {\"event\": ..., \"data\": {...}}")
        return

    event = frame["event"]
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        hub.send_error(connection_id, event, "data must be an object")
        return

    if event == "authenticate":
        await _authenticate(hub, db, connection_id, data)
    elif event in ("subscribe_location", "unsubscribe_location"):
        _location(hub, connection_id, event, data)
    else:
        hub.send_error(connection_id, event, f"Unknown event '{event}'")


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    db=Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    """Realtime channel: one session per socket, frames handled in receipt order."""
    await websocket.accept()
    session = hub.connect()
    writer = asyncio.create_task(_drain_outbox(hub, websocket, session))
    try:
        while True:
            raw = await websocket.receive_text()
            await _dispatch(hub, db, session.connection_id, raw)
    except WebSocketDisconnect:
        # Client closed the tab or navigated away
        pass
    except Exception as exc:
        logger.warning("Realtime socket error on %s: %s", session.connection_id, exc)
    finally:
        hub.disconnect(session.connection_id)
        writer.cancel()

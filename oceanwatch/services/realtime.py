"""
realtime.py — In-memory fan-out of report events to live connections.

The hub owns every piece of connection state. Nothing outside this module
touches the registry; routes go through the methods below.

TOPICS
──────
  "authenticated"        every connection that completed `authenticate`
  "role:<role>"          role room (citizen | analyst | admin)
  "location:<bbox key>"  area subscription; equal bounds → same topic

Membership is a bidirectional index: session.topics on one side,
_topics[topic] → connection ids on the other. Broadcast cost is the topic
size, leave cost is the connection's topic count.

DELIVERY
────────
Every hub method is synchronous and never awaits, so each connection event
or broadcast runs to completion before the next one. A delivery is a
put_nowait into the recipient's outbox; the WebSocket route runs one
writer task per connection that drains it. Consequences:
  • within a topic, messages arrive in the order the broadcasts were made
  • a full outbox loses that single message (warning logged); other
    recipients are unaffected
  • at most once, best effort, nothing kept for disconnected clients

MESSAGES (server → client)
──────────────────────────
  authenticated              {user}
  auth_error                 {error}
  location_subscribed        {bbox}
  location_unsubscribed      {bbox}
  new_report                 {report}
  verification_queue_update  {action, report}      analysts + admins
  report_verified            {report}
  dashboard_update           {stats}               analysts + admins
  error                      {event, error}
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from oceanwatch.core.config import settings
from oceanwatch.models.dashboard import DashboardStats
from oceanwatch.models.report import BoundingBox, Report
from oceanwatch.models.user import STAFF_ROLES, UserProfile

logger = logging.getLogger(__name__)

AUTHENTICATED_TOPIC = "authenticated"


def role_topic(role: str) -> str:
    return f"role:{role}"


def location_topic(bbox: BoundingBox) -> str:
    return f"location:{bbox.key}"


@dataclass
class ConnectionSession:
    """Per-connection state; lives from connect to disconnect."""

    connection_id: str
    outbox: asyncio.Queue
    user: Optional[UserProfile] = None
    topics: set[str] = field(default_factory=set)

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class RealtimeHub:
    """Connection registry, topic index and broadcaster."""

    def __init__(self, outbox_size: Optional[int] = None):
        self._outbox_size = outbox_size if outbox_size is not None else settings.realtime_outbox_size
        self._sessions: dict[str, ConnectionSession] = {}
        self._topics: dict[str, set[str]] = {}
        self._location_boxes: dict[str, BoundingBox] = {}

    # ── Connection lifecycle ─────────────────────────────────────────────────

    def connect(self, connection_id: Optional[str] = None) -> ConnectionSession:
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self._sessions:
            raise ValueError(f"Connection {connection_id} is already registered")
        session = ConnectionSession(
            connection_id=connection_id,
            outbox=asyncio.Queue(maxsize=self._outbox_size),
        )
        self._sessions[connection_id] = session
        logger.info("Realtime connection opened: %s", connection_id)
        return session

    def disconnect(self, connection_id: str) -> Optional[ConnectionSession]:
        """Discard the session and every membership. Unknown ids are ignored."""
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        for topic in list(session.topics):
            self._leave(session, topic)
        if session.user:
            logger.info("Realtime user disconnected: %s (%s)", session.user.email, connection_id)
        else:
            logger.info("Realtime connection closed: %s", connection_id)
        return session

    def session(self, connection_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(connection_id)

    # ── Authentication ───────────────────────────────────────────────────────

    def authenticate(self, connection_id: str, user: UserProfile) -> bool:
        """
        Attach *user* to the connection and join its rooms.

        Returns False if the connection has already gone away (the user
        lookup that precedes this call is the one await in the handshake).
        """
        session = self._sessions.get(connection_id)
        if session is None:
            return False

        if session.user is not None and session.user.role != user.role:
            self._leave(session, role_topic(session.user.role))

        session.user = user
        self._join(session, AUTHENTICATED_TOPIC)
        self._join(session, role_topic(user.role))
        self._send(session, "authenticated", {"user": user.model_dump(mode="json")})
        logger.info("Realtime user authenticated: %s (%s)", user.email, user.role)
        return True

    def change_role(self, user_id: str, role: str) -> int:
        """
        Move every live session of *user_id* to the room of *role*.

        Each moved session is sent a fresh `authenticated` event carrying
        the updated profile. Returns the number of sessions moved.
        """
        moved = 0
        for session in list(self._sessions.values()):
            if session.user is None or session.user.id != user_id or session.user.role == role:
                continue
            self._leave(session, role_topic(session.user.role))
            session.user = session.user.model_copy(update={"role": role})
            self._join(session, role_topic(role))
            self._send(session, "authenticated", {"user": session.user.model_dump(mode="json")})
            moved += 1
        if moved:
            logger.info("Realtime role change: user %s → %s on %d connection(s)", user_id, role, moved)
        return moved

    def reject_authentication(self, connection_id: str, error: str) -> None:
        """Report a failed handshake; the connection stays as it was."""
        session = self._sessions.get(connection_id)
        if session is not None:
            self._send(session, "auth_error", {"error": error})

    # ── Location subscriptions ───────────────────────────────────────────────

    def subscribe_location(self, connection_id: str, bbox: BoundingBox) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        topic = location_topic(bbox)
        self._location_boxes.setdefault(topic, bbox)
        self._join(session, topic)
        self._send(session, "location_subscribed", {"bbox": bbox.to_wire()})
        return True

    def unsubscribe_location(self, connection_id: str, bbox: BoundingBox) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        self._leave(session, location_topic(bbox))
        self._send(session, "location_unsubscribed", {"bbox": bbox.to_wire()})
        return True

    def send_error(self, connection_id: str, event: Optional[str], error: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            self._send(session, "error", {"event": event, "error": error})

    # ── Broadcasts ───────────────────────────────────────────────────────────

    def broadcast_new_report(self, report: Report) -> None:
        """
        new_report → every authenticated connection, plus subscribers of
        each location topic whose box contains the report (once per
        connection). verification_queue_update → analysts and admins.
        """
        payload = {"report": report.model_dump(mode="json")}

        delivered = self._emit(AUTHENTICATED_TOPIC, "new_report", payload)
        for topic, bbox in list(self._location_boxes.items()):
            if bbox.contains(report.longitude, report.latitude):
                delivered |= self._emit(topic, "new_report", payload, skip=delivered)

        queue_payload = {"action": "new_report", **payload}
        for role in STAFF_ROLES:
            self._emit(role_topic(role), "verification_queue_update", queue_payload)

        logger.info("Broadcast new report %s (%s) to %d connections", report.id, report.event_type, len(delivered))

    def broadcast_report_verification(self, report: Report) -> None:
        self._emit(AUTHENTICATED_TOPIC, "report_verified", {"report": report.model_dump(mode="json")})
        logger.info("Broadcast report verification: %s", report.id)

    def broadcast_dashboard_update(self, stats: DashboardStats) -> None:
        payload = {"stats": stats.model_dump(mode="json")}
        for role in STAFF_ROLES:
            self._emit(role_topic(role), "dashboard_update", payload)

    # ── Introspection ────────────────────────────────────────────────────────

    def topic_members(self, topic: str) -> frozenset[str]:
        return frozenset(self._topics.get(topic, ()))

    @property
    def connected_count(self) -> int:
        return len(self._sessions)

    def connected_users_by_role(self, role: str) -> list[UserProfile]:
        return [
            s.user for s in self._sessions.values()
            if s.user is not None and s.user.role == role
        ]

    def role_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for s in self._sessions.values():
            if s.user is not None:
                counts[s.user.role] = counts.get(s.user.role, 0) + 1
        return counts

    # ── Internals ────────────────────────────────────────────────────────────

    def _join(self, session: ConnectionSession, topic: str) -> None:
        session.topics.add(topic)
        self._topics.setdefault(topic, set()).add(session.connection_id)

    def _leave(self, session: ConnectionSession, topic: str) -> None:
        session.topics.discard(topic)
        members = self._topics.get(topic)
        if members is None:
            return
        members.discard(session.connection_id)
        if not members:
            del self._topics[topic]
            self._location_boxes.pop(topic, None)

    def _emit(
        self,
        topic: str,
        event: str,
        data: dict[str, Any],
        skip: Iterable[str] = (),
    ) -> set[str]:
        """Deliver to every member of *topic*; returns the ids reached."""
        skip = set(skip)
        delivered: set[str] = set()
        # Sorted so that delivery order inside one broadcast is reproducible
        for connection_id in sorted(self._topics.get(topic, ())):
            if connection_id in skip:
                continue
            session = self._sessions.get(connection_id)
            if session is not None and self._send(session, event, data):
                delivered.add(connection_id)
        return delivered

    def _send(self, session: ConnectionSession, event: str, data: dict[str, Any]) -> bool:
        try:
            session.outbox.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            logger.warning("Outbox full for %s — dropped %s", session.connection_id, event)
            return False
        return True


# Module-level singleton shared by the WebSocket and report routes
hub = RealtimeHub()


def get_hub() -> RealtimeHub:
    """FastAPI dependency; tests override it with a fresh hub."""
    return hub

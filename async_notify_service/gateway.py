"""Live push gateway: authenticated websocket sessions with per-user fan-out.

Wire protocol (every frame is JSON ``{"event": <name>, "data": <payload>}``):

    Client -> server:
    - join_room(room)
    - leave_room(room)
    - mark_notification_read(notificationId)

    Server -> client:
    - connected({userId, username, timestamp})
    - joined_room({room}) / left_room({room})
    - notification_marked_read({notificationId})
    - new_notification(payload) / new_announcement(payload)
    - system_maintenance({message, timestamp, disconnectAfter})
    - error({message})

Delivery is best effort: users without a live connection simply miss the
event, and a socket that fails mid-send is dropped from the registry.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect, status

from .auth import AuthenticationError, TokenVerifier, extract_bearer_token
from .logger import get_logger
from .models import Identity
from .prometheus import NotifyMetrics
from .registry import Channel, Connection, ConnectionRegistry, PushSocket

EVENT_CONNECTED = "connected"
EVENT_JOIN_ROOM = "join_room"
EVENT_LEAVE_ROOM = "leave_room"
EVENT_JOINED_ROOM = "joined_room"
EVENT_LEFT_ROOM = "left_room"
EVENT_MARK_READ = "mark_notification_read"
EVENT_MARKED_READ = "notification_marked_read"
EVENT_NEW_NOTIFICATION = "new_notification"
EVENT_NEW_ANNOUNCEMENT = "new_announcement"
EVENT_MAINTENANCE = "system_maintenance"
EVENT_ERROR = "error"

DEFAULT_MAINTENANCE_GRACE_SECONDS = 5.0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _room_name(data: Any) -> Optional[str]:
    """Accept ``"room"`` or ``{"room": "room"}`` as the join/leave argument."""
    if isinstance(data, dict):
        data = data.get("room") or data.get("roomName")
    if isinstance(data, str) and data.strip():
        return data.strip()
    return None


class PushGateway:
    """Accept push connections and expose send/broadcast primitives."""

    def __init__(
        self,
        verifier: TokenVerifier,
        *,
        registry: ConnectionRegistry | None = None,
        maintenance_grace_seconds: float = DEFAULT_MAINTENANCE_GRACE_SECONDS,
        metrics: NotifyMetrics | None = None,
        logger=None,
    ):
        self.verifier = verifier
        self.registry = registry or ConnectionRegistry()
        self.maintenance_grace_seconds = max(0.0, float(maintenance_grace_seconds))
        self.metrics = metrics or NotifyMetrics()
        self.logger = logger or get_logger()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------ handshake
    def authenticate(self, token: Optional[str] = None, authorization: Optional[str] = None) -> Identity:
        """Resolve the caller's identity or raise :class:`AuthenticationError`."""
        credential = extract_bearer_token(token, authorization)
        if not credential:
            raise AuthenticationError("Authentication error: No token provided", code="missing_token")
        return self.verifier.verify(credential)

    async def register(self, socket: PushSocket, identity: Identity) -> Connection:
        """Add an authenticated socket to the registry and acknowledge it."""
        conn = Connection(user_id=identity.user_id, username=identity.username, socket=socket)
        await self.registry.add(conn)
        self._refresh_gauges()
        self.logger.info(
            "User %s (%s) connected (connection=%s)", identity.username or "-", identity.user_id, conn.id
        )
        await self._send(
            conn,
            EVENT_CONNECTED,
            {"userId": identity.user_id, "username": identity.username, "timestamp": _utc_now_iso()},
        )
        return conn

    async def unregister(self, conn_id: str) -> None:
        """Drop a connection from every index; repeated calls are harmless."""
        conn = await self.registry.remove(conn_id)
        if conn is None:
            return
        self._refresh_gauges()
        self.logger.info("User %s (%s) disconnected (connection=%s)", conn.username or "-", conn.user_id, conn.id)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one websocket session from handshake to disconnect."""
        try:
            identity = self.authenticate(
                websocket.query_params.get("token"), websocket.headers.get("authorization")
            )
        except AuthenticationError as exc:
            self.logger.warning("Rejected push connection: %s", exc)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
            return

        await websocket.accept()
        conn = await self.register(websocket, identity)
        try:
            async for raw in websocket.iter_text():
                await self.handle_frame(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            self.logger.warning("Push connection %s ended with error: %s", conn.id, exc)
        finally:
            await self.unregister(conn.id)

    # -------------------------------------------------------------- inbound
    async def handle_frame(self, conn: Connection, raw: str) -> None:
        """Decode one inbound text frame and route it."""
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            self.logger.debug("Ignoring malformed frame from connection %s", conn.id)
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            self.logger.debug("Ignoring frame without event name from connection %s", conn.id)
            return
        await self.handle_event(conn, frame["event"], frame.get("data"))

    async def handle_event(self, conn: Connection, event: str, data: Any) -> None:
        if event == EVENT_JOIN_ROOM:
            room = _room_name(data)
            if room is None:
                await self._send(conn, EVENT_ERROR, {"message": "join_room requires a room name"})
                return
            await self.registry.join(conn.id, room)
            await self._send(conn, EVENT_JOINED_ROOM, {"room": room})
            return
        if event == EVENT_LEAVE_ROOM:
            room = _room_name(data)
            if room is None:
                await self._send(conn, EVENT_ERROR, {"message": "leave_room requires a room name"})
                return
            await self.registry.leave(conn.id, room)
            await self._send(conn, EVENT_LEFT_ROOM, {"room": room})
            return
        if event == EVENT_MARK_READ:
            notification_id = data.get("notificationId") if isinstance(data, dict) else data
            await self._send(conn, EVENT_MARKED_READ, {"notificationId": notification_id})
            return
        await self._send(conn, EVENT_ERROR, {"message": f"unknown event '{event}'"})

    # ------------------------------------------------------------- outbound
    async def _send(self, conn: Connection, event: str, data: Any) -> bool:
        try:
            await conn.send(event, data)
        except Exception as exc:
            self.logger.warning("Failed to push %s to connection %s: %s", event, conn.id, exc)
            await self.unregister(conn.id)
            return False
        return True

    async def _emit(self, connections: Iterable[Connection], event: str, data: Any) -> int:
        """Send to each connection in turn and return how many succeeded."""
        delivered = 0
        for conn in connections:
            if await self._send(conn, event, data):
                delivered += 1
        self.metrics.inc_push(event, delivered)
        return delivered

    async def send_to_user(self, user_id: str, payload: Any, event: str = EVENT_NEW_NOTIFICATION) -> int:
        """Push to every connection of ``user_id``; offline users are a no-op."""
        return await self._emit(self.registry.members(Channel.for_user(str(user_id))), event, payload)

    async def send_to_users(
        self, user_ids: Iterable[str], payload: Any, event: str = EVENT_NEW_NOTIFICATION
    ) -> int:
        total = 0
        for user_id in user_ids:
            total += await self.send_to_user(user_id, payload, event)
        return total

    async def broadcast(self, payload: Any, event: str = EVENT_NEW_ANNOUNCEMENT) -> int:
        """Push to every live connection regardless of room membership."""
        return await self._emit(self.registry.all_connections(), event, payload)

    async def send_to_room(self, room: str, event: str, payload: Any) -> int:
        return await self._emit(self.registry.members(Channel.room(room)), event, payload)

    async def _close(self, conn: Connection, reason: str) -> None:
        await self.unregister(conn.id)
        try:
            await conn.close(code=status.WS_1000_NORMAL_CLOSURE, reason=reason)
        except Exception as exc:
            self.logger.debug("Ignoring error while closing connection %s: %s", conn.id, exc)

    async def disconnect_user(self, user_id: str) -> int:
        """Terminate every connection currently registered for ``user_id``."""
        conns = self.registry.connections_for_user(str(user_id))
        for conn in conns:
            await self._close(conn, "Session terminated")
        if conns:
            self.logger.info("Force-disconnected %d connection(s) of user %s", len(conns), user_id)
        return len(conns)

    async def disconnect_all(self, reason: str = "Server maintenance") -> int:
        conns = self.registry.all_connections()
        for conn in conns:
            await self._close(conn, reason)
        return len(conns)

    async def send_maintenance_notification(
        self, message: str, disconnect_after: bool = False
    ) -> Optional[asyncio.Task]:
        """Broadcast ``system_maintenance``; optionally close everyone after the grace delay.

        Returns the scheduled disconnect task, if any.
        """
        await self._emit(
            self.registry.all_connections(),
            EVENT_MAINTENANCE,
            {"message": message, "timestamp": _utc_now_iso(), "disconnectAfter": bool(disconnect_after)},
        )
        if not disconnect_after:
            return None

        async def _disconnect_later() -> None:
            await asyncio.sleep(self.maintenance_grace_seconds)
            closed = await self.disconnect_all()
            self.logger.info("Maintenance: closed %d connection(s)", closed)

        task = asyncio.create_task(_disconnect_later(), name="maintenance-disconnect")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel pending maintenance tasks and close every connection."""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.disconnect_all("Server shutdown")

    # --------------------------------------------------------- observability
    def online_user_count(self) -> int:
        return self.registry.online_user_count()

    def is_user_online(self, user_id: str) -> bool:
        return self.registry.is_user_online(user_id)

    def get_online_user_ids(self) -> List[str]:
        return self.registry.online_user_ids()

    def stats(self) -> Dict[str, Any]:
        return {
            "online_users": self.registry.online_user_count(),
            "connections": self.registry.connection_count(),
            "rooms": self.registry.channel_names(),
        }

    def _refresh_gauges(self) -> None:
        self.metrics.set_connections(self.registry.online_user_count(), self.registry.connection_count())

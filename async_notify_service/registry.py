"""In-memory registry of live push connections.

The registry keeps three indexes in sync:

- connection id -> :class:`Connection`
- user id -> set of connection ids (entry removed once empty)
- :class:`Channel` -> set of connection ids (entry removed once empty)

Every mutation happens under one :class:`asyncio.Lock`, so concurrent
connect/disconnect callbacks for the same user cannot leave a dangling entry.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set


class PushSocket(Protocol):
    """The subset of the Starlette ``WebSocket`` API the gateway relies on."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        ...


@dataclass(frozen=True)
class Channel:
    """Addressable group of connections.

    User channels and named rooms live in separate namespaces, so a room
    called ``user_42`` never receives traffic meant for user ``42``.
    """

    kind: str
    name: str

    USER = "user"
    ROOM = "room"

    @classmethod
    def for_user(cls, user_id: str) -> "Channel":
        return cls(cls.USER, str(user_id))

    @classmethod
    def room(cls, name: str) -> "Channel":
        return cls(cls.ROOM, str(name))

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


@dataclass
class Connection:
    """One authenticated client session."""

    user_id: str
    socket: PushSocket
    username: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    rooms: Set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)

    async def send(self, event: str, data: Any) -> None:
        """Write one ``{"event", "data"}`` frame to the client."""
        await self.socket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        await self.socket.close(code=code, reason=reason)


class ConnectionRegistry:
    """Bidirectional index between users, channels and live connections."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: Dict[str, Connection] = {}
        self._user_connections: Dict[str, Set[str]] = defaultdict(set)
        self._channel_connections: Dict[Channel, Set[str]] = defaultdict(set)

    async def add(self, conn: Connection) -> None:
        """Register a connection and join its implicit per-user channel."""
        async with self._lock:
            self._connections[conn.id] = conn
            self._user_connections[conn.user_id].add(conn.id)
            self._channel_connections[Channel.for_user(conn.user_id)].add(conn.id)

    async def remove(self, conn_id: str) -> Optional[Connection]:
        """Forget a connection everywhere; unknown ids are a no-op."""
        async with self._lock:
            conn = self._connections.pop(conn_id, None)
            if conn is None:
                return None
            user_set = self._user_connections.get(conn.user_id)
            if user_set is not None:
                user_set.discard(conn_id)
                if not user_set:
                    del self._user_connections[conn.user_id]
            channels = [Channel.for_user(conn.user_id)] + [Channel.room(name) for name in conn.rooms]
            for channel in channels:
                self._discard_member(channel, conn_id)
            conn.rooms.clear()
            return conn

    def _discard_member(self, channel: Channel, conn_id: str) -> None:
        members = self._channel_connections.get(channel)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            del self._channel_connections[channel]

    async def join(self, conn_id: str, room: str) -> bool:
        """Add a connection to a named room; ``False`` if the connection is gone."""
        async with self._lock:
            conn = self._connections.get(conn_id)
            if conn is None:
                return False
            conn.rooms.add(room)
            self._channel_connections[Channel.room(room)].add(conn_id)
            return True

    async def leave(self, conn_id: str, room: str) -> bool:
        """Remove a connection from a named room; ``False`` if the connection is gone."""
        async with self._lock:
            conn = self._connections.get(conn_id)
            if conn is None:
                return False
            conn.rooms.discard(room)
            self._discard_member(Channel.room(room), conn_id)
            return True

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def members(self, channel: Channel) -> List[Connection]:
        """Snapshot of the connections currently in ``channel``."""
        ids = list(self._channel_connections.get(channel, ()))
        return [self._connections[cid] for cid in ids if cid in self._connections]

    def connections_for_user(self, user_id: str) -> List[Connection]:
        ids = list(self._user_connections.get(str(user_id), ()))
        return [self._connections[cid] for cid in ids if cid in self._connections]

    def all_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def online_user_count(self) -> int:
        return len(self._user_connections)

    def connection_count(self) -> int:
        return len(self._connections)

    def is_user_online(self, user_id: str) -> bool:
        return str(user_id) in self._user_connections

    def online_user_ids(self) -> List[str]:
        return list(self._user_connections.keys())

    def channel_names(self) -> List[str]:
        """Names of the rooms that currently have members."""
        return sorted(ch.name for ch in self._channel_connections if ch.kind == Channel.ROOM)

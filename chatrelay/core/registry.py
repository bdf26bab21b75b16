from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from websockets.protocol import State

log = logging.getLogger("chatrelay.core.registry")


@dataclass(slots=True, eq=False)
class Connection:
    """One live client session, owned by the registry.

    Identity is by object: two sessions for the same user and device are
    still distinct entries.
    """

    websocket: Any
    user_id: str
    device_id: str
    is_admin: bool = False
    conversation_id: Optional[str] = None
    token: str = ""
    user_on_webmaster: bool = True
    alive: bool = True
    conn_id: str = field(default_factory=lambda: secrets.token_hex(4))
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, text: str) -> None:
        async with self.send_lock:
            await self.websocket.send(text)

    async def ping(self) -> None:
        """Send a ping; the matching pong marks the connection alive again."""
        pong_waiter = await self.websocket.ping()
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, fut: "asyncio.Future[Any]") -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        self.alive = True
        log.debug("Pong received from user %s, device %s", self.user_id, self.device_id)

    def terminate(self) -> None:
        """Drop the transport without a closing handshake."""
        transport = getattr(self.websocket, "transport", None)
        if transport is not None:
            transport.abort()

    def describe(self) -> str:
        role = "admin" if self.is_admin else "user"
        return f"{role} {self.user_id} device {self.device_id} [{self.conn_id}]"


class ConnectionRegistry:
    """Indexes live connections by user id, device id and admin id.

    A connection is always present under its user id and its device id, and
    under its admin id exactly when it is an admin connection. Empty sets are
    never kept. All access goes through one asyncio lock; lookups hand back
    snapshots so callers can iterate while the registry changes.
    """

    def __init__(self) -> None:
        self._by_user: Dict[str, Set[Connection]] = {}
        self._by_device: Dict[str, Set[Connection]] = {}
        self._by_admin: Dict[str, Set[Connection]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def register(self, conn: Connection) -> None:
        if not conn.user_id:
            raise ValueError("connection has no user id")
        async with self._lock:
            self._by_user.setdefault(conn.user_id, set()).add(conn)
            self._by_device.setdefault(conn.device_id, set()).add(conn)
            if conn.is_admin:
                self._by_admin.setdefault(conn.user_id, set()).add(conn)
        log.info("Registered %s", conn.describe())

    async def remove(self, conn: Connection) -> bool:
        """Drop ``conn`` from every index. Safe to call more than once."""
        async with self._lock:
            removed = _discard(self._by_user, conn.user_id, conn)
            removed = _discard(self._by_device, conn.device_id, conn) or removed
            if conn.is_admin:
                removed = _discard(self._by_admin, conn.user_id, conn) or removed
        if removed:
            log.info("Removed %s", conn.describe())
        return removed

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def connections_for_user(self, user_id: str) -> frozenset[Connection]:
        async with self._lock:
            return frozenset(self._by_user.get(user_id, ()))

    async def all_admins(self) -> List[Tuple[str, frozenset[Connection]]]:
        async with self._lock:
            return [(uid, frozenset(conns)) for uid, conns in self._by_admin.items()]

    async def all_users(self) -> List[Tuple[str, frozenset[Connection]]]:
        async with self._lock:
            return [(uid, frozenset(conns)) for uid, conns in self._by_user.items()]

    async def all_connections(self) -> List[Connection]:
        async with self._lock:
            return [conn for conns in self._by_user.values() for conn in conns]

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            return {
                "users": len(self._by_user),
                "devices": len(self._by_device),
                "admins": len(self._by_admin),
                "connections": sum(len(c) for c in self._by_user.values()),
            }


def _discard(index: Dict[str, Set[Connection]], key: str, conn: Connection) -> bool:
    conns = index.get(key)
    if not conns or conn not in conns:
        return False
    conns.discard(conn)
    if not conns:
        del index[key]
    return True


__all__ = ["Connection", "ConnectionRegistry"]

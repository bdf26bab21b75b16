from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List

import websockets

from . import proto
from .registry import Connection, ConnectionRegistry

log = logging.getLogger("chatrelay.core.fanout")

SEND_TIMEOUT_SECS = 5.0


class Dispatcher:
    """Best-effort delivery of one payload to every open socket of a target set.

    Nothing is queued: a recipient with no open connection at call time never
    sees the payload. Sockets are written concurrently; one that cannot take
    the frame within ``send_timeout`` is aborted and dropped from the registry.
    Each method returns how many sockets were written.
    """

    def __init__(self, registry: ConnectionRegistry, send_timeout: float = SEND_TIMEOUT_SECS) -> None:
        self.registry = registry
        self.send_timeout = send_timeout

    async def send_to_user(self, user_id: str, payload: Dict[str, Any], exclude: Iterable[str] = ()) -> int:
        if user_id in set(exclude):
            return 0
        conns = await self.registry.connections_for_user(user_id)
        return await self._deliver(conns, proto.encode(payload))

    async def broadcast_to_admins(self, payload: Dict[str, Any], exclude: Iterable[str] = ()) -> int:
        return await self._broadcast(await self.registry.all_admins(), payload, exclude)

    async def broadcast_to_users(self, payload: Dict[str, Any], exclude: Iterable[str] = ()) -> int:
        return await self._broadcast(await self.registry.all_users(), payload, exclude)

    async def _broadcast(self, targets, payload: Dict[str, Any], exclude: Iterable[str]) -> int:
        skip = set(exclude)
        conns: List[Connection] = []
        for user_id, user_conns in targets:
            if user_id not in skip:
                conns.extend(user_conns)
        return await self._deliver(conns, proto.encode(payload))

    async def _deliver(self, conns: Iterable[Connection], text: str) -> int:
        results = await asyncio.gather(*(self._send_one(conn, text) for conn in conns if conn.is_open))
        return sum(results)

    async def _send_one(self, conn: Connection, text: str) -> bool:
        try:
            await asyncio.wait_for(conn.send(text), self.send_timeout)
        except websockets.ConnectionClosed:
            log.debug("Dropped frame for %s: closed during send", conn.describe())
            return False
        except asyncio.TimeoutError:
            log.warning("Send to %s stalled for %.1fs; dropping connection", conn.describe(), self.send_timeout)
            conn.terminate()
            await self.registry.remove(conn)
            return False
        return True


__all__ = ["Dispatcher", "SEND_TIMEOUT_SECS"]

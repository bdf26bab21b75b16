from __future__ import annotations

import asyncio
import logging

import websockets

from .registry import Connection, ConnectionRegistry

log = logging.getLogger("chatrelay.core.liveness")

HEARTBEAT_SECS = 15.0
PING_TIMEOUT_SECS = 5.0


class LivenessMonitor:
    """Periodic ping/pong sweep over every registered connection.

    Each connection is either ALIVE or PENDING. A tick moves ALIVE to PENDING
    and pings; the pong moves it back. A connection still PENDING at the next
    tick is aborted and removed. One missed interval is fatal, and so is a
    ping that cannot even be written within ``ping_timeout``.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        interval: float = HEARTBEAT_SECS,
        ping_timeout: float = PING_TIMEOUT_SECS,
    ) -> None:
        self.registry = registry
        self.interval = interval
        # must stay below the interval so a sweep finishes before the next one
        self.ping_timeout = min(ping_timeout, interval / 2)

    async def tick(self) -> int:
        """Run one sweep; returns the number of connections evicted."""
        conns = await self.registry.all_connections()
        results = await asyncio.gather(*(self._sweep_one(conn) for conn in conns))
        evicted = sum(results)
        log.debug("Heartbeat sweep evicted %d; registry %s", evicted, await self.registry.stats())
        return evicted

    async def _sweep_one(self, conn: Connection) -> bool:
        if not conn.alive:
            log.info("Terminating dead socket for %s", conn.describe())
            await self._evict(conn)
            return True
        conn.alive = False
        try:
            await asyncio.wait_for(conn.ping(), self.ping_timeout)
        except websockets.ConnectionClosed:
            log.debug("Ping to %s failed: already closed", conn.describe())
        except asyncio.TimeoutError:
            log.info("Ping to %s stalled for %.1fs; terminating", conn.describe(), self.ping_timeout)
            await self._evict(conn)
            return True
        return False

    async def _evict(self, conn: Connection) -> None:
        conn.terminate()
        await self.registry.remove(conn)

    async def run(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, self.interval))
            try:
                await self.tick()
            except Exception:
                log.exception("heartbeat tick failed")


__all__ = ["LivenessMonitor", "HEARTBEAT_SECS", "PING_TIMEOUT_SECS"]

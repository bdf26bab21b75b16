from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Union

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from chatrelay.core import proto
from chatrelay.core.backend import DEFAULT_BACKEND_URL, BackendClient
from chatrelay.core.fanout import SEND_TIMEOUT_SECS, Dispatcher
from chatrelay.core.liveness import HEARTBEAT_SECS, PING_TIMEOUT_SECS, LivenessMonitor
from chatrelay.core.membership import MembershipCache
from chatrelay.core.registry import Connection, ConnectionRegistry
from chatrelay.core.router import EventRouter

log = logging.getLogger("chatrelay.server.runtime")

POLICY_VIOLATION = 1008


class RelayRuntime:
    """Single-process relay: accepts sockets, runs one receive loop per
    connection and the heartbeat sweep, and owns the shared state."""

    def __init__(self, config: Dict[str, Any], *, backend: Optional[BackendClient] = None) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:8080"))
        self.backend_url = config.get("backend_url", DEFAULT_BACKEND_URL)
        self.heartbeat_secs = float(config.get("heartbeat_secs", HEARTBEAT_SECS))
        self.backend_timeout = float(config.get("backend_timeout_secs", 10))
        self.send_timeout = float(config.get("send_timeout_secs", SEND_TIMEOUT_SECS))
        self.ping_timeout = float(config.get("ping_timeout_secs", PING_TIMEOUT_SECS))

        self.backend = backend or BackendClient(self.backend_url, timeout=self.backend_timeout)
        self.registry = ConnectionRegistry()
        self.membership = MembershipCache(self.backend)
        self.dispatcher = Dispatcher(self.registry, send_timeout=self.send_timeout)
        self.router = EventRouter(self.backend, self.membership, self.dispatcher)
        self.liveness = LivenessMonitor(self.registry, interval=self.heartbeat_secs, ping_timeout=self.ping_timeout)

        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        # keepalive is ours (LivenessMonitor), not the library's
        self._ws_server = await serve(self._handle_connection, self.listen_host, self.listen_port, ping_interval=None)
        log.info("Relay listening on ws://%s:%d (backend %s)", self.listen_host, self.listen_port, self.backend_url)

        self._tasks.append(asyncio.create_task(self.liveness.run(), name="heartbeat"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.backend.aclose()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        try:
            hello = proto.Handshake.from_path(websocket.request.path)
        except proto.HandshakeError as exc:
            log.warning("Rejecting connection from %s: %s", self._fmt_remote(websocket), exc)
            await websocket.close(code=POLICY_VIOLATION, reason="userId is required")
            return

        conn = await self.attach(websocket, hello)
        try:
            async for raw in websocket:
                await self.handle_frame(conn, raw)
        except websockets.ConnectionClosed as exc:
            log.info("Connection for %s closed abruptly: %s", conn.describe(), exc)
        finally:
            await self.detach(conn)

    async def attach(self, websocket: Any, hello: proto.Handshake) -> Connection:
        conn = Connection(
            websocket=websocket,
            user_id=hello.user_id,
            device_id=hello.device_id,
            is_admin=hello.is_admin,
            conversation_id=hello.conversation_id,
            token=hello.token,
            user_on_webmaster=hello.user_on_webmaster,
        )
        await self.registry.register(conn)
        try:
            await self.router.on_connect(conn)
        except Exception:
            log.exception("Connect hooks failed for %s", conn.describe())
        return conn

    async def handle_frame(self, conn: Connection, raw: Union[str, bytes]) -> None:
        try:
            await self.router.handle_raw(conn, raw)
        except Exception:
            log.exception("Error processing message from %s", conn.describe())

    async def detach(self, conn: Connection) -> None:
        await self.registry.remove(conn)
        await self.router.on_disconnect(conn)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayRuntime"]

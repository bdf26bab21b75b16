import asyncio
import json
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest
import websockets
from websockets.protocol import State

from chatrelay.core.backend import BackendClient
from chatrelay.core.registry import Connection


class FakeTransport:
    def __init__(self, ws: "FakeWebSocket") -> None:
        self.ws = ws
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        self.ws.state = State.CLOSED


class FakeWebSocket:
    """Stand-in for a server-side websockets connection."""

    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: List[str] = []
        self.pings: List[asyncio.Future] = []
        self.transport = FakeTransport(self)

    async def send(self, text: str) -> None:
        if self.state is not State.OPEN:
            raise websockets.ConnectionClosed(None, None)
        self.sent.append(text)

    async def ping(self) -> asyncio.Future:
        if self.state is not State.OPEN:
            raise websockets.ConnectionClosed(None, None)
        fut = asyncio.get_running_loop().create_future()
        self.pings.append(fut)
        return fut

    def pong(self) -> None:
        for fut in self.pings:
            if not fut.done():
                fut.set_result(0.0)

    @property
    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(text) for text in self.sent]


class FakeBackend:
    """Routes httpx requests to canned responses and records them."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def on(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method, path)] = handler

    def reply(self, method: str, path: str, status: int = 200, **kwargs: Any) -> None:
        self.on(method, path, lambda _req: httpx.Response(status, **kwargs))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(200, json={"status": True, "data": {}})
        return route(request)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def conversation(self, conversation_id: str, user_id: Any, admin_id: Any) -> None:
        self.reply(
            "GET",
            f"/api/messages/conversation/{conversation_id}",
            json={"status": True, "data": {"conversation_user_id": user_id, "conversation_admin_id": admin_id}},
        )


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def backend(fake_backend):
    return BackendClient("http://backend.test/api", transport=httpx.MockTransport(fake_backend.handler))


@pytest.fixture
def make_conn():
    def _make(user_id: str, device_id: str = "", *, is_admin: bool = False, **kwargs: Any) -> Connection:
        return Connection(
            websocket=FakeWebSocket(),
            user_id=user_id,
            device_id=device_id or f"{user_id}-dev",
            is_admin=is_admin,
            token=kwargs.pop("token", f"tok-{user_id}"),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_ws():
    return FakeWebSocket

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

log = logging.getLogger("chatrelay.core.backend")

DEFAULT_BACKEND_URL = "https://watchtower.thewatchtower.ae/api"


class BackendError(Exception):
    """A backend request failed or returned something other than a success envelope."""

    def __init__(self, method: str, path: str, reason: str, *, status_code: Optional[int] = None) -> None:
        self.method = method
        self.path = path
        self.reason = reason
        self.status_code = status_code
        where = f"{method} {path}"
        if status_code is not None:
            where += f" [{status_code}]"
        super().__init__(f"{where}: {reason}")


class BackendClient:
    """Thin client for the backend of record.

    Every call is made on behalf of one connection and carries that
    connection's bearer token. Responses must be JSON objects of the shape
    ``{"status": ..., "data": ...}``; anything else raises ``BackendError``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_URL,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("GET", path, token, params=params)

    async def post(self, path: str, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", path, token, json=payload)

    async def _request(self, method: str, path: str, token: Optional[str], **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token or ''}"}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendError(method, path, "timed out") from exc
        except httpx.HTTPError as exc:
            raise BackendError(method, path, f"request failed: {exc}") from exc

        content_type = resp.headers.get("content-type", "")
        if "application/json" not in content_type:
            log.warning("Non-JSON response from %s %s: %.200s", method, path, resp.text)
            raise BackendError(method, path, "non-JSON response", status_code=resp.status_code)
        if not resp.is_success:
            raise BackendError(method, path, "unsuccessful status", status_code=resp.status_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise BackendError(method, path, "malformed JSON body", status_code=resp.status_code) from exc
        if not isinstance(body, dict):
            raise BackendError(method, path, "response is not an object", status_code=resp.status_code)
        if not body.get("status"):
            raise BackendError(method, path, "backend reported failure", status_code=resp.status_code)
        return body

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def conversation(self, conversation_id: str, token: Optional[str]) -> Dict[str, Any]:
        return await self.get(f"/messages/conversation/{quote(conversation_id, safe='')}", token)

    async def set_online(self, user_id: str, token: Optional[str], online: bool) -> Dict[str, Any]:
        return await self.get(f"/admin/user/status/{quote(user_id, safe='')}", token, params={"is_online": "true" if online else "false"})

    async def send_message(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/send", token, payload)

    async def mark_delivered(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/delivered", token, payload)

    async def mark_read(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/read", token, payload)

    async def update_message(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/update", token, payload)

    async def delete_message(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/delete", token, payload)

    async def mark_all_delivered(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/delivered-all", token, payload)

    async def mark_all_read(self, token: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("/messages/read-all", token, payload)


__all__ = ["BackendClient", "BackendError", "DEFAULT_BACKEND_URL"]

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .backend import BackendClient, BackendError

log = logging.getLogger("chatrelay.core.membership")


@dataclass(frozen=True, slots=True)
class Members:
    user_id: str
    admin_id: str


class MembershipCache:
    """Lazily memoizes conversation id -> (end-user id, admin id).

    Entries are never evicted; only successful lookups are stored, so a failed
    resolution is retried against the backend on the next call.
    """

    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend
        self._members: Dict[str, Members] = {}

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    async def resolve(self, conversation_id: str, token: Optional[str]) -> Optional[Members]:
        cached = self._members.get(conversation_id)
        if cached is not None:
            return cached

        try:
            body = await self.backend.conversation(conversation_id, token)
        except BackendError as exc:
            log.error("Could not resolve conversation %s: %s", conversation_id, exc)
            return None

        data = body.get("data")
        if not isinstance(data, dict):
            log.error("Conversation %s lookup returned no data", conversation_id)
            return None
        user_id = data.get("conversation_user_id")
        admin_id = data.get("conversation_admin_id")
        if user_id is None or admin_id is None:
            log.error("Conversation %s lookup missing members: %r", conversation_id, data)
            return None

        members = Members(user_id=str(user_id), admin_id=str(admin_id))
        self._members[conversation_id] = members
        log.debug("Cached conversation %s -> user=%s admin=%s", conversation_id, members.user_id, members.admin_id)
        return members

    def invalidate(self, conversation_id: str) -> None:
        self._members.pop(conversation_id, None)


__all__ = ["Members", "MembershipCache"]

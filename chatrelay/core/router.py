from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from . import proto
from .backend import BackendClient, BackendError
from .fanout import Dispatcher
from .membership import Members, MembershipCache
from .registry import Connection

log = logging.getLogger("chatrelay.core.router")

BackendCall = Callable[[], Awaitable[Dict[str, Any]]]


class EventRouter:
    """Turns inbound client events into backend writes and peer notifications.

    Mutations are written to the backend first; if that write fails nobody is
    told about it. Typing/focus activity never touches the backend.
    """

    def __init__(self, backend: BackendClient, membership: MembershipCache, dispatcher: Dispatcher) -> None:
        self.backend = backend
        self.membership = membership
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Frame ingress
    # ------------------------------------------------------------------

    async def handle_raw(self, conn: Connection, raw: Union[str, bytes]) -> None:
        try:
            frame = proto.parse_frame(raw)
        except proto.UnknownEventKind as exc:
            log.info("Unknown message type from %s: %r", conn.describe(), exc.kind)
            return
        except proto.FrameError as exc:
            log.warning("Discarding frame from %s: %s", conn.describe(), exc)
            return
        await self.dispatch(conn, frame)

    async def dispatch(self, conn: Connection, frame: proto.InboundFrame) -> None:
        if isinstance(frame, proto.SendMessage):
            await self._on_send(conn, frame)
        elif isinstance(frame, proto.DeliveredMessage):
            await self._on_delivered(conn, frame)
        elif isinstance(frame, proto.ReadMessage):
            await self._on_read(conn, frame)
        elif isinstance(frame, proto.Activity):
            await self._on_activity(conn, frame)
        elif isinstance(frame, proto.EditMessage):
            await self._on_edit(conn, frame)
        elif isinstance(frame, proto.DeleteMessage):
            await self._on_delete(conn, frame)
        elif isinstance(frame, proto.AdminOpenChat):
            await self._on_admin_open_chat(conn, frame)
        else:
            raise TypeError(f"unhandled frame {type(frame).__name__}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_send(self, conn: Connection, frame: proto.SendMessage) -> None:
        # client extras ride along; our type and sender stamp win
        payload = {
            **frame.model_dump(exclude={"type"}),
            **proto.build_frame("message_sent", sender_id=conn.user_id, device_id=conn.device_id),
        }
        record = {
            "message_id": frame.message_id,
            "conversation_id": frame.conversation_id,
            "message": frame.message,
            "sender_id": conn.user_id,
            "time": frame.time,
            "parent_id": frame.reply,
            "sentFiles": frame.files,
        }
        if not await self._write(conn, "send", lambda: self.backend.send_message(conn.token, record)):
            return

        members = await self._members(conn, frame.conversation_id)
        if members is None:
            return
        await self._notify_pair(members, payload)
        if conn.is_admin:
            # mirror to every other admin console
            await self.dispatcher.broadcast_to_admins(payload, exclude={conn.user_id, members.admin_id})

    async def _on_delivered(self, conn: Connection, frame: proto.DeliveredMessage) -> None:
        payload = proto.build_frame(
            "message_delivered",
            sender_id=conn.user_id,
            device_id=conn.device_id,
            message_id=frame.message_id,
            conversation_id=frame.conversation_id,
        )
        record = {
            "message_id": frame.message_id,
            "conversation_id": frame.conversation_id,
            "sender_id": conn.user_id,
        }
        if await self._write(conn, "delivered", lambda: self.backend.mark_delivered(conn.token, record)):
            await self._notify_conversation(conn, frame.conversation_id, payload)

    async def _on_read(self, conn: Connection, frame: proto.ReadMessage) -> None:
        payload = proto.build_frame(
            "message_read",
            sender_id=conn.user_id,
            device_id=conn.device_id,
            conversation_id=frame.conversation_id,
            message_id=frame.message_id,
        )
        record = {
            "conversation_id": frame.conversation_id,
            "sender_id": conn.user_id,
            "message_id": frame.message_id,
        }
        if await self._write(conn, "read", lambda: self.backend.mark_read(conn.token, record)):
            await self._notify_conversation(conn, frame.conversation_id, payload)

    async def _on_activity(self, conn: Connection, frame: proto.Activity) -> None:
        payload = proto.build_frame(
            frame.type,
            sender_id=conn.user_id,
            device_id=conn.device_id,
            conversation_id=frame.conversation_id,
        )
        await self._notify_conversation(conn, frame.conversation_id, payload)

    async def _on_edit(self, conn: Connection, frame: proto.EditMessage) -> None:
        payload = proto.build_frame(
            "message_edited",
            sender_id=conn.user_id,
            device_id=conn.device_id,
            message=frame.message,
            message_id=frame.message_id,
            conversation_id=frame.conversation_id,
        )
        record = {"message": frame.message, "message_id": frame.message_id}
        if await self._write(conn, "update", lambda: self.backend.update_message(conn.token, record)):
            await self._notify_conversation(conn, frame.conversation_id, payload)

    async def _on_delete(self, conn: Connection, frame: proto.DeleteMessage) -> None:
        payload = proto.build_frame(
            "message_deleted",
            sender_id=conn.user_id,
            device_id=conn.device_id,
            message_id=frame.message_id,
            conversation_id=frame.conversation_id,
        )
        record = {"message_id": frame.message_id}
        if await self._write(conn, "delete", lambda: self.backend.delete_message(conn.token, record)):
            await self._notify_conversation(conn, frame.conversation_id, payload)

    async def _on_admin_open_chat(self, conn: Connection, frame: proto.AdminOpenChat) -> None:
        payload = proto.build_frame(
            "admin_open_chat",
            sender_id=conn.user_id,
            device_id=conn.device_id,
            conversation_id=frame.conversation_id,
        )
        record = {"sender_id": conn.user_id, "conversation_id": frame.conversation_id}
        if not await self._write(conn, "read-all", lambda: self.backend.mark_all_read(conn.token, record)):
            return
        members = await self._members(conn, frame.conversation_id)
        if members is not None:
            await self.dispatcher.send_to_user(members.user_id, payload)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def on_connect(self, conn: Connection) -> None:
        await self._set_online(conn, True)

        if conn.is_admin or conn.user_on_webmaster:
            call, label = self.backend.mark_all_delivered, "delivered-all"
        else:
            call, label = self.backend.mark_all_read, "read-all"
        try:
            await call(conn.token, {"sender_id": conn.user_id})
        except BackendError as exc:
            log.error("Connect %s for %s failed: %s", label, conn.describe(), exc)

        if conn.is_admin:
            await self.dispatcher.broadcast_to_users(proto.admin_login(), exclude={conn.user_id})
        else:
            await self.dispatcher.broadcast_to_admins(
                proto.user_login(conn.user_id, conn.conversation_id, conn.user_on_webmaster)
            )

    async def on_disconnect(self, conn: Connection) -> None:
        await self._set_online(conn, False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _set_online(self, conn: Connection, online: bool) -> None:
        try:
            await self.backend.set_online(conn.user_id, conn.token, online)
        except BackendError as exc:
            log.warning("Presence update (online=%s) for %s failed: %s", online, conn.describe(), exc)

    async def _write(self, conn: Connection, action: str, call: BackendCall) -> bool:
        try:
            await call()
        except BackendError as exc:
            log.error("Backend %s for %s failed, not notifying peers: %s", action, conn.describe(), exc)
            return False
        return True

    async def _members(self, conn: Connection, conversation_id: str) -> Optional[Members]:
        members = await self.membership.resolve(conversation_id, conn.token)
        if members is None:
            log.warning("No recipients for conversation %s (from %s)", conversation_id, conn.describe())
        return members

    async def _notify_conversation(self, conn: Connection, conversation_id: str, payload: Dict[str, Any]) -> None:
        members = await self._members(conn, conversation_id)
        if members is not None:
            await self._notify_pair(members, payload)

    async def _notify_pair(self, members: Members, payload: Dict[str, Any]) -> None:
        await self.dispatcher.send_to_user(members.user_id, payload)
        if members.admin_id != members.user_id:
            await self.dispatcher.send_to_user(members.admin_id, payload)


__all__ = ["EventRouter"]

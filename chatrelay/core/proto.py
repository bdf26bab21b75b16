from __future__ import annotations

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union
from urllib.parse import parse_qs, urlsplit

import orjson
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def _coerce_id(value: Any) -> Any:
    # clients send numeric ids for some backends; keep everything as str
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


Id = Annotated[str, BeforeValidator(_coerce_id), Field(min_length=1)]


# ---------------------------------------------------------------------------
# Handshake (query string on the upgrade request)
# ---------------------------------------------------------------------------

class HandshakeError(ValueError):
    """The upgrade request does not identify a user."""


class Handshake(BaseModel):
    """Identity a client presents when opening the socket."""

    device_id: str = Field(default="", alias="deviceId")
    user_id: Id = Field(alias="userId")
    is_admin: bool = Field(default=False, alias="isAdmin")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    token: str = ""
    user_on_webmaster: bool = Field(default=True, alias="userOnWebmaster")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_path(cls, path: str) -> "Handshake":
        """Parse ``/?userId=..&deviceId=..`` into a Handshake.

        ``isAdmin`` is true only for the literal ``"true"``; ``userOnWebmaster``
        is false only for ``"0"``. A missing ``deviceId`` is kept as ``""``.
        Raises ``HandshakeError`` when ``userId`` is missing.
        """
        query = {k: v[-1] for k, v in parse_qs(urlsplit(path).query).items()}
        data: Dict[str, Any] = {
            "deviceId": query.get("deviceId", ""),
            "userId": query.get("userId"),
            "isAdmin": query.get("isAdmin") == "true",
            "conversationId": query.get("conversationId") or None,
            "token": query.get("token", ""),
            "userOnWebmaster": query.get("userOnWebmaster", "1") != "0",
        }
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise HandshakeError(f"invalid handshake: {_first_error(exc)}") from exc


# ---------------------------------------------------------------------------
# Inbound frames
# ---------------------------------------------------------------------------

class FrameError(ValueError):
    """Inbound frame could not be turned into an event."""


class UnknownEventKind(FrameError):
    def __init__(self, kind: Any) -> None:
        super().__init__(f"unknown event kind {kind!r}")
        self.kind = kind


class _Frame(BaseModel):
    conversation_id: Id

    model_config = ConfigDict(frozen=True)


class SendMessage(_Frame):
    type: Literal["send_message"]
    message_id: Id
    message: Any = None
    time: Any = None
    reply: Any = None
    files: Any = None

    # anything else the client attaches is mirrored to the peers
    model_config = ConfigDict(frozen=True, extra="allow")


class DeliveredMessage(_Frame):
    type: Literal["delivered_message"]
    message_id: Id


class ReadMessage(_Frame):
    type: Literal["read_message"]
    message_id: Id


class Activity(_Frame):
    type: Literal["focus", "active-typing", "idle-typing", "blur"]


class EditMessage(_Frame):
    type: Literal["edit_message"]
    message_id: Id
    message: Any = None


class DeleteMessage(_Frame):
    type: Literal["delete_message"]
    message_id: Id


class AdminOpenChat(_Frame):
    type: Literal["admin_open_chat"]


InboundFrame = Annotated[
    Union[SendMessage, DeliveredMessage, ReadMessage, Activity, EditMessage, DeleteMessage, AdminOpenChat],
    Field(discriminator="type"),
]

_INBOUND = TypeAdapter(InboundFrame)

ACTIVITY_KINDS = frozenset({"focus", "active-typing", "idle-typing", "blur"})

EVENT_KINDS = frozenset(
    {
        "send_message",
        "delivered_message",
        "read_message",
        "edit_message",
        "delete_message",
        "admin_open_chat",
    }
    | ACTIVITY_KINDS
)


def parse_frame(raw: Union[str, bytes]) -> InboundFrame:
    """Decode one text frame into its typed event.

    Raises ``UnknownEventKind`` for a well-formed object with an unsupported
    ``type`` and ``FrameError`` for everything else that is not a valid event.
    """
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FrameError("frame is not valid JSON") from exc
    if not isinstance(obj, dict):
        raise FrameError("frame must be a JSON object")
    kind = obj.get("type")
    if kind not in EVENT_KINDS:
        raise UnknownEventKind(kind)
    try:
        return _INBOUND.validate_python(obj)
    except ValidationError as exc:
        raise FrameError(f"invalid {kind}: {_first_error(exc)}") from exc


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ())) or "frame"
    return f"{loc}: {err.get('msg', 'invalid')}"


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def build_frame(type: str, *, sender_id: Optional[str], device_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    """Create an outbound event dict stamped with the sender's identity."""

    frame: Dict[str, Any] = {"type": type}
    frame.update(fields)
    if sender_id is not None:
        frame["sender_id"] = sender_id
    if device_id is not None:
        frame["deviceId"] = device_id
    return frame


def admin_login() -> Dict[str, Any]:
    return {"type": "admin_login"}


def user_login(user_id: str, conversation_id: Optional[str], user_on_webmaster: bool) -> Dict[str, Any]:
    return {
        "type": "user_login",
        "conversation_id": conversation_id,
        "user_on_webmaster": user_on_webmaster,
        "user_id": user_id,
    }


def encode(frame: Dict[str, Any]) -> str:
    """Wire encoding for outbound frames (text frames, compact JSON)."""

    return orjson.dumps(frame).decode("utf-8")


__all__ = [
    "Handshake",
    "HandshakeError",
    "FrameError",
    "UnknownEventKind",
    "SendMessage",
    "DeliveredMessage",
    "ReadMessage",
    "Activity",
    "EditMessage",
    "DeleteMessage",
    "AdminOpenChat",
    "InboundFrame",
    "ACTIVITY_KINDS",
    "EVENT_KINDS",
    "parse_frame",
    "build_frame",
    "admin_login",
    "user_login",
    "encode",
]

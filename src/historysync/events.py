"""
Protocol events consumed by the session controller.

The protocol client delivers heterogeneous events.  They are normalised
into a small tagged union (:data:`ProtocolEvent`) so the controller can
dispatch with a single ``match``:

    - :class:`HistorySync`  : bulk delivery of prior conversations
    - :class:`Connected`    : transport is up
    - :class:`PairSuccess`  : device pairing completed
    - :class:`Message`      : a live message (ignored by this service)
    - :class:`Other`        : anything else, kept for logging

Clients may emit these dataclasses directly or plain dict payloads with a
``type`` key.  History-sync dicts follow the protobuf JSON field names::

    {"type": "history_sync",
     "conversations": [
        {"id": "5511...@s.whatsapp.net", "name": "Alice",
         "messages": [
            {"msgOrderID": 1,
             "message": {"key": {"fromMe": true},
                         "message": {"conversation": "hi"}}}]}]}

Message bodies are read from ``conversation`` (plain text) or
``extendedTextMessage.text``.  Any other content shape decodes to a
:class:`SyncMessage` with ``text=None`` and a ``decode_error`` so the
folder can skip and count it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union


class DecodeError(ValueError):
    """Raised when a message entry has no supported text body."""


# ---------------------------------------------------------------------------
# History-sync payload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncMessage:
    order_id: Optional[int]
    from_me: bool
    text: Optional[str]
    decode_error: Optional[str] = None

    @property
    def decodable(self) -> bool:
        return self.text is not None and self.order_id is not None


@dataclass(frozen=True)
class SyncConversation:
    conversation_id: str
    name: str = ""
    messages: Tuple[SyncMessage, ...] = ()


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistorySync:
    conversations: Tuple[SyncConversation, ...] = ()


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class PairSuccess:
    identity: str = ""


@dataclass(frozen=True)
class Message:
    conversation_id: str
    text: Optional[str] = None


@dataclass(frozen=True)
class Other:
    kind: str
    payload: Any = None


ProtocolEvent = Union[HistorySync, Connected, PairSuccess, Message, Other]
_EVENT_TYPES = (HistorySync, Connected, PairSuccess, Message, Other)


@dataclass(frozen=True)
class PairingEvent:
    """One item from the pairing code channel (``code``, ``success``, ...)."""

    event: str
    code: str = ""


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def extract_text(content: Optional[Mapping[str, Any]]) -> str:
    """Return the text body of a message content mapping.

    Raises:
        DecodeError: If the content carries no supported text shape.
    """
    if not content:
        raise DecodeError("message has no content")
    plain = content.get("conversation")
    if isinstance(plain, str):
        return plain
    extended = content.get("extendedTextMessage")
    if isinstance(extended, Mapping) and isinstance(extended.get("text"), str):
        return extended["text"]
    shapes = ",".join(sorted(k for k in content if not k.startswith("messageContext")))
    raise DecodeError(f"unsupported content shape: {shapes or '<empty>'}")


def decode_message(raw: Mapping[str, Any]) -> SyncMessage:
    """Decode one history-sync message entry; never raises on bad shapes."""
    web_message = raw.get("message") or {}
    key = web_message.get("key") or {}
    from_me = bool(key.get("fromMe", False))

    raw_order = raw.get("msgOrderID")
    try:
        order_id = int(raw_order) if raw_order is not None else None
    except (TypeError, ValueError):
        order_id = None
    if order_id is None:
        return SyncMessage(None, from_me, None, "missing msgOrderID")

    try:
        text = extract_text(web_message.get("message"))
    except DecodeError as exc:
        return SyncMessage(order_id, from_me, None, str(exc))
    return SyncMessage(order_id, from_me, text)


def decode_conversation(raw: Mapping[str, Any]) -> SyncConversation:
    return SyncConversation(
        conversation_id=str(raw["id"]),
        name=raw.get("name") or "",
        messages=tuple(decode_message(m) for m in raw.get("messages") or ()),
    )


def decode_event(raw: Any) -> ProtocolEvent:
    """Normalise a raw client event into a :data:`ProtocolEvent`."""
    if isinstance(raw, _EVENT_TYPES):
        return raw
    if not isinstance(raw, Mapping):
        return Other(kind=type(raw).__name__, payload=raw)

    kind = str(raw.get("type", ""))
    if kind == "history_sync":
        return HistorySync(
            conversations=tuple(
                decode_conversation(c) for c in raw.get("conversations") or ()
            )
        )
    if kind == "connected":
        return Connected()
    if kind == "pair_success":
        return PairSuccess(identity=str(raw.get("id", "")))
    if kind == "message":
        return Message(
            conversation_id=str(raw.get("chat", "")),
            text=raw.get("text"),
        )
    return Other(kind=kind or "unknown", payload=raw)


def decode_pairing_event(raw: Any) -> PairingEvent:
    if isinstance(raw, PairingEvent):
        return raw
    if isinstance(raw, Mapping):
        return PairingEvent(event=str(raw.get("event", "")), code=str(raw.get("code") or ""))
    return PairingEvent(event=str(getattr(raw, "event", "")), code=str(getattr(raw, "code", "") or ""))

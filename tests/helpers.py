"""
Test helpers: an in-memory ledger with the same create-if-absent and
rollback semantics as ``LedgerStore``, an async context stub for asyncpg
mocks, and builders for history-sync payloads.
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from historysync.events import HistorySync, decode_event
from historysync.ledger_store import Conversation, LedgerWriteError, Message


class InMemoryLedger:
    """Dict-backed ledger honouring the PostgreSQL constraints."""

    def __init__(self) -> None:
        self.conversations: Dict[str, Conversation] = {}
        self.messages: List[Message] = []
        self.append_calls: List[tuple] = []
        self.fail_on: Optional[Callable[[str, int], bool]] = None
        self._next_id = 1

    @asynccontextmanager
    async def transaction(self):
        snapshot = (dict(self.conversations), list(self.messages))
        try:
            yield self
        except BaseException:
            self.conversations, self.messages = snapshot
            raise

    async def ensure_conversation(self, conversation_id: str, name: str = "") -> Conversation:
        if conversation_id not in self.conversations:
            self.conversations[conversation_id] = Conversation(conversation_id, name or "")
        return self.conversations[conversation_id]

    async def append_message(
        self, conversation_id: str, text: str, is_from_me: bool, order_id: int
    ) -> Optional[Message]:
        self.append_calls.append((conversation_id, order_id))
        if self.fail_on is not None and self.fail_on(conversation_id, order_id):
            raise LedgerWriteError(
                "append_message", conversation_id, RuntimeError("disk I/O error")
            )
        if conversation_id not in self.conversations:
            raise LedgerWriteError(
                "append_message", conversation_id, RuntimeError("foreign key violation")
            )
        for existing in self.messages:
            if existing.conversation_id == conversation_id and existing.order_id == order_id:
                return None
        message = Message(self._next_id, conversation_id, text, is_from_me, order_id)
        self._next_id += 1
        self.messages.append(message)
        return message

    async def messages_for(self, conversation_id: str) -> List[Message]:
        return sorted(
            (m for m in self.messages if m.conversation_id == conversation_id),
            key=lambda m: (m.order_id, m.id),
        )


class AsyncContext:
    """Minimal async context manager returning *value*."""

    def __init__(self, value: Any = None) -> None:
        self.value = value
        self.exc_type: Any = "not-exited"

    async def __aenter__(self) -> Any:
        return self.value

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.exc_type = exc_type
        return False


def raw_message(order_id, text="hello", from_me=False, shape="extended") -> Dict[str, Any]:
    """Build a history-sync message entry in protobuf JSON shape."""
    if shape == "extended":
        content = {"extendedTextMessage": {"text": text}}
    elif shape == "plain":
        content = {"conversation": text}
    else:
        content = {shape: {"url": "https://example.invalid/media"}}
    return {
        "msgOrderID": order_id,
        "message": {"key": {"fromMe": from_me}, "message": content},
    }


def history_sync(*conversations: Dict[str, Any]) -> HistorySync:
    event = decode_event({"type": "history_sync", "conversations": list(conversations)})
    assert isinstance(event, HistorySync)
    return event

"""
PostgreSQL ledger storage for history-sync ingestion.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), **never** string interpolation.

Writes are create-if-absent: conversations are keyed by
``conversation_id`` and messages by ``(conversation_id, order_id)``, both
with ``ON CONFLICT DO NOTHING``, so replaying a sync batch never changes
or duplicates stored rows.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

logger = logging.getLogger("historysync.ledger_store")

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_INSERT_CONVERSATION_SQL = """
    INSERT INTO conversations (conversation_id, display_name)
    VALUES ($1, $2)
    ON CONFLICT (conversation_id) DO NOTHING
    RETURNING conversation_id, display_name, created_at
"""

_SELECT_CONVERSATION_SQL = """
    SELECT conversation_id, display_name, created_at
    FROM conversations
    WHERE conversation_id = $1
"""

_INSERT_MESSAGE_SQL = """
    INSERT INTO messages (conversation_id, text, is_from_me, order_id)
    VALUES ($1, $2, $3, $4)
    ON CONFLICT (conversation_id, order_id) DO NOTHING
    RETURNING id, conversation_id, text, is_from_me, order_id
"""

_SELECT_MESSAGES_SQL = """
    SELECT id, conversation_id, text, is_from_me, order_id
    FROM messages
    WHERE conversation_id = $1
    ORDER BY order_id ASC, id ASC
"""

_LIST_CONVERSATIONS_SQL = """
    SELECT c.conversation_id, c.display_name, COUNT(m.id) AS message_count
    FROM conversations AS c
    LEFT JOIN messages AS m ON m.conversation_id = c.conversation_id
    GROUP BY c.conversation_id, c.display_name
    ORDER BY c.conversation_id
"""


class LedgerError(Exception):
    """A ledger operation failed at the storage layer."""

    def __init__(self, operation: str, conversation_id: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed for {conversation_id}: {cause}")
        self.operation = operation
        self.conversation_id = conversation_id
        self.cause = cause


class LedgerWriteError(LedgerError):
    """An insert into the ledger failed (FK violation, connection loss, ...)."""


@dataclass(frozen=True)
class Conversation:
    conversation_id: str
    display_name: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Message:
    id: int
    conversation_id: str
    text: str
    is_from_me: bool
    order_id: int


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    display_name: str
    message_count: int


def _conversation(row: Any) -> Conversation:
    return Conversation(
        conversation_id=row["conversation_id"],
        display_name=row["display_name"] or "",
        created_at=row["created_at"],
    )


def _message(row: Any) -> Message:
    return Message(
        id=int(row["id"]),
        conversation_id=row["conversation_id"],
        text=row["text"],
        is_from_me=bool(row["is_from_me"]),
        order_id=int(row["order_id"]),
    )


class LedgerStore:
    """Conversation and message ledger backed by PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool, _conn: Optional[asyncpg.Connection] = None) -> None:
        self._pool = pool
        self._conn = _conn

    @property
    def _executor(self) -> Any:
        return self._conn if self._conn is not None else self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["LedgerStore"]:
        """Yield a store whose calls share one connection and one transaction.

        The transaction commits when the block exits normally and rolls
        back if it raises.
        """
        if self._conn is not None:
            async with self._conn.transaction():
                yield self
            return
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield LedgerStore(self._pool, _conn=conn)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def ensure_conversation(self, conversation_id: str, name: str = "") -> Conversation:
        """Insert the conversation if absent and return the stored row.

        An existing row is returned unchanged; the name given on the first
        insert wins.

        Raises:
            LedgerWriteError: If the insert or the read-back fails.
        """
        try:
            row = await self._executor.fetchrow(
                _INSERT_CONVERSATION_SQL, conversation_id, name or ""
            )
            if row is None:
                row = await self._executor.fetchrow(
                    _SELECT_CONVERSATION_SQL, conversation_id
                )
        except _DB_ERRORS as exc:
            raise LedgerWriteError("ensure_conversation", conversation_id, exc) from exc
        if row is None:
            raise LedgerWriteError(
                "ensure_conversation",
                conversation_id,
                LookupError("row vanished after conflict"),
            )
        return _conversation(row)

    async def append_message(
        self,
        conversation_id: str,
        text: str,
        is_from_me: bool,
        order_id: int,
    ) -> Optional[Message]:
        """Insert one message.

        Returns:
            The stored :class:`Message`, or ``None`` when a message with the
            same ``(conversation_id, order_id)`` already exists.

        Raises:
            LedgerWriteError: If the conversation does not exist or the
                write fails.
        """
        try:
            row = await self._executor.fetchrow(
                _INSERT_MESSAGE_SQL, conversation_id, text, is_from_me, order_id
            )
        except _DB_ERRORS as exc:
            raise LedgerWriteError("append_message", conversation_id, exc) from exc
        if row is None:
            logger.debug(
                "Duplicate message ignored: conversation=%s order_id=%d",
                conversation_id,
                order_id,
            )
            return None
        return _message(row)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def messages_for(self, conversation_id: str) -> List[Message]:
        """Return every stored message of a conversation, ``order_id`` ascending."""
        try:
            rows = await self._executor.fetch(_SELECT_MESSAGES_SQL, conversation_id)
        except _DB_ERRORS as exc:
            raise LedgerError("messages_for", conversation_id, exc) from exc
        return [_message(row) for row in rows]

    async def list_conversations(self) -> List[ConversationSummary]:
        rows = await self._executor.fetch(_LIST_CONVERSATIONS_SQL)
        return [
            ConversationSummary(
                conversation_id=row["conversation_id"],
                display_name=row["display_name"] or "",
                message_count=int(row["message_count"] or 0),
            )
            for row in rows
        ]

    async def get_ledger_stats(self) -> Dict[str, Any]:
        """Return summary statistics for startup logging."""
        async with self._pool.acquire() as conn:
            total_conversations = await conn.fetchval("SELECT COUNT(*) FROM conversations")
            total_messages = await conn.fetchval("SELECT COUNT(*) FROM messages")
        return {
            "total_conversations": total_conversations or 0,
            "total_messages": total_messages or 0,
        }

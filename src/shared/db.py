"""
Database helpers: connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The ledger lives in two
tables plus the audit trail:

- **conversations**: one row per tracked conversation id.
- **messages**: one row per ``(conversation_id, order_id)``.
- **audit_log**: structured audit events written by ``shared.audit``.

Every statement here is idempotent (``IF NOT EXISTS``), so the schema can
be applied on every service start.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        display_name    TEXT NOT NULL DEFAULT '',
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              BIGSERIAL PRIMARY KEY,
        conversation_id TEXT NOT NULL
            REFERENCES conversations (conversation_id),
        text            TEXT NOT NULL,
        is_from_me      BOOLEAN NOT NULL,
        order_id        BIGINT NOT NULL,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (conversation_id, order_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict.  Either ``dsn`` or the
                discrete keys ``host``, ``port``, ``database``, ``user``,
                ``password``; optionally ``min_size`` and ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    min_size = int(config.get("min_size", 1))
    max_size = int(config.get("max_size", 4))
    if config.get("dsn"):
        pool = await asyncpg.create_pool(
            dsn=config["dsn"], min_size=min_size, max_size=max_size
        )
        logger.info("Database pool created from DSN")
        return pool

    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config.get("database"),
        user=config.get("user"),
        password=config.get("password"),
        min_size=min_size,
        max_size=max_size,
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host") or "<socket>",
        config.get("database"),
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create the ledger and audit tables if they do not exist.

    Executed once at service startup inside a single transaction, so a
    failure leaves no half-applied schema behind.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Ledger schema ready")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False

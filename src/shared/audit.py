"""
Structured audit logging: records ingestion and summarization events to
both a JSON Lines file and the PostgreSQL ``audit_log`` table.

Each event carries a timestamp, the owning service, an action name
(``startup``, ``history_sync``, ``summarize``, ``shutdown``), a details
dict, and a success flag.  Writes are queued and flushed by a background
task so the event handler never waits on disk or database I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/wa-recap/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class _AuditRecord:
    json_line: str
    action: str
    details_json: str
    success: bool


class AuditLogger:
    """Buffered audit logger bound to one service name.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        service: Service label stored with every event.
        log_path: Path to the JSON Lines audit log file.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Number of queued events to flush per write batch.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        service: str = "historysync",
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 256,
        flush_batch_size: int = 32,
    ) -> None:
        self._pool = pool
        self._service = service
        self._log_path = log_path
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._lifecycle_lock = asyncio.Lock()

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(),
                name="wa-recap-audit-writer",
            )

    async def _write_batch(self, batch: list[_AuditRecord]) -> None:
        # File and database are independent sinks; one failing does not
        # stop the other.
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception("Failed to write audit log file")

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [
                        (self._service, item.action, item.details_json, item.success)
                        for item in batch
                    ],
                )
        except Exception:
            logger.exception("Failed to write audit log to database")

    async def _worker(self) -> None:
        stop = False
        while not stop:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break

            batch = [record]
            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Events logged after :meth:`close` are dropped with a debug line.
        """
        details_payload = details or {}
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
            "details": details_payload,
            "success": success,
        }
        record = _AuditRecord(
            json_line=json.dumps(event, default=str) + "\n",
            action=action,
            details_json=json.dumps(details_payload, default=str),
            success=success,
        )
        async with self._lifecycle_lock:
            if self._closed:
                logger.debug("Dropping audit event after close: action=%s", action)
                return
            self._ensure_worker()
            await self._queue.put(record)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        async with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker_task
            if worker is not None:
                await self._queue.put(None)

        if worker is not None:
            await worker

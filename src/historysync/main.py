"""
History-sync service entry point: pairs with (or resumes) the messaging
account, folds every history sync for the tracked conversations into
PostgreSQL, and requests a recap when a metadata-only sync arrives.

Runs as a long-lived foreground process (systemd unit ``wa-recap``).

Key behaviours:
    - Loads configuration from ``/etc/wa-recap/settings.toml``.
    - The protocol client is built by the factory named in
      ``protocol.client_factory`` and always wrapped in
      ``ReadOnlyProtocolClient``.
    - The persisted identity is decrypted into tmpfs for the lifetime of
      the process and encrypted back on exit.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Fatal errors exit with status 1.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict

from historysync.config import _DEFAULT_CONFIG_PATH, build_settings, load_config
from historysync.folder import HistorySyncFolder
from historysync.ledger_store import LedgerStore
from historysync.lifecycle import SessionController
from historysync.readonly_client import ReadOnlyProtocolClient
from historysync.summarizer import ClaudeSummarizer
from historysync.trigger import SummarizationTrigger
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_secret, materialize_identity_store, persist_identity_store

logger = logging.getLogger("historysync.main")

ClientFactory = Callable[[Path, Dict[str, Any]], Any]


def load_client_factory(target: str) -> ClientFactory:
    """Resolve a ``"package.module:callable"`` reference.

    Raises:
        ValueError: If *target* is empty or malformed.
        ImportError / AttributeError: If it cannot be resolved.
    """
    module_name, sep, attr = target.partition(":")
    if not target or not sep or not module_name or not attr:
        raise ValueError(
            "protocol.client_factory must look like 'package.module:callable'"
        )
    factory = getattr(importlib.import_module(module_name), attr)
    if not callable(factory):
        raise ValueError(f"protocol.client_factory {target!r} is not callable")
    return factory


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------


def _handle_signal(sig: int, shutdown_event: asyncio.Event) -> None:
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    shutdown_event.set()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig, shutdown_event)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config_path: Path = _DEFAULT_CONFIG_PATH) -> None:
    """Top-level async entry point for the service."""
    config = load_config(config_path)
    settings = build_settings(config)
    identity_key = get_secret("identity_encryption_key")
    factory = load_client_factory(settings.client_factory)

    shutdown_event = asyncio.Event()
    install_signal_handlers(shutdown_event)

    working_identity = materialize_identity_store(settings.identity_store_path, identity_key)
    pool = None
    audit = None
    try:
        pool = await get_connection_pool(settings.database)
        await init_database(pool)
        if not await health_check(pool):
            raise RuntimeError("Database health check failed after schema init")

        store = LedgerStore(pool)
        stats = await store.get_ledger_stats()
        logger.info(
            "Ledger holds %d conversations / %d messages",
            stats["total_conversations"],
            stats["total_messages"],
        )
        audit = AuditLogger(pool, log_path=settings.audit_log_path)

        summarizer = ClaudeSummarizer(
            api_key=settings.summarizer_api_key,
            model=settings.summarizer_model,
            system_prompt_path=settings.system_prompt_path,
            max_tokens=settings.summarizer_max_tokens,
        )
        trigger = SummarizationTrigger(
            store, summarizer, prompt_header=settings.prompt_header, audit=audit
        )
        folder = HistorySyncFolder(
            store,
            settings.tracked_conversation_ids,
            trigger,
            audit=audit,
            failure_policy=settings.failure_policy,
        )
        client = ReadOnlyProtocolClient(factory(working_identity, config))
        controller = SessionController(
            client,
            folder,
            shutdown_event,
            disconnect_timeout=settings.disconnect_timeout,
        )

        await audit.log(
            "startup",
            {
                "tracked_conversations": sorted(settings.tracked_conversation_ids),
                "failure_policy": settings.failure_policy,
            },
        )
        clean_exit = False
        try:
            await controller.run()
            clean_exit = True
        finally:
            await audit.log(
                "shutdown",
                {"summarizer_usage": summarizer.get_usage_stats()},
                success=clean_exit,
            )
    finally:
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        persist_identity_store(working_identity, settings.identity_store_path, identity_key)
        logger.info("wa-recap stopped.")


def run() -> None:
    """Synchronous entry point (console script / systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main())
    except Exception:
        logger.exception("Fatal error; exiting")
        sys.exit(1)


if __name__ == "__main__":
    run()

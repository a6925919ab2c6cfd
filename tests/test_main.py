"""
Unit tests for the service entry point: wiring, shutdown audit, identity
persistence on every exit path, and the process exit status.
"""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from historysync import main as service_main
from historysync.config import Settings
from historysync.ledger_store import LedgerWriteError
from historysync.lifecycle import PairingError


@pytest.fixture
def service(mock_pool, tmp_path):
    """Patch every collaborator of ``main()`` and expose the mocks."""
    settings = Settings(
        database={"dsn": "postgresql:///wa_recap_test"},
        identity_store_path=tmp_path / "identity.db.enc",
        tracked_conversation_ids=frozenset({"a@s.whatsapp.net"}),
        summarizer_api_key="sk-test",
        client_factory="wa_bridge.client:build_client",
        failure_policy="abort",
    )
    config = {"database": {"dsn": "postgresql:///wa_recap_test"}}
    working = tmp_path / "work" / "identity.db"

    audit = MagicMock()
    audit.log = AsyncMock()
    audit.close = AsyncMock()
    controller = MagicMock()
    controller.run = AsyncMock()
    raw_client = MagicMock()
    factory = MagicMock(return_value=raw_client)

    mocks = {
        "load_config": MagicMock(return_value=config),
        "build_settings": MagicMock(return_value=settings),
        "get_secret": MagicMock(return_value="identity-key"),
        "load_client_factory": MagicMock(return_value=factory),
        "install_signal_handlers": MagicMock(),
        "materialize_identity_store": MagicMock(return_value=working),
        "persist_identity_store": MagicMock(),
        "get_connection_pool": AsyncMock(return_value=mock_pool),
        "init_database": AsyncMock(),
        "health_check": AsyncMock(return_value=True),
        "AuditLogger": MagicMock(return_value=audit),
        "ClaudeSummarizer": MagicMock(),
        "SessionController": MagicMock(return_value=controller),
    }
    with patch.multiple("historysync.main", **mocks):
        yield SimpleNamespace(
            settings=settings,
            config=config,
            working=working,
            audit=audit,
            controller=controller,
            factory=factory,
            pool=mock_pool,
            **mocks,
        )


def _audit_call(audit, action):
    [call] = [c for c in audit.log.call_args_list if c.args[0] == action]
    return call


class TestMain:
    @pytest.mark.asyncio
    async def test_clean_session(self, service):
        await service_main.main(Path("/etc/wa-recap/settings.toml"))

        service.factory.assert_called_once_with(service.working, service.config)
        service.controller.run.assert_awaited_once()
        assert _audit_call(service.audit, "startup").args[1]["failure_policy"] == "abort"
        assert _audit_call(service.audit, "shutdown").kwargs["success"] is True
        service.audit.close.assert_awaited_once()
        service.pool.close.assert_awaited_once()
        service.persist_identity_store.assert_called_once_with(
            service.working, service.settings.identity_store_path, "identity-key"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        PairingError("pairing code channel closed before pairing succeeded"),
        LedgerWriteError("append_message", "a@s.whatsapp.net", RuntimeError("disk full")),
    ])
    async def test_session_failure_audited_and_identity_persisted(self, service, failure):
        service.controller.run.side_effect = failure

        with pytest.raises(type(failure)):
            await service_main.main(Path("/etc/wa-recap/settings.toml"))

        assert _audit_call(service.audit, "shutdown").kwargs["success"] is False
        service.audit.close.assert_awaited_once()
        service.pool.close.assert_awaited_once()
        service.persist_identity_store.assert_called_once_with(
            service.working, service.settings.identity_store_path, "identity-key"
        )

    @pytest.mark.asyncio
    async def test_database_unreachable_still_persists_identity(self, service):
        service.get_connection_pool.side_effect = OSError("connection refused")

        with pytest.raises(OSError):
            await service_main.main(Path("/etc/wa-recap/settings.toml"))

        service.AuditLogger.assert_not_called()
        service.controller.run.assert_not_called()
        service.persist_identity_store.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_health_check_stops_startup(self, service):
        service.health_check.return_value = False

        with pytest.raises(RuntimeError, match="health check"):
            await service_main.main(Path("/etc/wa-recap/settings.toml"))

        service.controller.run.assert_not_called()
        service.pool.close.assert_awaited_once()
        service.persist_identity_store.assert_called_once()


class TestRun:
    @pytest.mark.parametrize("failure", [
        PairingError("pairing never succeeded"),
        LedgerWriteError("append_message", "a@s.whatsapp.net", RuntimeError("disk full")),
        KeyError("Missing required config key: database"),
    ])
    def test_fatal_error_exits_with_status_1(self, failure):
        with patch("historysync.main.main", AsyncMock(side_effect=failure)):
            with pytest.raises(SystemExit) as excinfo:
                service_main.run()
        assert excinfo.value.code == 1

    def test_clean_exit(self):
        with patch("historysync.main.main", AsyncMock(return_value=None)) as main:
            service_main.run()
        main.assert_awaited_once()

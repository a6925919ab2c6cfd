"""
ReadOnlyProtocolClient: guard around the messaging protocol client.

This service only *receives* history; it never sends, edits or deletes
anything on the account it is paired with.  The wrapper proxies attribute
access to the underlying client and blocks every member that is not on an
explicit allowlist of lifecycle and event-registration methods.  Blocked
access raises ``PermissionError`` and is logged at CRITICAL.

Design principles:
    - Default-deny: anything not in ALLOWED_METHODS is rejected.
    - Fail-closed: if the allowlist check itself raises, access is denied.
    - The wrapper never modifies the underlying client.
"""

from __future__ import annotations

import logging
import time
from typing import Any, FrozenSet
from weakref import WeakKeyDictionary

logger = logging.getLogger("historysync.readonly_client")

# Lifecycle and inbound-event methods only.  Do NOT add send_message,
# mark_read, revoke_message, or anything that acts on the account.
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        "connect",
        "disconnect",
        "is_connected",
        "has_persisted_identity",
        "get_pairing_code_channel",
        "add_event_handler",
    }
)

# State lives outside the instance so ``object.__getattribute__`` cannot
# reach the raw client.
_CLIENT_MAP: "WeakKeyDictionary[ReadOnlyProtocolClient, Any]" = WeakKeyDictionary()
_ALLOWED_MAP: "WeakKeyDictionary[ReadOnlyProtocolClient, FrozenSet[str]]" = WeakKeyDictionary()


class ReadOnlyProtocolClient:
    """Allowlist proxy around a protocol client instance.

    Usage::

        client = ReadOnlyProtocolClient(raw_client)
        client.add_event_handler(controller.handle_event)
        await client.connect()

    Any access to a member **not** in ``ALLOWED_METHODS`` logs a CRITICAL
    line and raises ``PermissionError``.
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: Any) -> None:
        _CLIENT_MAP[self] = client
        _ALLOWED_MAP[self] = ALLOWED_METHODS

    @staticmethod
    def _state(self: "ReadOnlyProtocolClient") -> tuple[Any, FrozenSet[str]]:
        client = _CLIENT_MAP.get(self)
        allowed = _ALLOWED_MAP.get(self)
        if client is None or allowed is None:
            raise PermissionError("ReadOnlyProtocolClient: internal state unavailable.")
        return client, allowed

    def __getattribute__(self, name: str) -> Any:
        if name in {
            "__class__",
            "__repr__",
            "__setattr__",
            "__delattr__",
            "__getattribute__",
            "_state",
        }:
            return object.__getattribute__(self, name)

        if name.startswith("_"):
            logger.critical(
                "BLOCKED  | attr=%-27s ts=%s  internal attribute access denied",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlyProtocolClient: internal attribute access to '{name}' is denied."
            )

        try:
            client, allowed = ReadOnlyProtocolClient._state(self)

            if name in allowed:
                attr = getattr(client, name)
                if not callable(attr):
                    raise PermissionError(
                        f"ReadOnlyProtocolClient: allowed member '{name}' is not callable."
                    )
                logger.debug("ALLOWED  | method=%-25s ts=%s", name, time.time())
                return attr

            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  PermissionError raised",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlyProtocolClient: access to '{name}' is denied. "
                f"Only these methods are permitted: {sorted(allowed)}"
            )

        except PermissionError:
            raise

        except Exception:
            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  unexpected error during "
                "allowlist check; failing closed",
                name,
                time.time(),
                exc_info=True,
            )
            raise PermissionError(
                f"ReadOnlyProtocolClient: access to '{name}' denied "
                f"(fail-closed on unexpected error)."
            )

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlyProtocolClient: setting attributes is not allowed.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlyProtocolClient: deleting attributes is not allowed.")

    def __repr__(self) -> str:
        _, allowed = ReadOnlyProtocolClient._state(self)
        return f"<ReadOnlyProtocolClient allowed={sorted(allowed)}>"

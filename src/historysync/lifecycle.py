"""
Session lifecycle controller.

Drives the protocol client through::

    DISCONNECTED -> [PAIRING] -> CONNECTED -> LISTENING -> SHUTTING_DOWN -> DISCONNECTED

and routes decoded events: ``HistorySync`` goes to the folder, everything
else is logged.  The event handler is registered *before* connecting so
the initial history sync delivered right after login is not missed.

Protocol client contract (methods may be sync or async)::

    has_persisted_identity() -> bool
    get_pairing_code_channel() -> AsyncIterator[PairingEvent | dict]
    connect() / disconnect()
    add_event_handler(handler)   # handler is a coroutine function
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from typing import Any, Callable, List, Optional

from historysync.events import (
    Connected,
    HistorySync,
    Message,
    Other,
    PairSuccess,
    decode_event,
    decode_pairing_event,
)
from historysync.folder import HistorySyncFolder
from historysync.ledger_store import LedgerError

logger = logging.getLogger("historysync.lifecycle")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    PAIRING = "pairing"
    CONNECTED = "connected"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"


class PairingError(RuntimeError):
    """The pairing code channel closed before pairing succeeded."""


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def render_pairing_code(code: str) -> None:
    """Show a pairing code to the operator (scan it from the phone app)."""
    logger.warning("Pairing code: %s", code)


class SessionController:
    """Own the connection lifecycle and feed history syncs to the folder.

    Args:
        client: Protocol client (normally a ``ReadOnlyProtocolClient``).
        folder: History sync folder.
        shutdown_event: Set by the signal handlers to request shutdown.
        disconnect_timeout: Seconds to wait for a graceful disconnect.
    """

    def __init__(
        self,
        client: Any,
        folder: HistorySyncFolder,
        shutdown_event: asyncio.Event,
        disconnect_timeout: float = 10.0,
        code_renderer: Callable[[str], None] = render_pairing_code,
    ) -> None:
        self._client = client
        self._folder = folder
        self._shutdown = shutdown_event
        self._disconnect_timeout = disconnect_timeout
        self._render_code = code_renderer
        self._fatal: Optional[BaseException] = None
        self.state = SessionState.DISCONNECTED
        self.history: List[SessionState] = [SessionState.DISCONNECTED]

    def _transition(self, new_state: SessionState) -> None:
        logger.info("Session state: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, raw: Any) -> None:
        """Dispatch one protocol event; processes it to completion."""
        event = decode_event(raw)
        match event:
            case HistorySync(conversations=conversations):
                logger.info("History sync received (%d conversations)", len(conversations))
                try:
                    await self._folder.fold(event)
                except LedgerError as exc:
                    logger.critical("Fatal ledger failure during history sync: %s", exc)
                    self._fatal = exc
                    self._shutdown.set()
            case Connected():
                logger.info("Connected to messaging service")
            case PairSuccess(identity=identity):
                logger.info("Pairing succeeded (%s)", identity or "unknown id")
            case Message(conversation_id=conversation_id):
                logger.debug("Ignoring live message in %s", conversation_id)
            case Other(kind=kind):
                logger.debug("Ignoring event kind %s", kind)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect (pairing if needed), listen until shutdown, disconnect.

        Raises:
            PairingError: If pairing never succeeded.
            LedgerError: If a history sync failed under the abort policy.
        """
        await _call(self._client.add_event_handler, self.handle_event)
        try:
            if await _call(self._client.has_persisted_identity):
                await _call(self._client.connect)
                self._transition(SessionState.CONNECTED)
                connected = True
            else:
                connected = await self._pair_until_shutdown()
            if connected:
                self._transition(SessionState.LISTENING)
                await self._shutdown.wait()
        finally:
            await self._disconnect()

        # A history sync can fail fatally while pairing is still in progress.
        if self._fatal is not None:
            raise self._fatal

    async def _pair_until_shutdown(self) -> bool:
        """Run pairing, racing it against shutdown.  True once connected."""
        pairing = asyncio.ensure_future(self._pair())
        stopper = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {pairing, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            pending = [task for task in (pairing, stopper) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if pairing not in done:
            logger.info("Shutdown requested during pairing")
            return False
        pairing.result()
        return True

    async def _pair(self) -> None:
        self._transition(SessionState.PAIRING)
        channel = await _call(self._client.get_pairing_code_channel)
        await _call(self._client.connect)
        async for raw in channel:
            item = decode_pairing_event(raw)
            if item.event == "code":
                self._render_code(item.code)
            elif item.event == "success":
                self._transition(SessionState.CONNECTED)
                return
            else:
                logger.info("Login event: %s", item.event)
        raise PairingError("pairing code channel closed before pairing succeeded")

    async def _disconnect(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self._transition(SessionState.SHUTTING_DOWN)
        try:
            await asyncio.wait_for(
                _call(self._client.disconnect), timeout=self._disconnect_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Disconnect did not finish within %.1fs; abandoning it",
                self._disconnect_timeout,
            )
        except Exception:
            logger.exception("Disconnect failed")
        self._transition(SessionState.DISCONNECTED)

"""
History sync folder: folds one ``HistorySync`` batch into the ledger.

For each conversation in the batch whose id is tracked:

    1. ensure the conversation row exists (first name wins),
    2. append every decodable message in list order,
    3. hand the batch's own message count to the summarization trigger.

Steps 1–2 for one conversation run in a single transaction.  How a
storage failure is handled depends on the failure policy:

    - ``isolate``: roll back that conversation, record the error in the
      :class:`FoldReport`, and continue with the rest of the batch.
    - ``abort``: roll back that conversation and re-raise; nothing after
      the failure point is written.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from historysync.events import HistorySync, SyncConversation
from historysync.ledger_store import LedgerError, LedgerStore
from historysync.trigger import SummarizationTrigger
from shared.audit import AuditLogger

logger = logging.getLogger("historysync.folder")

FAILURE_POLICIES = ("isolate", "abort")


@dataclass(frozen=True)
class DecodeFailure:
    conversation_id: str
    order_id: Optional[int]
    reason: str


@dataclass(frozen=True)
class ConversationError:
    conversation_id: str
    operation: str
    error: str


@dataclass
class FoldReport:
    """Per-batch outcome summary."""

    conversations_folded: int = 0
    conversations_skipped: int = 0
    messages_stored: int = 0
    messages_duplicate: int = 0
    summaries_dispatched: int = 0
    decode_failures: List[DecodeFailure] = field(default_factory=list)
    errors: List[ConversationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_audit_details(self) -> Dict[str, Any]:
        return {
            "conversations_folded": self.conversations_folded,
            "conversations_skipped": self.conversations_skipped,
            "messages_stored": self.messages_stored,
            "messages_duplicate": self.messages_duplicate,
            "summaries_dispatched": self.summaries_dispatched,
            "decode_failures": len(self.decode_failures),
            "errors": [asdict(e) for e in self.errors],
        }


@dataclass
class _ConversationOutcome:
    stored: int = 0
    duplicate: int = 0
    decode_failures: List[DecodeFailure] = field(default_factory=list)


class HistorySyncFolder:
    """Fold history-sync batches for a fixed set of tracked conversations.

    Args:
        store: Ledger store (pool-backed; transactions are opened per
               conversation).
        tracked_ids: Conversation ids to ingest; everything else is ignored.
        trigger: Summarization trigger consulted after each conversation.
        audit: Optional audit logger; one ``history_sync`` event per batch.
        failure_policy: ``"isolate"`` or ``"abort"``.
    """

    def __init__(
        self,
        store: LedgerStore,
        tracked_ids: Iterable[str],
        trigger: SummarizationTrigger,
        audit: Optional[AuditLogger] = None,
        failure_policy: str = "isolate",
    ) -> None:
        tracked = frozenset(str(t) for t in tracked_ids)
        if not tracked:
            raise ValueError("at least one tracked conversation id is required")
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"failure_policy must be one of {FAILURE_POLICIES}, got {failure_policy!r}"
            )
        self._store = store
        self._tracked = tracked
        self._trigger = trigger
        self._audit = audit
        self._failure_policy = failure_policy
        self._lock = asyncio.Lock()

    @property
    def tracked_ids(self) -> frozenset[str]:
        return self._tracked

    async def fold(self, event: HistorySync) -> FoldReport:
        """Fold every tracked conversation of *event* into the ledger.

        Raises:
            LedgerError: Only under the ``abort`` policy.
        """
        async with self._lock:
            report = FoldReport()
            try:
                for conversation in event.conversations:
                    await self._fold_one(conversation, report)
            except LedgerError:
                await self._log_audit(report)
                raise
            await self._log_audit(report)

        logger.info(
            "History sync folded: %d conversations (%d skipped), %d new / %d duplicate "
            "messages, %d undecodable, %d errors, %d summaries",
            report.conversations_folded,
            report.conversations_skipped,
            report.messages_stored,
            report.messages_duplicate,
            len(report.decode_failures),
            len(report.errors),
            report.summaries_dispatched,
        )
        return report

    async def _fold_one(self, conversation: SyncConversation, report: FoldReport) -> None:
        conversation_id = conversation.conversation_id
        if conversation_id not in self._tracked:
            report.conversations_skipped += 1
            logger.debug("Skipping untracked conversation %s", conversation_id)
            return

        try:
            outcome = await self._write_conversation(conversation)
        except LedgerError as exc:
            self._record_failure(exc, report, "conversation rolled back")
            return
        report.conversations_folded += 1
        report.messages_stored += outcome.stored
        report.messages_duplicate += outcome.duplicate
        report.decode_failures.extend(outcome.decode_failures)

        # The conversation is committed at this point; a failed transcript
        # read only loses the summary.
        try:
            summary = await self._trigger.maybe_summarize(
                conversation_id, len(conversation.messages)
            )
        except LedgerError as exc:
            self._record_failure(exc, report, "messages kept, summary skipped")
            return
        if summary is not None:
            report.summaries_dispatched += 1

    def _record_failure(self, exc: LedgerError, report: FoldReport, outcome: str) -> None:
        """Record *exc* in the report; re-raise it under the abort policy."""
        report.errors.append(
            ConversationError(exc.conversation_id, exc.operation, str(exc.cause))
        )
        if self._failure_policy == "abort":
            logger.critical(
                "Ledger failure in %s (%s); aborting history sync batch",
                exc.conversation_id,
                exc.operation,
            )
            raise exc
        logger.error(
            "Ledger failure in %s (%s); %s, continuing batch: %s",
            exc.conversation_id,
            exc.operation,
            outcome,
            exc,
        )

    async def _write_conversation(self, conversation: SyncConversation) -> _ConversationOutcome:
        conversation_id = conversation.conversation_id
        outcome = _ConversationOutcome()
        async with self._store.transaction() as tx:
            await tx.ensure_conversation(conversation_id, conversation.name or "")
            for entry in conversation.messages:
                if not entry.decodable:
                    logger.warning(
                        "Skipping undecodable message in %s (order_id=%s): %s",
                        conversation_id,
                        entry.order_id,
                        entry.decode_error,
                    )
                    outcome.decode_failures.append(
                        DecodeFailure(
                            conversation_id,
                            entry.order_id,
                            entry.decode_error or "undecodable",
                        )
                    )
                    continue
                stored = await tx.append_message(
                    conversation_id, entry.text, entry.from_me, entry.order_id
                )
                if stored is None:
                    outcome.duplicate += 1
                else:
                    outcome.stored += 1
        return outcome

    async def _log_audit(self, report: FoldReport) -> None:
        if self._audit is not None:
            await self._audit.log(
                "history_sync", report.as_audit_details(), success=report.ok
            )

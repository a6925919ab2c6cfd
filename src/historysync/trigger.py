"""
Summarization trigger: decides, per folded conversation, whether to
assemble the stored transcript and send it to the summarizer.

The default gating predicate treats a sync that delivered **no** messages
for a tracked conversation as a recap request: the remote side sent
metadata only and expects us to already hold the history.  That signal is
a heuristic (an empty conversation or a split sync batch also produce a
zero count), so the predicate is injectable.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Protocol

from historysync.ledger_store import LedgerStore, Message
from shared.audit import AuditLogger

logger = logging.getLogger("historysync.trigger")

SELF_LABEL = "Me"
OTHER_LABEL = "Other"
SEPARATOR = ": "
DEFAULT_PROMPT_HEADER = "Please give me a summary of these messages:"

GatingPolicy = Callable[[str, int], bool]


class Summarizer(Protocol):
    async def send(self, text: str) -> str: ...


def metadata_only_sync(conversation_id: str, batch_message_count: int) -> bool:
    """Fire when the batch carried no messages for the conversation."""
    return batch_message_count == 0


def render_transcript(
    messages: Iterable[Message],
    self_label: str = SELF_LABEL,
    other_label: str = OTHER_LABEL,
    separator: str = SEPARATOR,
) -> str:
    """Render messages as one ``<label><separator><text>`` line each."""
    return "\n".join(
        f"{self_label if m.is_from_me else other_label}{separator}{m.text}"
        for m in messages
    )


class SummarizationTrigger:
    """Gate and dispatch transcript summaries.

    Args:
        store: Ledger to read transcripts from.
        summarizer: Anything with an async ``send(text) -> str``.
        policy: Gating predicate ``(conversation_id, batch_message_count)``.
        prompt_header: Instruction line placed above the transcript.
        audit: Optional audit logger for ``summarize`` events.
    """

    def __init__(
        self,
        store: LedgerStore,
        summarizer: Summarizer,
        policy: GatingPolicy = metadata_only_sync,
        prompt_header: str = DEFAULT_PROMPT_HEADER,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._policy = policy
        self._prompt_header = prompt_header
        self._audit = audit

    def build_prompt(self, messages: Iterable[Message]) -> str:
        transcript = render_transcript(messages)
        if not self._prompt_header:
            return transcript
        return f"{self._prompt_header}\n{transcript}"

    async def maybe_summarize(
        self, conversation_id: str, batch_message_count: int
    ) -> Optional[str]:
        """Summarize the stored transcript if the policy fires.

        Returns:
            The summary text, or ``None`` if the policy did not fire, the
            ledger holds no messages, or the summarizer call failed.

        Raises:
            LedgerError: If the transcript cannot be read back.
        """
        if not self._policy(conversation_id, batch_message_count):
            return None

        messages = await self._store.messages_for(conversation_id)
        if not messages:
            logger.info(
                "Recap requested for %s but the ledger holds no messages",
                conversation_id,
            )
            return None

        prompt = self.build_prompt(messages)
        logger.info(
            "Requesting summary for %s (%d messages, %d chars)",
            conversation_id,
            len(messages),
            len(prompt),
        )
        try:
            summary = await self._summarizer.send(prompt)
        except Exception as exc:
            logger.warning(
                "Summarizer call failed for %s", conversation_id, exc_info=True
            )
            await self._log_audit(
                conversation_id, len(messages), success=False, error=type(exc).__name__
            )
            return None

        logger.info("Summary for %s:\n%s", conversation_id, summary)
        await self._log_audit(conversation_id, len(messages), success=True)
        return summary

    async def _log_audit(
        self,
        conversation_id: str,
        message_count: int,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        if self._audit is None:
            return
        details = {"conversation_id": conversation_id, "message_count": message_count}
        if error:
            details["error"] = error
        await self._audit.log("summarize", details, success=success)

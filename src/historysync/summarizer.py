"""
Claude API integration: sends a rendered conversation transcript to the
Anthropic API and returns the summary text.

The call is single-shot: the SDK's own retry loop is disabled
(``max_retries=0``) and callers treat any failure as best-effort.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import anthropic

logger = logging.getLogger("historysync.summarizer")

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class ClaudeSummarizer:
    """Wrapper around the Anthropic Python SDK implementing ``send(text) -> text``.

    Args:
        api_key: Anthropic API key (loaded from system keychain).
        model: Claude model identifier.
        system_prompt_path: Optional path to a system prompt file; the
            built-in prompt is used when omitted.
        max_tokens: Upper bound on the summary length.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        system_prompt_path: Optional[Path] = None,
        max_tokens: int = 2048,
        timeout: float = 60.0,
    ) -> None:
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            max_retries=0,
            timeout=timeout,
        )
        self._model = model
        self._max_tokens = max_tokens
        self._system_prompt_path = system_prompt_path
        self._system_prompt: Optional[str] = None

        self._calls: int = 0
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0

    def _load_system_prompt(self) -> str:
        """Load the system prompt (cached after first load).

        Raises:
            FileNotFoundError: If a configured prompt file doesn't exist.
        """
        if self._system_prompt is None:
            if self._system_prompt_path is None:
                self._system_prompt = DEFAULT_SYSTEM_PROMPT
            else:
                self._system_prompt = self._system_prompt_path.read_text(
                    encoding="utf-8"
                ).strip()
        return self._system_prompt

    async def send(self, text: str) -> str:
        """Send *text* as a single user turn and return the reply text.

        Raises:
            anthropic.APIError: On any API or transport failure.
        """
        response = await self._client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            system=self._load_system_prompt(),
            messages=[{"role": "user", "content": text}],
        )
        self._calls += 1
        usage = getattr(response, "usage", None)
        if usage is not None:
            self._total_input_tokens += usage.input_tokens
            self._total_output_tokens += usage.output_tokens

        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    def get_usage_stats(self) -> Dict[str, Any]:
        return {
            "calls": self._calls,
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }

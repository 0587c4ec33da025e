"""Conversation compaction -- periodic history summarization.

Every K-th prompt entry (prompt messages plus the new response) the
working prompt is collapsed into the system prompt followed by one
summary message. Only the prompt projection shrinks: the History Store
keeps every original message, and the summary itself goes to the
compaction log so the projection can be rebuilt.

This module is independent of SessionEngine to avoid circular imports
and keep engine.py focused on orchestration.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from colloquy.config import Settings
from colloquy.errors import CompactionFailed
from colloquy.session.models import Completion, Prompt, PromptMessage

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts (co-located with compaction logic)
# ------------------------------------------------------------------

SUMMARIZER_SYSTEM_PROMPT = """\
You are a conversation summarizer. Compress the conversation below into a
summary that lets the assistant continue it without the original messages.

Keep:
- The user's goal and every question that is still open
- Clarifying questions already asked and the user's answers, in order
- Facts, names, numbers and decisions the user stated
- Data returned by tools that later turns may rely on

Write plain prose or short bullet lists. Output ONLY the summary."""

PRIOR_SUMMARY_PREFIX = "Prior summary, use as prior context:"

_SUMMARY_TEMPERATURE = 0.2


# ------------------------------------------------------------------
# Protocol for completion injection
# ------------------------------------------------------------------


class Completer(Protocol):
    """Type-safe callable for ModelClient.complete injection."""

    async def __call__(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion: ...


# ------------------------------------------------------------------
# Conversation Compactor
# ------------------------------------------------------------------


class ConversationCompactor:
    """Decides when to compact and produces the compacted prompt."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def period(self) -> int:
        return self._settings.compaction_period

    def should_compact(self, prompt: Prompt, new_response_count: int = 1) -> bool:
        """Check whether this turn compacts instead of appending.

        prompt must already contain the new user message. Never fires
        while fewer than two user turns precede the new one, so an empty
        or nearly empty history cannot trigger on the modulus alone.
        """
        prior_user_turns = prompt.user_turn_count - 1
        if prior_user_turns < 2:
            return False
        total = len(prompt.messages) + new_response_count
        return total % self.period == 0

    def build_summary_prompt(self, prompt: Prompt) -> list[PromptMessage]:
        """Summarizer instruction, prior summary if any, then the turns."""
        messages = [PromptMessage(role="system", content=SUMMARIZER_SYSTEM_PROMPT)]
        if prompt.generation > 0 and prompt.summary is not None:
            messages.append(
                PromptMessage(
                    role="system",
                    content=f"{PRIOR_SUMMARY_PREFIX}\n\n{prompt.summary}",
                )
            )
        messages.append(
            PromptMessage(role="user", content=self.serialize_turns(prompt.turns))
        )
        return messages

    async def compact(self, prompt: Prompt, complete: Completer) -> Prompt:
        """Summarize prompt.turns and return system prompt + summary.

        Raises CompactionFailed on any summarizer error or empty output;
        the caller must not apply the turn in that case.
        """
        start_time = time.monotonic()
        request = [m.to_dict() for m in self.build_summary_prompt(prompt)]
        try:
            completion = await complete(
                model=self._settings.compaction_model,
                messages=request,
                temperature=_SUMMARY_TEMPERATURE,
            )
        except Exception as e:
            logger.error("Compaction summarizer call failed: %s", e)
            raise CompactionFailed(f"Summarization failed: {e}") from e

        summary = completion.text.strip()
        if not summary:
            raise CompactionFailed("Summarization returned no text")

        compacted = Prompt.build(
            prompt.system_prompt,
            summary=summary,
            generation=prompt.generation + 1,
        )
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compacted prompt: %d messages -> %d (%d chars, %d ms, generation #%d)",
            len(prompt.messages),
            len(compacted.messages),
            len(summary),
            duration_ms,
            compacted.generation,
        )
        return compacted

    @staticmethod
    def serialize_turns(turns: tuple[PromptMessage, ...] | list[PromptMessage]) -> str:
        """Serialize non-system messages as "<Role>: <content>" lines."""
        return "\n".join(
            f"{m.role.capitalize()}: {m.content}" for m in turns if m.role != "system"
        )

"""Shared value types for the session layer.

Extracted from engine.py to avoid circular imports with compaction.py and
prompt_cache.py. Prompt values are immutable: the cache hands the same
object to every reader, so any change goes through a new Prompt and an
explicit PromptCache.put().
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

SUMMARY_MARKER = "[Conversation summary]"


@dataclass(frozen=True)
class PromptMessage:
    """A single role-tagged message in a prompt."""

    role: str  # "system", "user" or "assistant"
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Prompt:
    """Model-ready projection of a chat.

    messages[0] is always the system prompt. When generation > 0 the chat
    has been compacted and messages[1] is the summary system message.
    """

    messages: tuple[PromptMessage, ...]
    generation: int = 0
    summary: str | None = None

    @classmethod
    def build(
        cls,
        system_prompt: str,
        turns: list[PromptMessage] | tuple[PromptMessage, ...] = (),
        summary: str | None = None,
        generation: int = 0,
    ) -> Prompt:
        head = [PromptMessage(role="system", content=system_prompt)]
        if summary is not None:
            head.append(summary_message(summary))
        return cls(messages=tuple(head) + tuple(turns), generation=generation, summary=summary)

    @property
    def system_prompt(self) -> str:
        return self.messages[0].content

    @property
    def header_size(self) -> int:
        """System prompt plus summary message, if any."""
        return 2 if self.summary is not None else 1

    @property
    def turns(self) -> tuple[PromptMessage, ...]:
        """Messages accumulated since the last compaction."""
        return self.messages[self.header_size:]

    @property
    def user_turn_count(self) -> int:
        return sum(1 for m in self.turns if m.role == "user")

    def append(self, *messages: PromptMessage) -> Prompt:
        return replace(self, messages=self.messages + tuple(messages))

    def to_payload(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self.messages]


def summary_message(summary: str) -> PromptMessage:
    """The system message that carries a compaction summary."""
    return PromptMessage(role="system", content=f"{SUMMARY_MARKER}\n\n{summary}")


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the model transport."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_api(cls, usage: dict[str, Any] | None) -> TokenUsage:
        if not usage:
            return cls()
        input_tokens = int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or usage.get("output_tokens") or 0)
        total = int(usage.get("total_tokens") or input_tokens + output_tokens)
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Completion:
    """Parsed response from the chat completions API."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"

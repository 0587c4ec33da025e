"""Error taxonomy for turn processing.

Callers distinguish retryable kinds (transport trouble, a failed compaction)
from non-retryable ones (missing chat, a model breaking the question
protocol) via the ``retryable`` flag.
"""

from __future__ import annotations


class ColloquyError(Exception):
    """Base class for engine errors surfaced to callers."""

    retryable: bool = False


class ChatNotFound(ColloquyError):
    """No History Store record for the (agent_id, chat_id) key."""

    def __init__(self, agent_id: str, chat_id: str) -> None:
        super().__init__(f"Chat {chat_id!r} not found for agent {agent_id!r}")
        self.agent_id = agent_id
        self.chat_id = chat_id


class ProtocolViolation(ColloquyError):
    """A classified response broke the clarify-then-answer invariants."""


class CompactionFailed(ColloquyError):
    """The summarization call failed; the turn was not applied."""

    retryable = True


class TransportError(ColloquyError):
    """Model completion or History Store call failed for infrastructure reasons."""

    retryable = True


class DeadlineExceeded(TransportError):
    """The caller-supplied deadline expired before the turn completed."""

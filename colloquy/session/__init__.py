"""Session engine: prompt cache, compaction, protocol and turn processing."""

from colloquy.session.engine import SessionEngine, TurnOutcome
from colloquy.session.prompt_cache import PromptCache

__all__ = ["PromptCache", "SessionEngine", "TurnOutcome"]

"""Prompt Cache -- read-through, write-invalidate projection of chat history.

The cache never writes to the History Store. On a miss it replays the
chat's messages after the latest compaction boundary, prefixed by the
agent's system prompt and, when the chat was compacted, the summary. A
cached entry is therefore always reproducible from the store plus the
compaction log.

Turn processing is serialized per (agent_id, chat_id) through lock();
different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from colloquy.errors import ChatNotFound
from colloquy.session.models import Prompt, PromptMessage
from colloquy.storage.history import HistoryStore

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]
SystemPromptResolver = Callable[[str], str]

DEFAULT_MAX_ENTRIES = 1024


class KeyedLocks:
    """Lock table handing out one asyncio.Lock per key.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the table does not grow with the number of chats seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._refs: dict[CacheKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: CacheKey) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class PromptCache:
    """In-memory prompt projections keyed by (agent_id, chat_id).

    Entries are kept in least-recently-used order and the oldest is evicted
    once max_entries is exceeded. A miss fills the entry from the store, but
    only if no put() or invalidate() for the same key landed while the
    rebuild was in flight; otherwise the rebuilt prompt is returned to the
    caller and left out of the cache.
    """

    def __init__(
        self,
        store: HistoryStore,
        system_prompt: SystemPromptResolver,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._store = store
        self._system_prompt = system_prompt
        self._max_entries = max_entries
        self._guard = threading.Lock()
        self._entries: OrderedDict[CacheKey, Prompt] = OrderedDict()
        self._fills: dict[CacheKey, object] = {}
        self._locks = KeyedLocks()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    async def get(self, agent_id: str, chat_id: str) -> Prompt:
        """Return the cached prompt, rebuilding it from the store on a miss."""
        key = (agent_id, chat_id)
        with self._guard:
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                return cached
            token = object()
            self._fills[key] = token

        try:
            prompt = await self.rebuild(agent_id, chat_id)
        except BaseException:
            with self._guard:
                if self._fills.get(key) is token:
                    del self._fills[key]
            raise

        with self._guard:
            if self._fills.get(key) is token:
                del self._fills[key]
                self._store_entry(key, prompt)
                return prompt
        logger.debug("Discarded stale rebuild for %s/%s", agent_id, chat_id)
        return prompt

    async def rebuild(self, agent_id: str, chat_id: str) -> Prompt:
        """Build the prompt from the History Store without touching the cache."""
        chat = await self._store.get_chat(agent_id, chat_id)
        if chat is None:
            raise ChatNotFound(agent_id, chat_id)

        compaction = await self._store.latest_compaction(agent_id, chat_id)
        after_id = compaction.through_message_id if compaction else None
        history = await self._store.list_messages(chat_id, after_id=after_id)
        turns = [
            PromptMessage(role=m.role, content=m.content)
            for m in history
            if m.role != "system"
        ]
        prompt = Prompt.build(
            self._system_prompt(agent_id),
            turns,
            summary=compaction.summary if compaction else None,
            generation=compaction.generation if compaction else 0,
        )
        logger.debug(
            "Rebuilt prompt for %s/%s: %d message(s), generation %d",
            agent_id, chat_id, len(prompt.messages), prompt.generation,
        )
        return prompt

    def put(self, agent_id: str, chat_id: str, prompt: Prompt) -> None:
        """Overwrite the cached entry."""
        key = (agent_id, chat_id)
        with self._guard:
            self._fills.pop(key, None)
            self._store_entry(key, prompt)

    def invalidate(self, agent_id: str, chat_id: str) -> None:
        """Drop the cached entry, if any. Idempotent."""
        key = (agent_id, chat_id)
        with self._guard:
            self._fills.pop(key, None)
            self._entries.pop(key, None)

    def contains(self, agent_id: str, chat_id: str) -> bool:
        with self._guard:
            return (agent_id, chat_id) in self._entries

    def lock(self, agent_id: str, chat_id: str):
        """Async context manager serializing turns for one key."""
        return self._locks.hold((agent_id, chat_id))

    def _store_entry(self, key: CacheKey, prompt: Prompt) -> None:
        # Caller holds self._guard.
        self._entries[key] = prompt
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted prompt for %s/%s", *evicted)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

"""Tests for PromptCache -- read-through rebuild, invalidation, per-key locks."""

import asyncio

import pytest

from colloquy.errors import ChatNotFound
from colloquy.session.compaction import ConversationCompactor
from colloquy.session.engine import SessionEngine
from colloquy.session.models import SUMMARY_MARKER, Prompt, PromptMessage
from colloquy.session.prompt_cache import PromptCache
from colloquy.storage.history import HistoryStore
from colloquy.storage.schemas import MessageInput

from tests.conftest import SYSTEM_PROMPT, ScriptedModel, answer


class HeldStore(HistoryStore):
    """HistoryStore whose next list_messages parks after reading."""

    def __init__(self, db) -> None:
        super().__init__(db)
        self.hold_next = False
        self.parked = asyncio.Event()
        self.release = asyncio.Event()

    async def list_messages(self, chat_id, after_id=None):
        messages = await super().list_messages(chat_id, after_id=after_id)
        if self.hold_next:
            self.hold_next = False
            self.parked.set()
            await self.release.wait()
        return messages


def _msgs(*pairs):
    return [MessageInput(role=role, content=content) for role, content in pairs]


class TestRebuild:
    async def test_empty_chat_is_system_prompt_only(self, store, cache):
        await store.create_chat("alice", "c1")
        prompt = await cache.get("alice", "c1")
        assert prompt.messages == (PromptMessage(role="system", content=SYSTEM_PROMPT),)
        assert prompt.generation == 0

    async def test_rebuild_equals_appended_messages(self, store, cache):
        await store.create_chat("alice", "c1")
        appended = [("user", "hi"), ("assistant", "hello"), ("user", ""), ("assistant", "q1")]
        for role, content in appended:
            await store.append_message("alice", "c1", MessageInput(role=role, content=content))

        prompt = await cache.get("alice", "c1")
        assert prompt.messages[0].role == "system"
        assert [(m.role, m.content) for m in prompt.turns] == appended

    async def test_missing_chat_raises(self, cache):
        with pytest.raises(ChatNotFound):
            await cache.get("alice", "missing")
        assert not cache.contains("alice", "missing")

    async def test_other_agents_chat_raises(self, store, cache):
        await store.create_chat("alice", "c1")
        with pytest.raises(ChatNotFound):
            await cache.get("bob", "c1")

    async def test_rebuild_starts_after_latest_compaction(self, store, cache):
        await store.create_chat("alice", "c1")
        await store.append_messages(
            "alice", "c1", _msgs(("user", "old"), ("assistant", "older")), compaction_summary="S1"
        )
        await store.append_messages("alice", "c1", _msgs(("user", "new"), ("assistant", "newer")))

        prompt = await cache.get("alice", "c1")
        assert prompt.generation == 1
        assert prompt.summary == "S1"
        assert prompt.messages[1].role == "system"
        assert SUMMARY_MARKER in prompt.messages[1].content
        assert [m.content for m in prompt.turns] == ["new", "newer"]

    async def test_rebuild_does_not_write(self, store, cache):
        await store.create_chat("alice", "c1")
        await cache.rebuild("alice", "c1")
        await cache.get("alice", "c1")
        assert await store.list_messages("c1") == []


class TestReadThrough:
    async def test_get_populates_cache(self, store, cache):
        await store.create_chat("alice", "c1")
        assert not cache.contains("alice", "c1")
        first = await cache.get("alice", "c1")
        assert cache.contains("alice", "c1")
        assert await cache.get("alice", "c1") is first

    async def test_cached_entry_served_until_invalidated(self, store, cache):
        await store.create_chat("alice", "c1")
        await cache.get("alice", "c1")
        await store.append_message("alice", "c1", MessageInput(role="user", content="hi"))

        assert len((await cache.get("alice", "c1")).turns) == 0
        cache.invalidate("alice", "c1")
        assert len((await cache.get("alice", "c1")).turns) == 1

    async def test_put_overwrites(self, store, cache):
        await store.create_chat("alice", "c1")
        await cache.get("alice", "c1")
        replacement = Prompt.build("other", [PromptMessage(role="user", content="x")])
        cache.put("alice", "c1", replacement)
        assert await cache.get("alice", "c1") is replacement

    def test_invalidate_is_idempotent(self, cache):
        cache.put("alice", "c1", Prompt.build("sys"))
        cache.invalidate("alice", "c1")
        cache.invalidate("alice", "c1")
        cache.invalidate("nobody", "nothing")
        assert not cache.contains("alice", "c1")
        assert len(cache) == 0

    def test_keys_are_independent(self, cache):
        cache.put("alice", "c1", Prompt.build("a"))
        cache.put("bob", "c1", Prompt.build("b"))
        cache.invalidate("alice", "c1")
        assert cache.contains("bob", "c1")


class TestLocks:
    async def test_same_key_is_serialized(self, cache):
        order = []
        release = asyncio.Event()

        async def first():
            async with cache.lock("alice", "c1"):
                order.append("first-in")
                await release.wait()
                order.append("first-out")

        async def second():
            async with cache.lock("alice", "c1"):
                order.append("second-in")

        t1 = asyncio.create_task(first())
        await asyncio.sleep(0)
        t2 = asyncio.create_task(second())
        await asyncio.sleep(0.01)
        assert order == ["first-in"]

        release.set()
        await asyncio.gather(t1, t2)
        assert order == ["first-in", "first-out", "second-in"]

    async def test_different_keys_do_not_wait(self, cache):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def holder():
            async with cache.lock("alice", "c1"):
                entered.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await entered.wait()
        async with asyncio.timeout(1):
            async with cache.lock("alice", "c2"):
                pass
            async with cache.lock("bob", "c1"):
                pass
        release.set()
        await task

    async def test_lock_entries_released(self, cache):
        async with cache.lock("alice", "c1"):
            pass
        assert len(cache._locks) == 0


class TestStaleFill:
    async def _start_held_get(self, held):
        held.hold_next = True
        cache = PromptCache(held, lambda agent_id: SYSTEM_PROMPT)
        reader = asyncio.create_task(cache.get("alice", "c1"))
        await held.parked.wait()
        return cache, reader

    async def test_put_during_rebuild_wins(self, db):
        held = HeldStore(db)
        await held.create_chat("alice", "c1")
        cache, reader = await self._start_held_get(held)

        await held.append_message("alice", "c1", MessageInput(role="user", content="hi"))
        cache.put("alice", "c1", await cache.rebuild("alice", "c1"))
        held.release.set()

        stale = await reader
        assert stale.turns == ()
        assert await cache.get("alice", "c1") == await cache.rebuild("alice", "c1")
        assert len((await cache.get("alice", "c1")).turns) == 1

    async def test_invalidate_during_rebuild_discards_fill(self, db):
        held = HeldStore(db)
        await held.create_chat("alice", "c1")
        cache, reader = await self._start_held_get(held)

        cache.invalidate("alice", "c1")
        held.release.set()
        await reader
        assert not cache.contains("alice", "c1")

    async def test_uncontended_fill_is_cached(self, db):
        held = HeldStore(db)
        await held.create_chat("alice", "c1")
        cache, reader = await self._start_held_get(held)

        held.release.set()
        await reader
        assert cache.contains("alice", "c1")

    async def test_turn_during_rebuild_leaves_fresh_entry(self, db, settings):
        held = HeldStore(db)
        await held.create_chat("alice", "c1")
        cache, reader = await self._start_held_get(held)
        model = ScriptedModel(answer("Use a static site."))
        engine = SessionEngine(held, cache, ConversationCompactor(settings), model, settings)

        await engine.run_turn("alice", "c1", "hello")
        held.release.set()
        await reader

        assert await cache.get("alice", "c1") == await cache.rebuild("alice", "c1")
        assert [m.content for m in (await cache.get("alice", "c1")).turns] == [
            "hello", answer("Use a static site."),
        ]


class TestBound:
    async def test_oldest_entry_evicted(self, store):
        cache = PromptCache(store, lambda agent_id: SYSTEM_PROMPT, max_entries=2)
        for chat_id in ("c1", "c2", "c3"):
            await store.create_chat("alice", chat_id)
            await cache.get("alice", chat_id)

        assert len(cache) == 2
        assert not cache.contains("alice", "c1")
        assert cache.contains("alice", "c3")

    async def test_hit_refreshes_recency(self, store):
        cache = PromptCache(store, lambda agent_id: SYSTEM_PROMPT, max_entries=2)
        for chat_id in ("c1", "c2"):
            await store.create_chat("alice", chat_id)
            await cache.get("alice", chat_id)
        await cache.get("alice", "c1")

        cache.put("alice", "c3", Prompt.build("sys"))
        assert cache.contains("alice", "c1")
        assert not cache.contains("alice", "c2")

    async def test_evicted_entry_rebuilds_from_store(self, store):
        cache = PromptCache(store, lambda agent_id: SYSTEM_PROMPT, max_entries=1)
        await store.create_chat("alice", "c1")
        await store.append_message("alice", "c1", MessageInput(role="user", content="hi"))
        await cache.get("alice", "c1")
        cache.put("alice", "c2", Prompt.build("sys"))

        assert not cache.contains("alice", "c1")
        assert [m.content for m in (await cache.get("alice", "c1")).turns] == ["hi"]

    def test_rejects_non_positive_bound(self, store):
        with pytest.raises(ValueError):
            PromptCache(store, lambda agent_id: SYSTEM_PROMPT, max_entries=0)

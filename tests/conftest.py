"""Test fixtures using a throwaway SQLite file per test."""

import asyncio
import json

import pytest
import pytest_asyncio

from colloquy.config import Settings
from colloquy.session.compaction import ConversationCompactor
from colloquy.session.engine import SessionEngine
from colloquy.session.models import Completion
from colloquy.session.prompt_cache import PromptCache
from colloquy.storage.database import Database
from colloquy.storage.history import HistoryStore

SYSTEM_PROMPT = "You are a test assistant."


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedModel:
    """Completion collaborator that replays a fixed script.

    Each script entry is a reply text, a Completion, or an exception to
    raise. Every call is recorded with a snapshot of its messages.
    """

    def __init__(self, *replies, delay: float = 0.0) -> None:
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[dict] = []

    def extend(self, *replies) -> None:
        self.replies.extend(replies)

    async def __call__(self, model, messages, temperature, tools=None):
        self.calls.append({
            "model": model,
            "messages": [dict(m) for m in messages],
            "temperature": temperature,
            "tools": tools,
        })
        if not self.replies:
            raise AssertionError("ScriptedModel ran out of replies")
        reply = self.replies.pop(0)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, Completion):
            return reply
        return Completion(text=reply, model=model)


def required_questions(n: int) -> str:
    return json.dumps({
        "type": "required_questions",
        "questions": [
            {"id": i, "question": f"Question {i}?", "category": "goals"}
            for i in range(1, n + 1)
        ],
        "totalQuestions": n,
        "currentQuestionIndex": 0,
    })


def question(question_id: int, total: int) -> str:
    return json.dumps({
        "type": "question",
        "questionId": question_id,
        "question": f"Question {question_id}?",
        "category": "goals",
        "remainingQuestions": total - question_id,
    })


def answer(text: str) -> str:
    return json.dumps({"type": "answer", "answer": text})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        "SCHEDULED_TASK_ENABLED": False,
        "OPENAI_API_KEY": "test-key",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> HistoryStore:
    return HistoryStore(db)


@pytest.fixture
def cache(store) -> PromptCache:
    return PromptCache(store, lambda agent_id: SYSTEM_PROMPT)


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def engine(store, cache, model, settings) -> SessionEngine:
    return SessionEngine(store, cache, ConversationCompactor(settings), model, settings)

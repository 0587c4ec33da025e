"""History Store -- durable, append-only per-chat message log.

Backed by the async SQLAlchemy engine in ``Database``. Every public method
opens its own session; infrastructure failures surface as TransportError
so the engine can tell them apart from missing records.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from colloquy.errors import ChatNotFound, TransportError
from colloquy.storage.database import Database
from colloquy.storage.models import Agent, Chat, Compaction, Message
from colloquy.storage.schemas import (
    ChatDetail,
    CompactionDetail,
    MessageDetail,
    MessageInput,
)

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class HistoryStore:
    """Agents, chats, messages and the compaction log."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def get_or_create_agent(self, agent_id: str) -> datetime:
        """Create the agent on first reference. Returns its created_at."""
        try:
            async with self._db.session() as session:
                agent = await session.get(Agent, agent_id)
                if agent is None:
                    agent = Agent(id=agent_id, created_at=datetime.now(UTC))
                    session.add(agent)
                    try:
                        await session.commit()
                        logger.info("Created agent %s", agent_id)
                    except IntegrityError:
                        # Lost a creation race; the other writer's row wins
                        await session.rollback()
                        agent = await session.get(Agent, agent_id)
                return _utc(agent.created_at)
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def create_chat(self, agent_id: str, chat_id: str | None = None) -> ChatDetail:
        """Create a chat for agent_id. Raises ValueError on a duplicate id."""
        await self.get_or_create_agent(agent_id)
        chat_id = chat_id or str(uuid.uuid4())
        now = datetime.now(UTC)
        try:
            async with self._db.session() as session:
                chat = Chat(id=chat_id, agent_id=agent_id, created_at=now, updated_at=now)
                session.add(chat)
                try:
                    await session.commit()
                except IntegrityError as e:
                    raise ValueError(f"Chat {chat_id!r} already exists") from e
                logger.info("Created chat %s for agent %s", chat_id, agent_id)
                return self._chat_detail(chat)
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    async def ensure_chat(self, agent_id: str, chat_id: str) -> ChatDetail:
        """Return the chat with this fixed id, creating agent and chat if absent."""
        existing = await self._load_chat(chat_id)
        if existing is not None:
            if existing.agent_id != agent_id:
                raise ValueError(
                    f"Chat {chat_id!r} belongs to agent {existing.agent_id!r}, not {agent_id!r}"
                )
            return existing
        try:
            return await self.create_chat(agent_id, chat_id)
        except ValueError:
            # Created concurrently between the lookup and the insert
            existing = await self._load_chat(chat_id)
            if existing is None or existing.agent_id != agent_id:
                raise
            return existing

    async def get_chat(self, agent_id: str, chat_id: str) -> ChatDetail | None:
        """Get a chat by key. A chat owned by another agent counts as missing."""
        chat = await self._load_chat(chat_id)
        if chat is None or chat.agent_id != agent_id:
            return None
        return chat

    async def list_chats(self, agent_id: str) -> list[ChatDetail]:
        """List an agent's chats, most recently updated first."""
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(Chat)
                    .where(Chat.agent_id == agent_id)
                    .order_by(Chat.updated_at.desc(), Chat.id)
                )
                return [self._chat_detail(c) for c in result.scalars().all()]
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    async def _load_chat(self, chat_id: str) -> ChatDetail | None:
        try:
            async with self._db.session() as session:
                chat = await session.get(Chat, chat_id)
                return self._chat_detail(chat) if chat is not None else None
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self, agent_id: str, chat_id: str, message: MessageInput
    ) -> datetime:
        """Append one message. Returns its committed created_at."""
        records = await self.append_messages(agent_id, chat_id, [message])
        return records[0].created_at

    async def append_messages(
        self,
        agent_id: str,
        chat_id: str,
        messages: Sequence[MessageInput],
        compaction_summary: str | None = None,
    ) -> list[MessageDetail]:
        """Append messages in one transaction.

        created_at is strictly increasing per chat even when the clock
        stalls. When compaction_summary is given, a compaction log entry
        covering everything up to the last appended message is written in
        the same transaction.
        """
        if not messages:
            raise ValueError("append_messages needs at least one message")
        try:
            async with self._db.session() as session:
                chat = await session.get(Chat, chat_id)
                if chat is None or chat.agent_id != agent_id:
                    raise ChatNotFound(agent_id, chat_id)

                last_at = await session.scalar(
                    select(Message.created_at)
                    .where(Message.chat_id == chat_id)
                    .order_by(Message.id.desc())
                    .limit(1)
                )
                stamp = datetime.now(UTC)
                if last_at is not None and stamp <= _utc(last_at):
                    stamp = _utc(last_at) + timedelta(microseconds=1)

                rows: list[Message] = []
                for msg in messages:
                    row = Message(
                        chat_id=chat_id,
                        agent_id=agent_id,
                        role=msg.role,
                        content=msg.content,
                        created_at=stamp,
                    )
                    session.add(row)
                    rows.append(row)
                    stamp += timedelta(microseconds=1)
                await session.flush()

                chat.updated_at = rows[-1].created_at

                if compaction_summary is not None:
                    latest = await session.scalar(
                        select(Compaction.generation)
                        .where(Compaction.chat_id == chat_id)
                        .order_by(Compaction.generation.desc())
                        .limit(1)
                    )
                    session.add(
                        Compaction(
                            agent_id=agent_id,
                            chat_id=chat_id,
                            generation=(latest or 0) + 1,
                            summary=compaction_summary,
                            through_message_id=rows[-1].id,
                            created_at=rows[-1].created_at,
                        )
                    )

                await session.commit()
                logger.debug(
                    "Appended %d message(s) to chat %s%s",
                    len(rows), chat_id,
                    " with compaction" if compaction_summary is not None else "",
                )
                return [self._message_detail(r) for r in rows]
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    async def list_messages(
        self, chat_id: str, after_id: int | None = None
    ) -> list[MessageDetail]:
        """All messages of a chat in creation order, optionally after an id."""
        try:
            async with self._db.session() as session:
                q = select(Message).where(Message.chat_id == chat_id)
                if after_id is not None:
                    q = q.where(Message.id > after_id)
                result = await session.execute(q.order_by(Message.created_at, Message.id))
                return [self._message_detail(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Compaction log
    # ------------------------------------------------------------------

    async def latest_compaction(self, agent_id: str, chat_id: str) -> CompactionDetail | None:
        """Most recent compaction for the chat, or None if never compacted."""
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(Compaction)
                    .where(Compaction.agent_id == agent_id)
                    .where(Compaction.chat_id == chat_id)
                    .order_by(Compaction.generation.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                return self._compaction_detail(row) if row is not None else None
        except SQLAlchemyError as e:
            raise TransportError(f"History store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    @staticmethod
    def _chat_detail(chat: Chat) -> ChatDetail:
        return ChatDetail(
            id=chat.id,
            agent_id=chat.agent_id,
            created_at=_utc(chat.created_at),
            updated_at=_utc(chat.updated_at),
        )

    @staticmethod
    def _message_detail(message: Message) -> MessageDetail:
        return MessageDetail(
            id=message.id,
            chat_id=message.chat_id,
            agent_id=message.agent_id,
            role=message.role,
            content=message.content,
            created_at=_utc(message.created_at),
        )

    @staticmethod
    def _compaction_detail(row: Compaction) -> CompactionDetail:
        return CompactionDetail(
            id=row.id,
            agent_id=row.agent_id,
            chat_id=row.chat_id,
            generation=row.generation,
            summary=row.summary,
            through_message_id=row.through_message_id,
            created_at=_utc(row.created_at),
        )

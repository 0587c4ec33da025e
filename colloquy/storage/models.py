"""SQLAlchemy ORM models for the History Store.

Messages are append-only: nothing in the codebase updates or deletes a
row of ``messages``. The compaction log lives beside them so a cached
prompt can always be rebuilt from these two tables.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Single declarative base for the store."""

    pass


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    chats: Mapped[list["Chat"]] = relationship(back_populates="agent")


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (Index("idx_chats_agent_id", "agent_id"),)

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    agent_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    agent: Mapped["Agent"] = relationship(back_populates="chats")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_chat_id", "chat_id", "id"),
        Index("idx_messages_agent_id", "agent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Compaction(Base):
    __tablename__ = "compactions"
    __table_args__ = (
        UniqueConstraint("chat_id", "generation", name="uq_compactions_chat_generation"),
        Index("idx_compactions_chat_id", "chat_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    chat_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    # Last message folded into this summary; later messages are replayed verbatim
    through_message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

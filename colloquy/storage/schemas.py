"""Pydantic DTOs returned by the History Store.

Callers never see ORM instances; these detached records are safe to hold
across sessions and tasks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

Role = Literal["system", "user", "assistant"]


class ChatDetail(BaseModel):
    id: str
    agent_id: str
    created_at: datetime
    updated_at: datetime


class MessageInput(BaseModel):
    """A message about to be appended."""

    role: Role
    content: str


class MessageDetail(BaseModel):
    id: int
    chat_id: str
    agent_id: str
    role: Role
    content: str
    created_at: datetime


class CompactionDetail(BaseModel):
    id: int
    agent_id: str
    chat_id: str
    generation: int
    summary: str
    through_message_id: int
    created_at: datetime

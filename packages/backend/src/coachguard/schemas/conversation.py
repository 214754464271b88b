"""Pydantic schemas for conversations and messages."""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from coachguard.config import settings


# ─── Conversations ──────────────────────────────────────

class ConversationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    selected_chapters: list[str] = Field(default_factory=list)


class ConversationUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    selected_chapters: Optional[list[str]] = None
    is_archived: Optional[bool] = None
    is_starred: Optional[bool] = None

    model_config = {"extra": "forbid"}


class ConversationRead(BaseModel):
    id: uuid.UUID
    title: str
    selected_chapters: list[str]
    is_archived: bool
    is_starred: bool
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    model_config = {"from_attributes": True}


# ─── Messages ───────────────────────────────────────────

class MessageCreate(BaseModel):
    role: Literal["user", "assistant"] = "user"
    content: str = Field(..., min_length=1, max_length=settings.message_max_length)
    followups: list[str] = Field(default_factory=list)
    is_complete: bool = True
    token_count: Optional[int] = Field(None, ge=0)


class MessageRead(BaseModel):
    id: uuid.UUID
    conversation_id: uuid.UUID
    role: str
    content: str
    followups: list[str]
    is_complete: bool
    token_count: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}

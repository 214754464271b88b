"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic migrations mirror these definitions.

Key concepts:
- UUID primary keys (identity ids come from the credential provider)
- Every per-user table carries owner_id — the ownership policy compares
  it against the session's identity id before any read or write
- Generic Uuid/JSON column types so the same models run on PostgreSQL
  in production and SQLite in tests (JSON becomes JSONB on PostgreSQL)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


JSONType = JSON().with_variant(JSONB(), "postgresql")


# ══════════════════════════════════════════════════════════════
# Profiles: the platform's own per-identity record
# ══════════════════════════════════════════════════════════════


class Profile(Base):
    """One row per identity: display names and the role flag.

    Learn: id IS the identity id issued by the credential provider — there
    is no separate surrogate key, so "exactly one profile per identity" is
    enforced by the primary key itself. Rows are created lazily by
    services.provisioning.ensure_profile and never deleted except by the
    cascading identity purge.
    """

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    first_name: Mapped[str] = mapped_column(
        String(50), nullable=False, default="", server_default=""
    )
    last_name: Mapped[str] = mapped_column(
        String(50), nullable=False, default="", server_default=""
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default="user", server_default="user"
    )  # user, admin
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


# ══════════════════════════════════════════════════════════════
# Owned resources: conversations, messages, progress
# ══════════════════════════════════════════════════════════════


class Conversation(Base):
    """A coaching chat thread. Private to its owner."""

    __tablename__ = "conversations"
    __table_args__ = (
        Index("idx_conversations_owner_updated", "owner_id", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    selected_chapters: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """A single chat message.

    Learn: owner_id is denormalized from the parent conversation so the
    ownership check never needs a join. A message whose owner_id disagrees
    with its conversation's owner is an orphan — see the
    prune_orphaned_messages maintenance operation.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # user, assistant
    content: Mapped[str] = mapped_column(Text, nullable=False)
    followups: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    token_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class ProgressRecord(Base):
    """Chapter completion for one user. One row per (owner, chapter)."""

    __tablename__ = "progress_records"
    __table_args__ = (
        UniqueConstraint("owner_id", "chapter_id", name="uq_progress_owner_chapter"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chapter_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ══════════════════════════════════════════════════════════════
# Built-in credential provider storage
# ══════════════════════════════════════════════════════════════


class LocalIdentity(Base):
    """Identity record for the built-in credential provider.

    Learn: Only the local provider reads or writes this table. With the
    Supabase provider identities live upstream and this table stays empty.
    """

    __tablename__ = "identities"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class RevokedToken(Base):
    """Denylist of token ids (jti) revoked by sign-out or rotation."""

    __tablename__ = "revoked_tokens"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    identity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

"""Conversation service — coaching chats and their messages.

Learn: Every method runs on behalf of a Principal and every row it touches
goes through ownership.enforce() first. Two layers, on purpose:

1. SQL scoping — list queries filter on owner_id, so another user's rows
   never even leave the database.
2. Policy check — single-row lookups are fetched by id alone and then
   enforced, so a foreign id raises Forbidden (rendered as 404) instead of
   silently returning nothing.

Like the other services, this one flushes; the route commits.
"""

import uuid
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.db.models import Conversation, Message, utcnow
from coachguard.errors import NotFound
from coachguard.policy.ownership import Action, enforce
from coachguard.policy.roles import Principal


class ConversationService:
    """Business logic for conversations and messages."""

    def __init__(self, db: AsyncSession, principal: Principal):
        self.db = db
        self.principal = principal

    # ─── Conversations ──────────────────────────────────

    async def list_conversations(self, include_archived: bool = False) -> list[Conversation]:
        q = select(Conversation).where(
            Conversation.owner_id == self.principal.identity_id
        )
        if not include_archived:
            q = q.where(Conversation.is_archived.is_(False))
        q = q.order_by(Conversation.is_starred.desc(), Conversation.updated_at.desc())
        rows = list((await self.db.execute(q)).scalars().all())
        for row in rows:
            enforce(self.principal, row.owner_id, Action.READ, "conversation")
        return rows

    async def message_counts(self, conversation_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not conversation_ids:
            return {}
        result = await self.db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(
                Message.conversation_id.in_(conversation_ids),
                Message.owner_id == self.principal.identity_id,
            )
            .group_by(Message.conversation_id)
        )
        return {conv_id: count for conv_id, count in result.all()}

    async def create_conversation(
        self, title: str, selected_chapters: Optional[list[str]] = None
    ) -> Conversation:
        owner_id = self.principal.identity_id
        enforce(self.principal, owner_id, Action.CREATE, "conversation")
        conv = Conversation(
            owner_id=owner_id,
            title=title,
            selected_chapters=list(selected_chapters or []),
        )
        self.db.add(conv)
        await self.db.flush()
        return conv

    async def get_conversation(
        self, conversation_id: uuid.UUID, action: Action = Action.READ
    ) -> Conversation:
        conv = await self.db.get(Conversation, conversation_id)
        if conv is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        enforce(self.principal, conv.owner_id, action, "conversation")
        return conv

    async def update_conversation(
        self,
        conversation_id: uuid.UUID,
        title: Optional[str] = None,
        selected_chapters: Optional[list[str]] = None,
        is_archived: Optional[bool] = None,
        is_starred: Optional[bool] = None,
    ) -> Conversation:
        conv = await self.get_conversation(conversation_id, Action.UPDATE)
        if title is not None:
            conv.title = title
        if selected_chapters is not None:
            conv.selected_chapters = list(selected_chapters)
        if is_archived is not None:
            conv.is_archived = is_archived
        if is_starred is not None:
            conv.is_starred = is_starred
        await self.db.flush()
        return conv

    async def delete_conversation(self, conversation_id: uuid.UUID) -> None:
        conv = await self.get_conversation(conversation_id, Action.DELETE)
        # Messages go explicitly; SQLite doesn't enforce ON DELETE CASCADE
        # unless the foreign_keys pragma is on.
        await self.db.execute(
            delete(Message).where(Message.conversation_id == conv.id)
        )
        await self.db.delete(conv)
        await self.db.flush()

    # ─── Messages ───────────────────────────────────────

    async def list_messages(self, conversation_id: uuid.UUID) -> list[Message]:
        conv = await self.get_conversation(conversation_id, Action.READ)
        result = await self.db.execute(
            select(Message)
            .where(
                Message.conversation_id == conv.id,
                Message.owner_id == self.principal.identity_id,
            )
            .order_by(Message.created_at, Message.id)
        )
        rows = list(result.scalars().all())
        for row in rows:
            enforce(self.principal, row.owner_id, Action.READ, "message")
        return rows

    async def add_message(
        self,
        conversation_id: uuid.UUID,
        role: str,
        content: str,
        followups: Optional[list[str]] = None,
        is_complete: bool = True,
        token_count: Optional[int] = None,
    ) -> Message:
        conv = await self.get_conversation(conversation_id, Action.CREATE)
        now = utcnow()
        msg = Message(
            conversation_id=conv.id,
            owner_id=conv.owner_id,
            role=role,
            content=content,
            followups=list(followups or []),
            is_complete=is_complete,
            token_count=token_count,
            created_at=now,
        )
        self.db.add(msg)
        # Touch the conversation so it sorts to the top of the list
        conv.updated_at = now
        await self.db.flush()
        return msg

    async def delete_message(self, message_id: uuid.UUID) -> None:
        msg = await self.db.get(Message, message_id)
        if msg is None:
            raise NotFound(f"Message {message_id} not found")
        enforce(self.principal, msg.owner_id, Action.DELETE, "message")
        await self.db.delete(msg)
        await self.db.flush()

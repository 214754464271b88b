"""Conversation and message API routes.

Learn: Every route builds its service with the caller's principal, and
the service runs the ownership check on each row. Routes only handle
HTTP concerns and commit. A foreign id surfaces as 404 — see
api/errors.py.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import CurrentUser, get_current_user
from coachguard.db.engine import get_db
from coachguard.schemas.conversation import (
    ConversationCreate,
    ConversationRead,
    ConversationUpdate,
    MessageCreate,
    MessageRead,
)
from coachguard.services.conversation_service import ConversationService

router = APIRouter()


def _svc(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConversationService:
    return ConversationService(db, user.principal)


# ─── Conversations ──────────────────────────────────────

@router.get("/conversations", response_model=list[ConversationRead])
async def list_conversations(
    include_archived: bool = Query(False),
    svc: ConversationService = Depends(_svc),
):
    conversations = await svc.list_conversations(include_archived=include_archived)
    counts = await svc.message_counts([c.id for c in conversations])
    return [
        ConversationRead.model_validate(c).model_copy(
            update={"message_count": counts.get(c.id, 0)}
        )
        for c in conversations
    ]


@router.post("/conversations", response_model=ConversationRead, status_code=201)
async def create_conversation(
    body: ConversationCreate, svc: ConversationService = Depends(_svc)
):
    conv = await svc.create_conversation(
        title=body.title, selected_chapters=body.selected_chapters
    )
    await svc.db.commit()
    return conv


@router.get("/conversations/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: uuid.UUID, svc: ConversationService = Depends(_svc)
):
    conv = await svc.get_conversation(conversation_id)
    counts = await svc.message_counts([conv.id])
    return ConversationRead.model_validate(conv).model_copy(
        update={"message_count": counts.get(conv.id, 0)}
    )


@router.patch("/conversations/{conversation_id}", response_model=ConversationRead)
async def update_conversation(
    conversation_id: uuid.UUID,
    body: ConversationUpdate,
    svc: ConversationService = Depends(_svc),
):
    conv = await svc.update_conversation(
        conversation_id,
        title=body.title,
        selected_chapters=body.selected_chapters,
        is_archived=body.is_archived,
        is_starred=body.is_starred,
    )
    await svc.db.commit()
    return conv


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: uuid.UUID, svc: ConversationService = Depends(_svc)
):
    await svc.delete_conversation(conversation_id)
    await svc.db.commit()
    return {"deleted": True}


# ─── Messages ───────────────────────────────────────────

@router.get(
    "/conversations/{conversation_id}/messages", response_model=list[MessageRead]
)
async def list_messages(
    conversation_id: uuid.UUID, svc: ConversationService = Depends(_svc)
):
    return await svc.list_messages(conversation_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=201,
)
async def add_message(
    conversation_id: uuid.UUID,
    body: MessageCreate,
    svc: ConversationService = Depends(_svc),
):
    msg = await svc.add_message(
        conversation_id,
        role=body.role,
        content=body.content,
        followups=body.followups,
        is_complete=body.is_complete,
        token_count=body.token_count,
    )
    await svc.db.commit()
    return msg


@router.delete("/messages/{message_id}")
async def delete_message(message_id: uuid.UUID, svc: ConversationService = Depends(_svc)):
    await svc.delete_message(message_id)
    await svc.db.commit()
    return {"deleted": True}

"""Progress API routes — the caller's chapter completions."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import CurrentUser, get_current_user
from coachguard.db.engine import get_db
from coachguard.schemas.progress import ProgressMark, ProgressRead
from coachguard.services.progress_service import ProgressService

router = APIRouter(prefix="/progress")


def _svc(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ProgressService:
    return ProgressService(db, user.principal)


@router.get("", response_model=list[ProgressRead])
async def list_progress(svc: ProgressService = Depends(_svc)):
    return await svc.list_progress()


@router.post("", response_model=ProgressRead)
async def mark_progress(body: ProgressMark, svc: ProgressService = Depends(_svc)):
    """Mark a chapter complete (or not). Upserts on (caller, chapter)."""
    record = await svc.mark_complete(body.chapter_id, completed=body.completed)
    await svc.db.commit()
    return record


@router.delete("")
async def clear_progress(
    chapter_id: Optional[uuid.UUID] = Query(None),
    svc: ProgressService = Depends(_svc),
):
    deleted = await svc.clear(chapter_id)
    await svc.db.commit()
    return {"deleted": deleted}

"""Progress service — which chapters a user has completed.

Learn: One row per (owner, chapter), guaranteed by a unique constraint.
Marking a chapter twice — or from two tabs at once — must converge on
that single row, so mark_complete() is an upsert: update if the row is
there, otherwise insert inside a SAVEPOINT and fall back to the row the
concurrent writer created if the insert loses.
"""

import uuid
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.db.models import ProgressRecord, utcnow
from coachguard.policy.ownership import Action, enforce
from coachguard.policy.roles import Principal


class ProgressService:
    """Business logic for chapter progress."""

    def __init__(self, db: AsyncSession, principal: Principal):
        self.db = db
        self.principal = principal

    async def list_progress(self) -> list[ProgressRecord]:
        result = await self.db.execute(
            select(ProgressRecord)
            .where(ProgressRecord.owner_id == self.principal.identity_id)
            .order_by(ProgressRecord.completed_at, ProgressRecord.id)
        )
        rows = list(result.scalars().all())
        for row in rows:
            enforce(self.principal, row.owner_id, Action.READ, "progress")
        return rows

    async def mark_complete(
        self, chapter_id: uuid.UUID, completed: bool = True
    ) -> ProgressRecord:
        owner_id = self.principal.identity_id
        record = await self._find(owner_id, chapter_id)

        if record is None:
            enforce(self.principal, owner_id, Action.CREATE, "progress")
            record = ProgressRecord(
                owner_id=owner_id,
                chapter_id=chapter_id,
                completed=completed,
                completed_at=utcnow() if completed else None,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(record)
            except IntegrityError:
                record = await self._find(owner_id, chapter_id)
                if record is None:
                    raise
            else:
                return record

        enforce(self.principal, record.owner_id, Action.UPDATE, "progress")
        record.completed = completed
        record.completed_at = utcnow() if completed else None
        await self.db.flush()
        return record

    async def clear(self, chapter_id: Optional[uuid.UUID] = None) -> int:
        """Delete the caller's progress (one chapter, or all of it)."""
        owner_id = self.principal.identity_id
        enforce(self.principal, owner_id, Action.DELETE, "progress")
        stmt = delete(ProgressRecord).where(ProgressRecord.owner_id == owner_id)
        if chapter_id is not None:
            stmt = stmt.where(ProgressRecord.chapter_id == chapter_id)
        result = await self.db.execute(stmt)
        return result.rowcount

    async def _find(
        self, owner_id: uuid.UUID, chapter_id: uuid.UUID
    ) -> Optional[ProgressRecord]:
        result = await self.db.execute(
            select(ProgressRecord).where(
                ProgressRecord.owner_id == owner_id,
                ProgressRecord.chapter_id == chapter_id,
            )
        )
        return result.scalars().first()

"""Identity service — the maintenance operations that cross owner boundaries.

Learn: These are the only code paths allowed to touch rows the caller
doesn't own, and each one goes through the ownership policy with a
principal scoped to exactly one MaintenanceOperation:

    purge(identity)          PURGE_IDENTITY
        conversations, messages, progress, profile — then the identity
        itself at the credential provider
    prune_orphaned_messages  PRUNE_ORPHANED_MESSAGES
        messages whose owner_id no longer matches their conversation's
        (or whose conversation is gone)

Neither is reachable from an end-user route; the admin API and the CLI
are the callers. Local rows are committed before the upstream delete, so
a provider outage leaves a re-runnable purge rather than orphaned data.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.providers.base import CredentialProvider
from coachguard.db.models import Conversation, Message, ProgressRecord
from coachguard.policy.ownership import enforce, maintenance_principal
from coachguard.policy.roles import MaintenanceOperation, Principal
from coachguard.services.profile_store import ProfileStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class PurgeReport:
    identity_id: uuid.UUID
    conversations: int
    messages: int
    progress_records: int
    profile_deleted: bool


class IdentityService:
    """Cascading deletion and data hygiene."""

    def __init__(self, db: AsyncSession, provider: Optional[CredentialProvider] = None):
        self.db = db
        self.provider = provider

    # ─── Purge ──────────────────────────────────────────

    async def purge(self, actor: Principal, identity_id: uuid.UUID) -> PurgeReport:
        op = MaintenanceOperation.PURGE_IDENTITY
        principal = maintenance_principal(actor, op)

        conversations = await self._owned_ids(Conversation, identity_id)
        progress = await self._owned_ids(ProgressRecord, identity_id)

        # The identity's own messages plus anything left in its conversations
        q = select(Message.id, Message.owner_id).where(Message.owner_id == identity_id)
        if conversations:
            q = select(Message.id, Message.owner_id).where(
                (Message.owner_id == identity_id)
                | Message.conversation_id.in_(conversations)
            )
        messages = (await self.db.execute(q)).all()

        for _, owner_id in messages:
            enforce(principal, owner_id, op, "message")
        for _ in conversations:
            enforce(principal, identity_id, op, "conversation")
        for _ in progress:
            enforce(principal, identity_id, op, "progress")

        if messages:
            await self.db.execute(
                delete(Message).where(Message.id.in_([row.id for row in messages]))
            )
        await self.db.execute(
            delete(Conversation).where(Conversation.owner_id == identity_id)
        )
        await self.db.execute(
            delete(ProgressRecord).where(ProgressRecord.owner_id == identity_id)
        )
        enforce(principal, identity_id, op, "profile")
        profile_deleted = await ProfileStore(self.db).delete(identity_id)
        await self.db.commit()

        if self.provider is not None:
            await self.provider.delete_identity(identity_id)

        report = PurgeReport(
            identity_id=identity_id,
            conversations=len(conversations),
            messages=len(messages),
            progress_records=len(progress),
            profile_deleted=profile_deleted,
        )
        logger.info(
            "identity.purged",
            actor_id=str(actor.identity_id),
            identity_id=str(identity_id),
            conversations=report.conversations,
            messages=report.messages,
            progress_records=report.progress_records,
            profile_deleted=profile_deleted,
        )
        return report

    # ─── Orphans ────────────────────────────────────────

    async def prune_orphaned_messages(self, actor: Principal) -> int:
        op = MaintenanceOperation.PRUNE_ORPHANED_MESSAGES
        principal = maintenance_principal(actor, op)

        result = await self.db.execute(
            select(Message.id, Message.owner_id)
            .outerjoin(Conversation, Conversation.id == Message.conversation_id)
            .where(
                (Conversation.id.is_(None))
                | (Conversation.owner_id != Message.owner_id)
            )
        )
        orphans = result.all()
        for _, owner_id in orphans:
            enforce(principal, owner_id, op, "message")

        if orphans:
            await self.db.execute(
                delete(Message).where(Message.id.in_([row.id for row in orphans]))
            )
        await self.db.commit()

        logger.info(
            "messages.orphans_pruned",
            actor_id=str(actor.identity_id),
            count=len(orphans),
        )
        return len(orphans)

    async def _owned_ids(self, model, owner_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(select(model.id).where(model.owner_id == owner_id))
        return list(result.scalars().all())

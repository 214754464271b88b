"""Admin API — administrative content, never other users' private data.

Learn: The router-level require_admin_user dependency is the admin
check (403 for a signed-in non-admin). Note what is *not* here: no route
reads another user's conversations, messages or progress. The one route
that touches them, identity deletion, goes through the ownership policy
with a principal scoped to PURGE_IDENTITY.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import (
    CurrentUser,
    get_credential_provider,
    require_admin_user,
)
from coachguard.auth.providers.base import CredentialProvider
from coachguard.db.engine import get_db
from coachguard.errors import NotFound
from coachguard.schemas.profile import ProfileRead, RoleUpdate
from coachguard.services.identity_service import IdentityService
from coachguard.services.profile_store import ProfileStore

router = APIRouter(prefix="/admin")


# ─── Profiles ───────────────────────────────────────────

@router.get("/profiles", response_model=list[ProfileRead])
async def list_profiles(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await ProfileStore(db).list(limit=limit, offset=offset)


@router.patch("/profiles/{identity_id}/role", response_model=ProfileRead)
async def set_role(
    identity_id: uuid.UUID,
    body: RoleUpdate,
    admin: CurrentUser = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    profile = await ProfileStore(db).set_role(identity_id, body.role)
    if profile is None:
        raise NotFound(f"No profile for {identity_id}", actor_id=str(admin.identity_id))
    return profile


# ─── Maintenance ────────────────────────────────────────

@router.delete("/identities/{identity_id}")
async def purge_identity(
    identity_id: uuid.UUID,
    admin: CurrentUser = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
    provider: CredentialProvider = Depends(get_credential_provider),
):
    """Delete an identity and everything it owns."""
    report = await IdentityService(db, provider).purge(admin.principal, identity_id)
    return {
        "identity_id": str(report.identity_id),
        "conversations": report.conversations,
        "messages": report.messages,
        "progress_records": report.progress_records,
        "profile_deleted": report.profile_deleted,
    }


@router.post("/maintenance/prune-orphaned-messages")
async def prune_orphaned_messages(
    admin: CurrentUser = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    pruned = await IdentityService(db).prune_orphaned_messages(admin.principal)
    return {"pruned": pruned}

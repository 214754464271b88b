"""Profile API — the caller's own profile.

Learn: The owner may read their profile and change their names. The role
field isn't in ProfileUpdate at all (extra fields are rejected), so a
user can't promote themselves even by crafting the body.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import CurrentUser, get_current_user
from coachguard.db.engine import get_db
from coachguard.errors import NotFound
from coachguard.policy.ownership import Action, enforce
from coachguard.schemas.profile import ProfileRead, ProfileUpdate
from coachguard.services.profile_store import ProfileStore

router = APIRouter(prefix="/profile")


@router.get("", response_model=ProfileRead)
async def get_profile(user: CurrentUser = Depends(get_current_user)):
    enforce(user.principal, user.profile.id, Action.READ, "profile")
    return user.profile


@router.patch("", response_model=ProfileRead)
async def update_profile(
    body: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    enforce(user.principal, user.profile.id, Action.UPDATE, "profile")
    profile = await ProfileStore(db).update_names(
        user.identity_id, first_name=body.first_name, last_name=body.last_name
    )
    if profile is None:
        raise NotFound("Profile disappeared during update")
    return profile

"""Session API — "who am I, right now?".

Learn: GET /session runs the full resolver (including a refresh when the
access token is expiring) and answers with the session or null. It never
401s: "no session" is a normal answer here. Token writes the resolver
asked for ride on the response via the get_resolution dependency.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from coachguard.auth.dependencies import CurrentUser, get_current_user_optional
from coachguard.schemas.auth import SessionEnvelope, SessionRead

router = APIRouter()


@router.get("/session", response_model=SessionEnvelope)
async def get_session(user: Optional[CurrentUser] = Depends(get_current_user_optional)):
    if user is None:
        return SessionEnvelope(session=None)
    return SessionEnvelope(
        session=SessionRead(
            identity_id=user.identity_id,
            email=user.session.email,
            role=user.role.value,
            issued_at=user.session.issued_at,
            expires_at=user.session.expires_at,
        )
    )

"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health, auth and session are
open; the admin router additionally requires the admin role.

Pages are mounted at the root, outside /api/v1, behind the route gate.
The provider callback is mounted at the root too, without the gate.
"""

from fastapi import APIRouter, Depends

from coachguard.api.admin import router as admin_router
from coachguard.api.auth import router as auth_router
from coachguard.api.conversations import router as conversations_router
from coachguard.api.health import router as health_router
from coachguard.api.pages import callback_router
from coachguard.api.pages import router as pages_router
from coachguard.api.profile import router as profile_router
from coachguard.api.progress import router as progress_router
from coachguard.api.session import router as session_router
from coachguard.auth.dependencies import get_current_user, require_admin_user

# All protected routers require a valid session
_auth = [Depends(get_current_user)]
_admin = [Depends(require_admin_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes: no session required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(session_router, tags=["session"])

# Protected routes: require a valid session
api_router.include_router(profile_router, tags=["profile"], dependencies=_auth)
api_router.include_router(conversations_router, tags=["conversations", "messages"], dependencies=_auth)
api_router.include_router(progress_router, tags=["progress"], dependencies=_auth)

# Admin routes: require the admin role
api_router.include_router(admin_router, tags=["admin"], dependencies=_admin)

__all__ = ["api_router", "callback_router", "pages_router"]

"""
Admin-console guard.

`require_admin` is the dependency every `/api/admin` route uses:

1. Decode the bearer JWT (via `get_current_session`).
2. Require the admin flag.
3. Re-check the username against the configured admin, so an admin
   token outlives neither a rename nor a disabled admin password.
4. Return 403 on failure — with no detail about why.

Usage in a route:
    @router.get("/users")
    async def list_users(admin: LocalSession = Depends(require_admin)): ...
"""

import logging

from fastapi import Depends

from app.core.config import settings
from app.core.errors import AdminRequired
from app.core.security import get_current_session
from app.schemas import LocalSession

logger = logging.getLogger("rbac")


async def require_admin(
    session: LocalSession = Depends(get_current_session),
) -> LocalSession:
    if (
        not session.is_admin
        or not settings.ADMIN_PASSWORD
        or session.username != settings.ADMIN_USERNAME
    ):
        logger.warning("Admin route refused for %s", session.username)
        raise AdminRequired()
    return session

"""
User Administration

Suspending a user blocks password signin, OIDC login and every request made
with a session token issued before the suspension.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.models.user import User
from registry_auth.services.errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)


async def set_suspended(db: AsyncSession, actor: User, user_id: UUID, suspended: bool) -> User:
    """Suspend or resume user_id on behalf of actor. Actors cannot suspend themselves."""
    if suspended and user_id == actor.id:
        raise InvalidRequest("You cannot suspend your own account")

    user = await db.get(User, user_id)
    if user is None:
        raise NotFound()

    user.suspended = suspended
    await db.flush()
    logger.info(f"User {user.username} {'suspended' if suspended else 'resumed'} by {actor.username}")
    return user

"""
Local Registration

Signup of password users (optionally through an invitation) and email
verification. Mail delivery is out of scope; the verification token is
only generated and stored.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.base import as_utc, utcnow
from registry_auth.models.organization import Organization
from registry_auth.models.role import Role, RoleName
from registry_auth.models.user import User
from registry_auth.models.user_org import OrgRole
from registry_auth.services.auth import email_hash, hash_password
from registry_auth.services.errors import DuplicateUser, InvalidRequest
from registry_auth.services.invitations import InvitationResolver
from registry_auth.services.memberships import MembershipResolver

logger = logging.getLogger(__name__)

VERIFICATION_TOKEN_LIFETIME = timedelta(hours=24)


@dataclass(frozen=True)
class Registration:
    user: User
    organization: Organization
    role_names: list[str]


async def _roles_named(db: AsyncSession, names: list[str]) -> list[Role]:
    result = await db.execute(select(Role).where(Role.name.in_(names)))
    roles = list(result.scalars().all())
    missing = set(names) - {role.name for role in roles}
    if missing:
        logger.warning(f"Roles {sorted(missing)} are not seeded, skipping them")
    return roles


async def _unused_org_name(db: AsyncSession, name: str) -> str:
    candidate = name
    while True:
        result = await db.execute(select(Organization.id).where(Organization.name == candidate))
        if result.first() is None:
            return candidate
        candidate = f"{name}-{secrets.token_hex(3)}"


async def register_user(
    db: AsyncSession,
    settings: Settings,
    username: str,
    email: str,
    password: str,
    invitation_token: str | None = None,
) -> Registration:
    """
    Create a local user.

    With an invitation the user joins its organization with the invited
    role and the invitation is accepted. Without one a new organization
    named after the user is created with the user as admin. The first user
    of an empty instance becomes global admin and moderator.
    """
    invitations = InvitationResolver(db, settings)
    invitation = None
    if invitation_token:
        invitation = await invitations.consume_for_signup(invitation_token)

    duplicate = await db.execute(
        select(User.id).where(
            or_(User.username == username, func.lower(User.email) == email.lower())
        )
    )
    if duplicate.first() is not None:
        raise DuplicateUser()

    if invitation is not None:
        organization = await invitations.organization_of(invitation)
        org_role = invitation.invited_role
    else:
        organization = Organization(name=await _unused_org_name(db, username))
        db.add(organization)
        await db.flush()
        org_role = OrgRole.ADMIN.value

    is_first_user = (await db.execute(select(func.count(User.id)))).scalar_one() == 0
    if is_first_user:
        role_names = [RoleName.ADMIN.value, RoleName.MODERATOR.value]
    else:
        role_names = [RoleName.USER.value]

    roles = await _roles_named(db, role_names)
    user = User(
        username=username,
        email=email.lower(),
        email_hash=email_hash(email),
        hashed_password=hash_password(password),
        auth_provider="local",
        verification_token=secrets.token_hex(20),
        verification_token_expires=utcnow() + VERIFICATION_TOKEN_LIFETIME,
        roles=roles,
    )
    db.add(user)
    await db.flush()

    await MembershipResolver(db).add_membership(user, organization, role=org_role, make_primary=True)
    if invitation is not None:
        await invitations.accept(invitation)

    logger.info(
        f"User {username} registered in {organization.name} "
        f"({'invitation' if invitation else 'new organization'})"
    )
    return Registration(
        user=user,
        organization=organization,
        role_names=sorted(role.name for role in roles),
    )


async def verify_email(db: AsyncSession, token: str) -> User:
    result = await db.execute(select(User).where(User.verification_token == token))
    user = result.scalar_one_or_none()
    if user is None:
        raise InvalidRequest("Invalid or expired verification token.")
    if user.verification_token_expires and as_utc(user.verification_token_expires) < utcnow():
        raise InvalidRequest("Verification token has expired.")

    user.verified = True
    user.verification_token = None
    user.verification_token_expires = None
    await db.flush()
    logger.info(f"Email verified for {user.username}")
    return user

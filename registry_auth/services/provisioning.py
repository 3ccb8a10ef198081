"""
Provisioning Policy Engine

Maps a verified external identity onto a local user, creating the user and
an organization membership when the configured policy allows it.

Branches, in order:
    1. a credential already links (provider, subject) to a user
    2. a user already has the profile's email; link a new credential
    3. no match; resolve an organization, then apply the fallback policy

Matched users without a primary organization get one the same way new
users do, so the fallback policy can refuse them too.
"""

import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.base import utcnow
from registry_auth.models.credential import Credential
from registry_auth.models.organization import AccessMode, Organization
from registry_auth.models.role import Role
from registry_auth.models.user import User
from registry_auth.models.user_org import OrgRole
from registry_auth.services.auth import email_hash
from registry_auth.services.errors import (
    AccessDenied,
    AccountInactive,
    UnknownPolicy,
    UserCreationFailed,
)
from registry_auth.services.invitations import InvitationResolver
from registry_auth.services.memberships import MembershipResolver

logger = logging.getLogger(__name__)

POLICY_CREATE_ORG = "create_org"
POLICY_REQUIRE_INVITE = "require_invite"
POLICY_DENY_ACCESS = "deny_access"

_USERNAME_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]+")


@dataclass(frozen=True)
class ExternalProfile:
    """Identity asserted by an external provider."""

    subject: str
    email: str | None = None
    username: str | None = None
    name: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def email_domain(self) -> str | None:
        if not self.email or "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1].lower()


@dataclass(frozen=True)
class OrganizationResolution:
    """
    Outcome of organization determination.

    organization is None when nothing resolved; matched_domain is set when a
    domain mapping matched but its organization does not exist.
    """

    organization: Organization | None = None
    role: str = OrgRole.USER.value
    source: str | None = None
    matched_domain: str | None = None


def parse_domain_mappings(raw: str | None) -> dict[str, list[str]]:
    """
    Parse the domain mapping JSON (organization name to list of domains).

    Malformed JSON, a non-object document or non-list values yield no
    mapping for the affected entries.
    """
    if not raw:
        return {}
    try:
        document = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring malformed domain_mappings: {e}")
        return {}
    if not isinstance(document, dict):
        logger.warning("Ignoring domain_mappings: expected a JSON object")
        return {}

    mappings = {}
    for org_name, domains in document.items():
        if not isinstance(domains, list):
            logger.warning(f"Ignoring domain mapping for {org_name}: expected a list")
            continue
        mappings[org_name] = [str(d).strip().lower() for d in domains if isinstance(d, str)]
    return mappings


class ProvisioningEngine:
    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings
        self.memberships = MembershipResolver(db)
        self.invitations = InvitationResolver(db, settings)

    async def handle_external_user(self, provider_tag: str, profile: ExternalProfile) -> User:
        """Resolve (provider_tag, profile) to a local user, provisioning one if allowed."""
        user = await self._from_credential(provider_tag, profile)
        if user is not None:
            return user

        if not profile.email:
            raise UserCreationFailed("External profile has no email address")

        user = await self._from_email(provider_tag, profile)
        if user is not None:
            return user

        return await self._provision(provider_tag, profile)

    # ── Branch 1 ──────────────────────────────────────

    async def _from_credential(self, provider_tag: str, profile: ExternalProfile) -> User | None:
        result = await self.db.execute(
            select(Credential).where(
                Credential.provider == provider_tag,
                Credential.subject == profile.subject,
            )
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            return None

        user = await self.db.get(User, credential.user_id)
        if user is None:
            logger.warning(f"Credential {credential.id} points to a missing user")
            return None
        if user.suspended:
            raise AccountInactive()

        logger.info(f"External login for {user.username} via existing {provider_tag} credential")
        await self._ensure_default_role(user)
        await self._ensure_primary(user, profile)
        return user

    # ── Branch 2 ──────────────────────────────────────

    async def _from_email(self, provider_tag: str, profile: ExternalProfile) -> User | None:
        result = await self.db.execute(
            select(User).where(func.lower(User.email) == profile.email.lower())
        )
        user = result.scalar_one_or_none()
        if user is None:
            return None
        if user.suspended:
            raise AccountInactive()

        try:
            async with self.db.begin_nested():
                self.db.add(
                    Credential(
                        user_id=user.id,
                        provider=provider_tag,
                        subject=profile.subject,
                        external_email=profile.email,
                    )
                )
                await self.db.flush()
        except SQLAlchemyError as e:
            # Login proceeds without the link
            logger.warning(f"Could not link {provider_tag} credential to {user.username}: {e}")

        user.auth_provider = provider_tag
        user.external_id = profile.subject
        user.linked_at = utcnow()
        await self.db.flush()

        logger.info(f"Linked {provider_tag} identity to existing user {user.username}")
        await self._ensure_default_role(user)
        await self._ensure_primary(user, profile)
        return user

    # ── Branch 3 ──────────────────────────────────────

    async def _provision(self, provider_tag: str, profile: ExternalProfile) -> User:
        if not self.settings.provisioning_enabled:
            raise AccessDenied("Automatic user provisioning is disabled")

        organization, role = await self._organization_for(profile.email)
        user = await self._create_user(provider_tag, profile)
        await self.memberships.add_membership(user, organization, role=role, make_primary=True)
        logger.info(
            f"Provisioned {user.username} via {provider_tag} into {organization.name} as {role}"
        )
        return user

    async def determine_organization(self, email: str | None) -> OrganizationResolution:
        """
        Resolve the organization a new or organization-less user joins.

        A pending invitation wins and is consumed; otherwise an enabled
        domain mapping whose organization exists. Anything else resolves to
        no organization.
        """
        if not email:
            return OrganizationResolution()

        invitation = await self.invitations.find_pending_for_email(email)
        if invitation is not None:
            organization = await self.db.get(Organization, invitation.organization_id)
            if organization is not None:
                await self.invitations.accept(invitation)
                return OrganizationResolution(
                    organization=organization,
                    role=invitation.invited_role,
                    source="invitation",
                )
            logger.warning(f"Invitation {invitation.id} targets a missing organization")

        if not self.settings.domain_mapping_enabled:
            return OrganizationResolution()

        domain = email.rsplit("@", 1)[-1].lower()
        matched_domain = None
        for org_name, domains in parse_domain_mappings(self.settings.domain_mappings).items():
            if domain not in domains:
                continue
            result = await self.db.execute(select(Organization).where(Organization.name == org_name))
            organization = result.scalar_one_or_none()
            if organization is not None:
                return OrganizationResolution(
                    organization=organization,
                    role=OrgRole.USER.value,
                    source="domain",
                )
            logger.info(f"Domain mapping for {domain} names missing organization {org_name}")
            matched_domain = domain

        return OrganizationResolution(matched_domain=matched_domain)

    # ── Helpers ───────────────────────────────────────

    async def _organization_for(self, email: str | None) -> tuple[Organization, str]:
        """
        Organization and membership role for a user that has none yet.

        Invitations and domain mappings come first; otherwise the fallback
        policy either creates an organization or refuses the login.
        """
        resolution = await self.determine_organization(email)
        if resolution.organization is not None:
            return resolution.organization, resolution.role

        policy = self.settings.provisioning_fallback_action
        if policy == POLICY_CREATE_ORG:
            organization = await self._create_organization(resolution.matched_domain)
            return organization, OrgRole.ADMIN.value
        if policy in (POLICY_REQUIRE_INVITE, POLICY_DENY_ACCESS):
            logger.info(f"No organization for {email}, denied by {policy} policy")
            raise AccessDenied()
        logger.error(f"Unknown provisioning_fallback_action {policy!r}")
        raise UnknownPolicy()

    async def _ensure_primary(self, user: User, profile: ExternalProfile) -> None:
        if user.primary_organization_id is not None:
            return

        organization, role = await self._organization_for(profile.email or user.email)
        await self.memberships.add_membership(user, organization, role=role, make_primary=True)

    async def _create_organization(self, preferred_name: str | None) -> Organization:
        name = preferred_name or self._random_org_code()
        if await self._organization_exists(name):
            name = self._random_org_code()
            while await self._organization_exists(name):
                name = self._random_org_code()

        organization = Organization(name=name, access_mode=AccessMode.PRIVATE.value)
        self.db.add(organization)
        await self.db.flush()
        logger.info(f"Created organization {name}")
        return organization

    @staticmethod
    def _random_org_code() -> str:
        return secrets.token_hex(3).upper()

    async def _organization_exists(self, name: str) -> bool:
        result = await self.db.execute(select(Organization.id).where(Organization.name == name))
        return result.first() is not None

    async def _default_role(self) -> Role | None:
        name = self.settings.provisioning_default_role
        result = await self.db.execute(select(Role).where(Role.name == name))
        role = result.scalar_one_or_none()
        if role is None:
            logger.warning(f"Default role {name!r} does not exist, skipping role assignment")
        return role

    async def _ensure_default_role(self, user: User) -> None:
        roles = await user.awaitable_attrs.roles
        if roles:
            return
        role = await self._default_role()
        if role is not None:
            roles.append(role)
            await self.db.flush()

    async def _unique_username(self, profile: ExternalProfile) -> str:
        base = profile.username or profile.email.split("@", 1)[0]
        base = _USERNAME_UNSAFE.sub("-", base).strip("-") or "user"
        candidate = base
        while True:
            result = await self.db.execute(select(User.id).where(User.username == candidate))
            if result.first() is None:
                return candidate
            candidate = f"{base}-{secrets.token_hex(2)}"

    async def _create_user(self, provider_tag: str, profile: ExternalProfile) -> User:
        role = await self._default_role()
        user = User(
            username=await self._unique_username(profile),
            email=profile.email.lower(),
            email_hash=email_hash(profile.email),
            verified=True,
            hashed_password=None,
            auth_provider=provider_tag,
            external_id=profile.subject,
            linked_at=utcnow(),
            roles=[role] if role is not None else [],
        )
        try:
            async with self.db.begin_nested():
                self.db.add(user)
                await self.db.flush()
                self.db.add(
                    Credential(
                        user_id=user.id,
                        provider=provider_tag,
                        subject=profile.subject,
                        external_email=profile.email,
                    )
                )
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to create user for {profile.email} via {provider_tag}: {e}")
            raise UserCreationFailed()
        return user

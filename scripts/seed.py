"""
Seed Script

Populates the database with demo data for development and testing.
Creates the "Acme Registry" organization with an admin, an invited
developer and a CI service account.

Expects the schema (and global roles) to exist: run `alembic upgrade head` first.

Usage:
    python -m scripts.seed
"""

import asyncio

from sqlalchemy import select

from registry_auth.config import get_settings
from registry_auth.db.session import get_async_session
from registry_auth.models.user import User
from registry_auth.services.invitations import InvitationResolver
from registry_auth.services.registration import register_user
from registry_auth.services.service_accounts import create_service_account

settings = get_settings()

ADMIN_PASSWORD = "Registry2025!"
DEVELOPER_PASSWORD = "Developer2025!"


async def seed():
    """Create demo data."""
    async with get_async_session() as db:
        existing = await db.execute(select(User.id).where(User.username == "admin"))
        if existing.first() is not None:
            print("Demo data already present, nothing to do")
            return

        # ── Admin (first user becomes global admin) ───────
        admin = await register_user(
            db,
            settings,
            username="admin",
            email="admin@acme.test",
            password=ADMIN_PASSWORD,
        )
        org = admin.organization
        org.name = "Acme Registry"
        org.description = "Demo organization"
        admin.user.verified = True

        # ── Invited developer ─────────────────────────────
        invitation = await InvitationResolver(db, settings).create(
            "developer@acme.test",
            org.id,
            invited_role="moderator",
            invited_by=admin.user.id,
        )
        developer = await register_user(
            db,
            settings,
            username="developer",
            email="developer@acme.test",
            password=DEVELOPER_PASSWORD,
            invitation_token=invitation.token,
        )
        developer.user.verified = True

        # ── CI service account ────────────────────────────
        account, token = await create_service_account(
            db,
            admin.user,
            org.id,
            settings,
            description="CI pipeline",
            expiration_days=90,
        )

        await db.flush()

        print(f"Seeded organization: {org.name} (ID: {org.id})")
        print(f"Admin user: admin / {ADMIN_PASSWORD} (roles: {', '.join(admin.role_names)})")
        print(f"Developer user: developer / {DEVELOPER_PASSWORD} (moderator of {org.name})")
        print(f"Service account: {account.username} / {token}")


if __name__ == "__main__":
    asyncio.run(seed())

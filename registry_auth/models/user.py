"""
User Model

Identity rows for local, service-account owning and federated users.
"""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry_auth.models.base import Base, TimestampMixin
from registry_auth.models.role import Role, user_roles

if TYPE_CHECKING:
    from registry_auth.models.credential import Credential
    from registry_auth.models.user_org import UserOrg


class User(TimestampMixin, Base):
    """
    User record for authentication.

    Per-organization roles live on UserOrg; the global roles relationship
    carries the instance-wide user/moderator/admin grants.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )

    # Identity
    username: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )
    email_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 of the lowercased email (avatar lookups)",
    )

    # Verification
    verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    verification_token: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
    )
    verification_token_expires: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Authentication
    hashed_password: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Nullable for users that only sign in through an external provider",
    )
    auth_provider: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Provider tag of the last linked identity (e.g. oidc-google)",
    )
    external_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Subject from the external provider",
    )
    linked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Status
    suspended: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Denormalized copy of the primary membership
    primary_organization_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Relationships
    roles: Mapped[list[Role]] = relationship(
        secondary=user_roles,
        lazy="selectin",
    )
    memberships: Mapped[list["UserOrg"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
    )
    credentials: Mapped[list["Credential"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_users_external", "auth_provider", "external_id"),
    )

    @property
    def role_names(self) -> list[str]:
        return sorted(role.name for role in self.roles)

    def __repr__(self) -> str:
        return f"<User {self.username}>"

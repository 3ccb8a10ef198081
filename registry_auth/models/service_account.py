"""
Service Account Model

Machine identities for CI and automation. The opaque token is hashed with
SHA-256 before storage; the raw value is shown only once at creation.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from registry_auth.models.base import Base, TimestampMixin


class ServiceAccount(TimestampMixin, Base):
    """
    Service account owned by a user and scoped to one organization.

    Authentication fails once now > expires_at even when the token matches.
    """

    __tablename__ = "service_accounts"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    username: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="SHA-256 hash of the service account token",
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Owner and scope
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_service_accounts_login", "username", "token_hash"),
    )

    def __repr__(self) -> str:
        return f"<ServiceAccount {self.username}>"

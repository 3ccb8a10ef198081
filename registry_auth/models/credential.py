"""
Credential Model

Links a user to one external (provider, subject) identity.
"""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry_auth.models.base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from registry_auth.models.user import User


class Credential(TimestampMixin, Base):
    """
    Federated credential.

    The (provider, subject) pair is unique, so one external identity maps
    to at most one user.
    """

    __tablename__ = "federated_credentials"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Provider tag, e.g. oidc-google",
    )
    subject: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Provider-specific user identifier",
    )
    external_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Email observed from the provider at link time",
    )
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    user: Mapped["User"] = relationship(back_populates="credentials")

    __table_args__ = (
        UniqueConstraint("provider", "subject", name="unique_provider_subject"),
    )

    def __repr__(self) -> str:
        return f"<Credential {self.provider}:{self.subject}>"

"""
Organization Pydantic Schemas

Response models for a user's organization memberships.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MembershipResponse(BaseModel):
    """One organization the user belongs to."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    organization_id: UUID = Field(alias="organizationId")
    organization: str = Field(description="Organization name")
    role: str = Field(description="Role inside the organization: user|moderator|admin")
    is_primary: bool = Field(alias="isPrimary")
    joined_at: datetime | None = Field(default=None, alias="joinedAt")


class PrimaryOrganizationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    primary_organization: str = Field(alias="primaryOrganization")
    organizations: list[MembershipResponse]

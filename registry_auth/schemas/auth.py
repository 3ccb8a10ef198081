"""
Auth Pydantic Schemas

Request/response models for authentication endpoints. Field names follow
the camelCase wire format of the registry frontend.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class SigninRequest(BaseModel):
    """Local user (username + password) or service account (username + token)."""

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    stay_logged_in: bool = Field(default=False, alias="stayLoggedIn")


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=255, pattern=r"^[a-zA-Z0-9._-]+$")
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128, description="Password (min 8 chars)")
    invitation_token: str | None = Field(default=None, alias="invitationToken")


class RefreshTokenRequest(BaseModel):
    """Optional overrides applied when reissuing a token."""

    model_config = ConfigDict(populate_by_name=True)

    stay_logged_in: bool | None = Field(default=None, alias="stayLoggedIn")


class OrganizationMembership(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization: str
    role: str
    is_primary: bool = Field(alias="isPrimary")


class SigninResponse(BaseModel):
    """Signed session token plus the profile it was issued for."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    username: str
    email: str | None = None
    verified: bool = False
    roles: list[str] = Field(default_factory=list)
    organizations: list[OrganizationMembership] = Field(default_factory=list)
    provider: str
    is_service_account: bool = Field(default=False, alias="isServiceAccount")
    access_token: str = Field(alias="accessToken")


class SignupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    id: UUID
    username: str
    organization: str
    roles: list[str]


class TokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")


class InvitationCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    organization_name: str = Field(..., alias="organizationName")
    invited_role: str = Field(default="user", alias="invitedRole", pattern=r"^(user|moderator)$")


class InvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    email: str
    token: str
    expires: datetime
    organization_id: UUID = Field(alias="organizationId")
    invited_role: str = Field(alias="invitedRole")


class InvitationSummary(BaseModel):
    """An organization's invitation in any state, for the moderation view."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    email: str
    token: str
    expires: datetime
    accepted: bool
    expired: bool
    invited_role: str = Field(alias="invitedRole")
    created_at: datetime = Field(alias="createdAt")


class InvitationValidationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_name: str = Field(alias="organizationName")
    invited_role: str = Field(alias="invitedRole")


class MessageResponse(BaseModel):
    message: str


class AuthMethod(BaseModel):
    id: str
    name: str
    enabled: bool = True


class OidcIssuer(BaseModel):
    id: str
    name: str
    issuer: str


class LogoutResponse(BaseModel):
    success: bool = True
    message: str
    redirect_url: str | None = None


class ServiceAccountCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_name: str = Field(..., alias="organizationName")
    description: str | None = Field(default=None, max_length=255)
    expiration_days: int = Field(default=30, ge=1, alias="expirationDays")


class ServiceAccountResponse(BaseModel):
    """Returned once at creation; the raw token is never shown again."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    username: str
    token: str
    description: str | None
    expires_at: datetime = Field(alias="expiresAt")
    organization: str


class ServiceAccountSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    username: str
    description: str | None
    expires_at: datetime = Field(alias="expiresAt")
    created_at: datetime = Field(alias="createdAt")
    organization: str

"""Pydantic API Schemas for the registry auth service."""

from registry_auth.schemas.auth import (
    SigninRequest,
    SigninResponse,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from registry_auth.schemas.organization import (
    MembershipResponse,
    PrimaryOrganizationResponse,
)

__all__ = [
    "SigninRequest",
    "SigninResponse",
    "SignupRequest",
    "SignupResponse",
    "TokenResponse",
    "MembershipResponse",
    "PrimaryOrganizationResponse",
]

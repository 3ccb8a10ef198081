"""API v1 Route modules."""

from registry_auth.routers.v1 import auth, oidc, service_accounts, users

__all__ = ["auth", "oidc", "service_accounts", "users"]

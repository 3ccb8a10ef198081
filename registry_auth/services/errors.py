"""
Auth Errors

Domain exceptions raised by the authentication services. Each carries the
HTTP status and user-safe message the JSON endpoints answer with, and the
short code the OIDC endpoints put in their ``error=`` redirect parameter.
"""


class AuthError(Exception):
    """Base class for authentication and provisioning failures."""

    status_code: int = 400
    redirect_code: str = "oidc_failed"
    default_message: str = "Authentication failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(AuthError):
    status_code = 404
    default_message = "User Not found."


class InvalidCredentials(AuthError):
    status_code = 401
    default_message = "Invalid Password!"


class ServiceAccountExpired(AuthError):
    status_code = 401
    default_message = "Service account has expired."


class AccountInactive(AuthError):
    status_code = 403
    redirect_code = "access_denied"
    default_message = "User account is inactive"


class RefreshNotAllowed(AuthError):
    status_code = 403
    default_message = "Token refresh is not allowed for this session"


class TokenInvalid(AuthError):
    status_code = 403
    default_message = "Invalid or missing token"


class ProviderNotFound(AuthError):
    status_code = 400
    redirect_code = "provider_not_found"
    default_message = "OIDC provider not found"


class ProviderNotEnabled(AuthError):
    status_code = 400
    redirect_code = "provider_not_enabled"
    default_message = "OIDC provider not enabled"


class AuthUrlGenerationFailed(AuthError):
    status_code = 500
    redirect_code = "oidc_failed"
    default_message = "Could not build the authorization URL"


class NoSessionData(AuthError):
    status_code = 400
    redirect_code = "no_session_data"
    default_message = "No OIDC session data for this callback"


class OidcExchangeFailed(AuthError):
    status_code = 502
    redirect_code = "oidc_failed"
    default_message = "Authorization code exchange failed"


class SubjectResolutionFailed(AuthError):
    status_code = 400
    redirect_code = "oidc_failed"
    default_message = "No user identifier found in the external profile"


class AccessDenied(AuthError):
    status_code = 403
    redirect_code = "access_denied"
    default_message = "Access denied"


class UnknownPolicy(AuthError):
    status_code = 403
    redirect_code = "access_denied"
    default_message = "Access denied: no provisioning policy match"


class UserCreationFailed(AuthError):
    status_code = 500
    redirect_code = "user_creation_failed"
    default_message = "Could not create the user"


class ConfigurationError(AuthError):
    status_code = 500
    redirect_code = "oidc_failed"
    default_message = "Authentication configuration is unavailable"


class InvitationInvalid(AuthError):
    status_code = 400
    default_message = "Invalid or expired invitation token."


class InvitationExpired(InvitationInvalid):
    default_message = "Invitation token has expired."


class DuplicateUser(AuthError):
    status_code = 400
    default_message = "Username or email already in use."


class MembershipNotFound(AuthError):
    status_code = 400
    default_message = "User is not a member of this organization"


class OrganizationNotFound(AuthError):
    status_code = 404
    default_message = "Organization not found"


class InvalidRequest(AuthError):
    status_code = 400
    default_message = "Invalid request"


class Forbidden(AuthError):
    status_code = 403
    redirect_code = "access_denied"
    default_message = "Insufficient permissions"


class InvitationNotFound(AuthError):
    status_code = 404
    default_message = "Invitation not found."


class ServiceAccountNotFound(AuthError):
    status_code = 404
    default_message = "Service account not found."

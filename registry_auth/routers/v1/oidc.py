"""
OIDC Router

Browser-facing legs of the external login. Failures never surface as error
responses: every branch redirects to the frontend with an ``error=`` code.
"""

import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings, get_settings_result, require_settings
from registry_auth.db.session import get_db
from registry_auth.middleware.rbac import extract_token
from registry_auth.schemas.auth import LogoutResponse, OidcIssuer
from registry_auth.services.errors import AuthError
from registry_auth.services.oidc import ExternalLoginFlow
from registry_auth.services.session_store import SESSION_COOKIE

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_ERROR = "oidc_failed"


def get_login_flow(
    request: Request,
    settings: Settings = Depends(require_settings),
) -> ExternalLoginFlow:
    state = request.app.state
    return ExternalLoginFlow(
        settings,
        state.provider_registry,
        state.session_store,
        state.http_client,
    )


def error_redirect(settings: Settings, code: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.frontend_origin.rstrip('/')}/?{urlencode({'error': code})}",
        status_code=302,
    )


def safe_return_url(value: str | None) -> str | None:
    """Only same-origin relative paths are kept."""
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return None


@router.get("/oidc/issuers", response_model=list[OidcIssuer])
async def oidc_issuers(request: Request) -> list[OidcIssuer]:
    """Enabled and discovered providers. Empty when configuration failed to load."""
    if get_settings_result().degraded:
        return []
    registry = request.app.state.provider_registry
    return [
        OidcIssuer(id=name, name=provider.display_name, issuer=provider.issuer)
        for name, provider in registry.providers.items()
    ]


@router.get("/oidc/callback")
async def oidc_callback(
    request: Request,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(require_settings),
    flow: ExternalLoginFlow = Depends(get_login_flow),
) -> RedirectResponse:
    session_id = request.cookies.get(SESSION_COOKIE)
    try:
        result = await flow.callback(db, session_id, state, code, error)
    except AuthError as e:
        await db.rollback()
        logger.warning(f"OIDC callback failed ({e.redirect_code}): {e.message}")
        response = error_redirect(settings, e.redirect_code)
    except Exception:
        await db.rollback()
        logger.exception("Unexpected error in OIDC callback")
        response = error_redirect(settings, GENERIC_ERROR)
    else:
        params = {"token": result.token}
        return_url = safe_return_url(result.return_url)
        if return_url:
            params["returnTo"] = return_url
        response = RedirectResponse(
            f"{settings.frontend_origin.rstrip('/')}/auth/callback?{urlencode(params)}",
            status_code=302,
        )
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.post("/oidc/logout", response_model=LogoutResponse)
async def oidc_logout(
    request: Request,
    flow: ExternalLoginFlow = Depends(get_login_flow),
) -> LogoutResponse:
    result = flow.logout(extract_token(request))
    return LogoutResponse(message=result.message, redirect_url=result.redirect_url)


@router.get("/oidc/{provider}")
async def oidc_start(
    provider: str,
    request: Request,
    return_url: str | None = None,
    settings: Settings = Depends(require_settings),
    flow: ExternalLoginFlow = Depends(get_login_flow),
) -> RedirectResponse:
    session_id = request.cookies.get(SESSION_COOKIE) or secrets.token_urlsafe(32)
    try:
        url = await flow.start(session_id, provider, safe_return_url(return_url))
    except AuthError as e:
        logger.warning(f"OIDC start for {provider} failed ({e.redirect_code}): {e.message}")
        return error_redirect(settings, e.redirect_code)
    except Exception:
        logger.exception(f"Unexpected error starting OIDC login for {provider}")
        return error_redirect(settings, GENERIC_ERROR)

    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=settings.oidc_session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.environment == "production",
    )
    return response

"""
Registry Auth - Main Application Entry Point

Authentication and identity provisioning for the multi-tenant registry:
local and service-account signin, session tokens with organization claims,
and OIDC login with just-in-time provisioning.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from registry_auth.config import get_settings, get_settings_result
from registry_auth.db.session import engine
from registry_auth.middleware.audit_log import AuditLogMiddleware
from registry_auth.routers.v1 import auth, oidc, service_accounts, users
from registry_auth.services.errors import AuthError
from registry_auth.services.providers import ProviderRegistry
from registry_auth.services.session_store import create_session_store

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def reload_provider_registry(app: FastAPI) -> ProviderRegistry:
    """Rediscover providers and swap the new registry in as a whole."""
    result = get_settings_result()
    if result.degraded:
        registry = ProviderRegistry()
    else:
        registry = await ProviderRegistry.initialize(result.settings, app.state.http_client)
    app.state.provider_registry = registry
    logger.info(f"Provider registry loaded with {len(registry)} provider(s)")
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    result = get_settings_result()
    if result.degraded:
        logger.error("Starting in degraded mode; configuration-dependent endpoints answer 500")

    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(result.settings.oidc_http_timeout_seconds),
    )
    app.state.session_store = create_session_store(result.settings)
    await reload_provider_registry(app)
    yield
    # Shutdown
    await app.state.session_store.close()
    await app.state.http_client.aclose()
    await engine.dispose()


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Registry authentication and identity provisioning service.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs" if settings.debug else None,
        redoc_url=f"{settings.api_prefix}/redoc" if settings.debug else None,
        openapi_url=f"{settings.api_prefix}/openapi.json" if settings.debug else None,
    )
    app.state.provider_registry = ProviderRegistry()

    app.add_exception_handler(AuthError, auth_error_handler)

    # Audit logging middleware
    app.add_middleware(AuditLogMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Liveness; reports degraded configuration without failing."""
        return {
            "status": "degraded" if get_settings_result().degraded else "healthy",
            "service": "registry-auth",
        }

    app.include_router(auth.router, prefix=f"{settings.api_prefix}/auth", tags=["Auth"])
    app.include_router(oidc.router, prefix=f"{settings.api_prefix}/auth", tags=["OIDC"])
    app.include_router(users.router, prefix=f"{settings.api_prefix}/users", tags=["Users"])
    app.include_router(
        service_accounts.router,
        prefix=f"{settings.api_prefix}/service-accounts",
        tags=["Service Accounts"],
    )
    return app


app = create_app()

"""
Registry Auth Configuration

Environment-based settings for the authentication and identity-provisioning
service. Loading never raises: a configuration that fails validation yields
a degraded result which endpoints refuse to serve (see ``require_settings``).
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, PostgresDsn, ValidationError, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class OIDCProviderSettings(BaseModel):
    """Per-provider OIDC client configuration."""

    enabled: bool = False
    display_name: str | None = None
    issuer: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    token_endpoint_auth_method: str = "client_secret_basic"
    scope: str = "openid profile email"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "Registry Auth"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # API
    api_prefix: str = "/api"
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    frontend_origin: str = Field(
        default="http://localhost:3000",
        description="Public origin used for OIDC redirect and callback URLs",
    )

    # Database: DATABASE_URL or the individual fields
    database_url_external: str = Field(default="", alias="DATABASE_URL")
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "registry"
    postgres_password: str = "registry"
    postgres_db: str = "registry"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout_seconds: int = 30
    db_pool_recycle_seconds: int = 1800

    @computed_field
    @property
    def database_url(self) -> str:
        """Async PostgreSQL connection URL."""
        if self.database_url_external:
            url = self.database_url_external
            if url.startswith("postgres://"):
                url = "postgresql+asyncpg://" + url[len("postgres://"):]
            elif url.startswith("postgresql://"):
                url = "postgresql+asyncpg://" + url[len("postgresql://"):]
            return url
        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=self.postgres_user,
                password=self.postgres_password,
                host=self.postgres_host,
                port=self.postgres_port,
                path=self.postgres_db,
            )
        )

    @computed_field
    @property
    def database_url_sync(self) -> str:
        """Sync PostgreSQL URL for Alembic migrations."""
        if self.database_url_external:
            url = self.database_url_external
            if url.startswith("postgres://"):
                url = "postgresql://" + url[len("postgres://"):]
            elif url.startswith("postgresql+asyncpg://"):
                url = "postgresql://" + url[len("postgresql+asyncpg://"):]
            return url
        return str(
            PostgresDsn.build(
                scheme="postgresql",
                username=self.postgres_user,
                password=self.postgres_password,
                host=self.postgres_host,
                port=self.postgres_port,
                path=self.postgres_db,
            )
        )

    # Redis (OIDC session state)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    session_backend: Literal["redis", "memory"] = "redis"
    oidc_session_ttl_seconds: int = 600

    # JWT
    jwt_secret: str = Field(
        default="CHANGE-ME-IN-PRODUCTION-use-openssl-rand-hex-32",
        description="Secret key for session token signing",
    )
    jwt_expiration: str | None = Field(
        default="24h",
        description="Session token lifetime, e.g. 30m, 24h, 7d or plain seconds",
    )
    invitation_token_expiry_hours: int = 24
    service_account_max_expiry_days: int = 365

    # OIDC
    oidc_providers: dict[str, OIDCProviderSettings] = Field(default_factory=dict)
    oidc_http_timeout_seconds: float = 10.0
    oidc_refresh_threshold_minutes: int = 5
    token_default_expiry_minutes: int | float | str | None = Field(
        default=None,
        description="Fallback lifetime for OIDC sessions when the ID token carries no exp",
    )

    # Just-in-time provisioning
    provisioning_enabled: bool = True
    provisioning_default_role: str = "user"
    provisioning_fallback_action: str = "require_invite"
    domain_mapping_enabled: bool = False
    domain_mappings: str = Field(
        default="{}",
        description='JSON object of organization name to email domains, e.g. {"Acme": ["acme.com"]}',
    )


@dataclass(frozen=True)
class SettingsLoadResult:
    """Outcome of loading configuration at startup."""

    settings: Settings
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


def load_settings() -> SettingsLoadResult:
    """
    Load settings from the environment.

    A validation failure is logged and returned as a degraded result built
    from the declared defaults, so the process can still start and report
    the problem per request.
    """
    try:
        return SettingsLoadResult(settings=Settings())
    except ValidationError as e:
        logger.error(f"Configuration failed validation, running degraded: {e}")
        return SettingsLoadResult(settings=Settings.model_construct(), error=str(e))


@lru_cache
def get_settings_result() -> SettingsLoadResult:
    """Get the cached configuration load result."""
    return load_settings()


def get_settings() -> Settings:
    """Get cached settings instance."""
    return get_settings_result().settings


def require_settings() -> Settings:
    """
    FastAPI dependency for routes that cannot run on degraded configuration.

    Raises ConfigurationError (500) instead of serving with defaults.
    """
    from registry_auth.services.errors import ConfigurationError

    result = get_settings_result()
    if result.degraded:
        raise ConfigurationError()
    return result.settings

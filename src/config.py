"""
Configuration for the SSO gateway.

Settings are read from the environment (and a local .env file) once per
process and grouped by concern. Identity provider definitions are not kept
here: CertificateStore.from_settings loads them from SSO_PROVIDERS_FILE or
SSO_PROVIDERS_JSON so that every certificate is parsed at startup.

    from src.config import get_settings

    settings = get_settings()
    if settings.is_redis_configured:
        ...
"""

import secrets
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Every group reads the same environment and ignores unrelated variables
ENV_CONFIG = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


class SSOSettings(BaseSettings):
    """Configuration for the SAML service provider and login pipeline."""

    model_config = ENV_CONFIG

    # Service provider identity
    sso_sp_entity_id: str = Field(
        default="http://localhost:8000/sso/saml/metadata",
        description="Entity ID this service provider presents to IdPs",
    )
    sso_acs_url: str = Field(
        default="http://localhost:8000/sso/saml/acs",
        description="Where IdPs post SAML responses",
    )

    # Identity provider registry
    sso_providers_file: Optional[str] = Field(
        default=None,
        description="Path to a JSON file listing identity provider configurations",
    )
    sso_providers_json: Optional[str] = Field(
        default=None,
        description="Inline JSON list of identity provider configurations",
    )
    sso_default_provider: Optional[str] = Field(
        default=None,
        description="Provider used for IdP-initiated responses without pending state",
    )

    # Validation
    sso_clock_skew_seconds: int = Field(
        default=0,
        ge=0,
        le=300,
        description="Tolerance applied to assertion time windows",
    )
    sso_validation_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Wall-clock budget for validating one SAML response",
    )

    # Ephemeral state
    sso_relay_state_ttl_seconds: int = Field(
        default=600,
        ge=30,
        le=3600,
        description="Lifetime of a pending login (RelayState)",
    )

    # Provisioning
    sso_store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Timeout for a single identity store call",
    )
    sso_reconcile_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Re-reads attempted when a concurrent signup wins the race",
    )
    sso_reconcile_delay_seconds: float = Field(
        default=0.2,
        ge=0,
        le=5,
        description="Delay between reconciliation re-reads",
    )

    # Sessions
    sso_session_secret: SecretStr = Field(
        default_factory=lambda: SecretStr(secrets.token_urlsafe(32)),
        description="HMAC secret for one-time and application session tokens",
    )
    sso_session_token_ttl_seconds: int = Field(
        default=300,
        ge=30,
        le=3600,
        description="Lifetime of the one-time sign-in credential",
    )
    sso_app_session_ttl_seconds: int = Field(
        default=8 * 60 * 60,
        ge=300,
        description="Lifetime of the application session cookie",
    )
    sso_redeem_url: str = Field(
        default="http://localhost:8000/sso/session/redeem",
        description="URL where one-time sign-in credentials are redeemed",
    )
    sso_login_url: str = Field(
        default="http://localhost:3000/login",
        description="Frontend login page used for error redirects",
    )
    sso_post_login_redirect: str = Field(
        default="http://localhost:3000/dashboard",
        description="Where the browser lands after a successful sign-in",
    )

    # Service-to-service provisioning endpoint
    sso_service_token: Optional[SecretStr] = Field(
        default=None,
        description="Shared secret required by the provisioning endpoint",
    )

    @property
    def has_provider_source(self) -> bool:
        return bool(self.sso_providers_file or self.sso_providers_json)


class DatabaseSettings(BaseSettings):
    """Configuration for the Supabase identity store."""

    model_config = ENV_CONFIG

    supabase_url: Optional[str] = Field(
        default=None,
        description="Base URL of the Supabase project holding identities and profiles",
    )
    supabase_service_role_key: Optional[SecretStr] = Field(
        default=None,
        alias="supabase_service_key",
        description="Supabase service role key (auth admin API access)",
    )

    @property
    def is_configured(self) -> bool:
        """Provisioning needs the service role, the anon key is not enough."""
        return bool(self.supabase_url and self.supabase_service_role_key)


class SecuritySettings(BaseSettings):
    """Deployment stage, cookies, CORS."""

    model_config = ENV_CONFIG

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment stage; production tightens cookies and secrets",
    )
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated origins allowed to call the JSON endpoints",
    )
    cookie_secure: Optional[bool] = Field(
        default=None,
        description="Mark session cookies Secure (defaults to True in production)",
    )
    security_trust_request_id: bool = Field(
        default=False,
        description="Reuse X-Request-ID from a trusted proxy instead of minting one",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @property
    def origins_list(self) -> List[str]:
        return [
            origin.strip()
            for origin in self.allowed_origins.split(",")
            if origin.strip()
        ]


class LoggingSettings(BaseSettings):
    """Log level and output format."""

    model_config = ENV_CONFIG

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Emit JSON lines outside production too",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Log one access line per request",
    )


class SentrySettings(BaseSettings):
    """Error reporting."""

    model_config = ENV_CONFIG

    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry project DSN; reporting is off when unset",
    )
    sentry_environment: str = Field(
        default="development",
        description="Environment tag reported with events",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fraction of requests traced",
    )
    sentry_release: Optional[str] = Field(
        default="sso-gateway@1.0.0",
        description="Release tag reported with events",
    )
    server_name: str = Field(
        default="sso-gateway",
        description="Name attached to every Sentry event",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.sentry_dsn)


class RedisSettings(BaseSettings):
    """Configuration for Redis (shared ephemeral login state)."""

    model_config = ENV_CONFIG

    redis_url: Optional[str] = Field(
        default=None,
        description="redis:// URL shared by all gateway instances",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.redis_url)


class Settings(BaseSettings):
    """All configuration groups, each read from the same environment."""

    model_config = ENV_CONFIG

    sso: SSOSettings = Field(default_factory=SSOSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @model_validator(mode="after")
    def require_session_secret_in_production(self) -> "Settings":
        """Sign-in tokens must verify on every instance, not only the issuer."""
        if self.is_production and "sso_session_secret" not in self.sso.model_fields_set:
            raise ValueError("SSO_SESSION_SECRET must be set in production")
        return self

    @property
    def is_supabase_configured(self) -> bool:
        return self.database.is_configured

    @property
    def is_sentry_configured(self) -> bool:
        return self.sentry.is_configured

    @property
    def is_redis_configured(self) -> bool:
        return self.redis.is_configured

    @property
    def is_production(self) -> bool:
        return self.security.is_production

    def get_config_summary(self) -> dict:
        """Startup log summary. Secrets are never included."""
        return {
            "environment": self.security.environment,
            "sp_entity_id": self.sso.sso_sp_entity_id,
            "acs_url": self.sso.sso_acs_url,
            "providers_configured": self.sso.has_provider_source,
            "default_provider": self.sso.sso_default_provider,
            "clock_skew_seconds": self.sso.sso_clock_skew_seconds,
            "provisioning_endpoint_enabled": self.sso.sso_service_token is not None,
            "supabase_configured": self.is_supabase_configured,
            "redis_configured": self.is_redis_configured,
            "sentry_configured": self.is_sentry_configured,
            "allowed_origins": self.security.origins_list,
            "log_level": self.logging.log_level,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Settings for this process, loaded once.

    Raises:
        ValidationError: If the environment holds invalid values
    """
    return Settings()

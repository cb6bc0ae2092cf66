"""
Shared configuration management for the Identity Core.

All settings are read from the environment (prefix ``IDENTITY_``) or a
``.env`` file through pydantic-settings.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="IDENTITY_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_id: str = Field(default="auth-service", description="Identifier used in service credentials")

    # Token issuance
    public_url: str = Field(default="http://localhost:8010", description="Issuer of every token")
    frontend_url: str = Field(default="http://localhost:3000", description="Audience of access tokens")
    oauth_redirect_base: Optional[str] = Field(default=None, description="Defaults to frontend_url")
    access_token_ttl: int = Field(default=15 * 60)
    id_token_ttl: int = Field(default=60 * 60)
    email_verification_ttl: int = Field(default=24 * 60 * 60)
    refresh_token_ttl: int = Field(default=7 * 24 * 60 * 60)
    refresh_reuse_revokes_family: bool = Field(default=True)

    # Signing keys
    signing_algorithm: str = Field(default="RS256")
    active_key_cache_ttl: float = Field(default=60.0)
    auto_create_signing_key: bool = Field(default=True)

    # Record store
    record_store_url: str = Field(default="http://localhost:3002")
    record_store_timeout: float = Field(default=10.0)
    record_store_retries: int = Field(default=3)
    service_secret: str = Field(default="change-me", description="Shared secret for service credentials")
    service_token_ttl: int = Field(default=5 * 60)

    # Notification dispatcher
    notification_url: Optional[str] = Field(default=None)
    notification_timeout: float = Field(default=5.0)

    # Cache
    redis_url: Optional[str] = Field(default=None)
    jwks_cache_ttl: int = Field(default=300)

    # Generic OAuth2 providers
    google_client_id: Optional[str] = Field(default=None)
    google_client_secret: Optional[str] = Field(default=None)
    github_client_id: Optional[str] = Field(default=None)
    github_client_secret: Optional[str] = Field(default=None)
    provider_timeout: float = Field(default=10.0)
    oauth_state_ttl: int = Field(default=600)
    oauth_state_max_pending: int = Field(default=10000)

    # Hosted identity platform
    hosted_domain: Optional[str] = Field(default=None)
    hosted_client_id: Optional[str] = Field(default=None)
    hosted_client_secret: Optional[str] = Field(default=None)
    hosted_audience: Optional[str] = Field(default=None)
    hosted_management_audience: Optional[str] = Field(default=None)
    management_token_margin: int = Field(default=300)
    hosted_jwks_refresh_cooldown: float = Field(default=30.0)

    # Observability
    enable_metrics: bool = Field(default=True)

    @property
    def redirect_base(self) -> str:
        return (self.oauth_redirect_base or self.frontend_url).rstrip("/")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)

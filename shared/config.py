"""
Shared configuration management for the Directory Access Layer.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientIdSource(str, Enum):
    """Where the rate limiter takes a client's identity from."""

    IP_ADDRESS = "ip_address"
    API_KEY = "api_key"
    USER_ID = "user_id"


class RateLimitSettings(BaseModel):
    """Token bucket admission policy."""

    client_id_source: ClientIdSource = ClientIdSource.IP_ADDRESS
    token_limit: int = Field(default=100, ge=1)
    tokens_per_period: int = Field(default=20, ge=1)
    replenishment_period_seconds: float = Field(default=60, gt=0)
    queue_limit: int = Field(default=2, ge=0)
    max_queue_wait_seconds: float = Field(default=5, ge=0)
    default_retry_after_seconds: int = Field(default=30, ge=0)
    whitelisted_clients: List[str] = Field(default_factory=list)
    excluded_paths: List[str] = Field(
        default_factory=lambda: ["/health", "/metrics", "/docs", "/openapi.json"]
    )

    # Bucket registry bounds
    max_tracked_clients: int = Field(default=10000, ge=1)
    idle_ttl_seconds: Optional[float] = None

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.tokens_per_period / self.replenishment_period_seconds

    def effective_idle_ttl(self) -> float:
        """Idle time after which a bucket is guaranteed to be full again."""
        refill_to_capacity = self.token_limit * self.replenishment_period_seconds / self.tokens_per_period
        if self.idle_ttl_seconds is None:
            return max(600.0, refill_to_capacity)
        return max(self.idle_ttl_seconds, refill_to_capacity)


class JwtSettings(BaseModel):
    """Bearer credential issuance settings."""

    secret: str = "local-development-signing-secret-change-me"
    issuer: str = "directory-api"
    audience: str = "directory-clients"
    token_validity_minutes: int = Field(default=60, ge=1)
    refresh_token_validity_days: int = Field(default=7, ge=1)
    require_email_confirmation: bool = True
    denylist_backend: str = "memory"


class LockoutSettings(BaseModel):
    """Failed sign-in lockout policy."""

    max_failed_access_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=5, ge=1)
    allowed_for_new_users: bool = True


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DIRECTORY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/directory"
    account_store: str = "memory"
    seed_accounts_file: Optional[str] = None

    # Security
    jwt: JwtSettings = Field(default_factory=JwtSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)

    # Rate limiting
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)


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

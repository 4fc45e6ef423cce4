"""
Payment Integrity Service - Configuration Settings

Centralized configuration using Pydantic Settings for type-safe
environment variable handling with validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Example: APP_ENV=production will set app_env to "production"
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application Settings
    # =========================================================================
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    app_debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # =========================================================================
    # Storage Backends
    # =========================================================================
    storage_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Backend for purchase records and rate-limit buckets"
    )
    audit_backend: Literal["memory", "postgres"] = Field(
        default="memory",
        description="Backend for the fraud audit log and review queue"
    )

    # =========================================================================
    # Redis Configuration
    # =========================================================================
    redis_host: str = Field(
        default="localhost",
        description="Redis server hostname"
    )
    redis_port: int = Field(
        default=6379,
        description="Redis server port"
    )
    redis_db: int = Field(
        default=0,
        description="Redis database number"
    )
    redis_key_prefix: str = Field(
        default="payguard:",
        description="Prefix for all Redis keys to avoid conflicts"
    )
    redis_password: str | None = Field(
        default=None,
        description="Redis password (optional)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # =========================================================================
    # PostgreSQL Configuration
    # =========================================================================
    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL server hostname"
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL server port"
    )
    postgres_db: str = Field(
        default="payguard",
        description="PostgreSQL database name"
    )
    postgres_user: str = Field(
        default="payguard",
        description="PostgreSQL username"
    )
    postgres_password: str = Field(
        default="",
        description="PostgreSQL password (set via POSTGRES_PASSWORD env var)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL connection URL for asyncpg."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================================================================
    # API Configuration
    # =========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server bind address"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # =========================================================================
    # Security / Access Control
    # =========================================================================
    api_token: str | None = Field(
        default=None,
        description="API token for receipt validation endpoints (optional)"
    )
    admin_token: str | None = Field(
        default=None,
        description="Admin API key exchanged for a session at /admin/login"
    )
    metrics_token: str | None = Field(
        default=None,
        description="Token required to access /metrics (optional)"
    )
    admin_session_secret: str = Field(
        default="dev-admin-session-secret-change-me",
        description="HMAC secret used to sign admin session tokens"
    )
    admin_session_ttl_minutes: int = Field(
        default=60,
        description="Lifetime of an admin session token"
    )
    admin_id: str = Field(
        default="admin",
        description="Identity of sessions issued for ADMIN_TOKEN"
    )
    operator_keys: str = Field(
        default="",
        description="Comma-separated email=key pairs; these sessions carry no admin claim"
    )
    admin_email_allowlist: str = Field(
        default="",
        description="Comma-separated bootstrap admin emails (checked behind the gateway)"
    )
    trusted_proxies: str = Field(
        default="",
        description="Comma-separated proxy addresses whose X-Forwarded-For is honored"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def admin_email_allowlist_set(self) -> frozenset[str]:
        """Return the admin allow-list as a normalized set."""
        return frozenset(
            email.strip().lower()
            for email in self.admin_email_allowlist.split(",")
            if email.strip()
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def operator_key_map(self) -> dict[str, str]:
        """Return operator credentials as {email: key}."""
        keys: dict[str, str] = {}
        for pair in self.operator_keys.split(","):
            email, sep, key = pair.partition("=")
            if sep and email.strip() and key.strip():
                keys[email.strip().lower()] = key.strip()
        return keys

    @computed_field  # type: ignore[prop-decorator]
    @property
    def trusted_proxies_set(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.trusted_proxies.split(",") if p.strip())

    # =========================================================================
    # App Store Verification
    # =========================================================================
    appstore_production_url: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt",
        description="Production receipt verification endpoint"
    )
    appstore_sandbox_url: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt",
        description="Sandbox receipt verification endpoint"
    )
    appstore_shared_secret: str | None = Field(
        default=None,
        description="App-specific shared secret sent with every verification call"
    )
    appstore_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single verification call"
    )
    app_bundle_id: str | None = Field(
        default=None,
        description="Expected bundle id on signed notifications (unchecked if unset)"
    )

    # =========================================================================
    # Webhook Signature Verification
    # =========================================================================
    webhook_jwks_url: str = Field(
        default="https://appleid.apple.com/auth/keys",
        description="Published key set used to verify signed notifications"
    )
    webhook_jwks_cache_ttl_seconds: int = Field(
        default=86400,
        description="How long a fetched key set is trusted before refresh"
    )
    webhook_jwks_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the key-set fetch"
    )
    webhook_issuer: str | None = Field(
        default="appstorenotifications",
        description="Expected JWS issuer claim (unchecked if unset)"
    )
    webhook_algorithms: str = Field(
        default="ES256",
        description="Comma-separated signature algorithms accepted on notifications"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def webhook_algorithms_list(self) -> list[str]:
        """Return accepted webhook algorithms as a list."""
        return [alg.strip() for alg in self.webhook_algorithms.split(",") if alg.strip()]

    # =========================================================================
    # Metrics Configuration
    # =========================================================================
    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics endpoint"
    )

    # =========================================================================
    # Fraud Score Thresholds (0-100)
    # =========================================================================
    fraud_score_low: int = Field(default=30, ge=0, le=100)
    fraud_score_medium: int = Field(
        default=50,
        ge=0,
        le=100,
        description="At or above this score a transaction is queued for review"
    )
    fraud_score_high: int = Field(
        default=70,
        ge=0,
        le=100,
        description="At or above this score review priority is escalated"
    )
    fraud_score_critical: int = Field(
        default=80,
        ge=0,
        le=100,
        description="At or above this score an admin alert is raised"
    )

    # =========================================================================
    # Fraud Signal Thresholds
    # These can be tuned via config without code changes
    # =========================================================================
    max_refunds_warning: int = Field(default=2, description="Refund count for the mid tier")
    max_refunds_critical: int = Field(default=3, description="Refund count for the top tier")
    refund_rate_suspicious: float = Field(
        default=0.5,
        description="Refund ratio over the cycling window that is suspicious"
    )
    refund_cycle_window_days: int = Field(default=30)
    rapid_refund_hours: int = Field(
        default=24,
        description="A refund this soon after purchase counts as rapid"
    )

    max_validation_failures_warning: int = Field(default=3)
    max_validation_failures_critical: int = Field(default=5)

    new_account_high_risk_hours: int = Field(
        default=24,
        description="Accounts younger than this receive the full age penalty"
    )
    new_account_decay_days: int = Field(
        default=7,
        description="Age by which the account-age penalty has decayed to zero"
    )

    jailbreak_risk_medium: float = Field(default=0.4)
    jailbreak_risk_high: float = Field(
        default=0.7,
        description="Jailbreak risk above this is logged as a security event"
    )

    max_promo_codes_per_user: int = Field(
        default=3,
        description="Promotional purchases allowed in the lookback window"
    )
    promo_lookback_days: int = Field(default=30)

    max_purchases_per_hour: int = Field(default=3)
    max_purchases_per_day: int = Field(default=10)

    max_users_per_device: int = Field(default=3)

    # =========================================================================
    # Admin Rate Limit Tiers (fixed window)
    # =========================================================================
    login_rate_limit: int = Field(default=5, description="Login attempts per window")
    login_rate_window_seconds: int = Field(default=900)
    admin_action_rate_limit: int = Field(default=100, description="Admin actions per window")
    admin_action_rate_window_seconds: int = Field(default=60)
    bulk_operation_rate_limit: int = Field(default=10, description="Bulk operations per window")
    bulk_operation_rate_window_seconds: int = Field(default=3600)

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Enforce required security settings in production."""
        if self.app_env == "production":
            missing: list[str] = []
            if not self.api_token:
                missing.append("API_TOKEN")
            if not self.admin_token:
                missing.append("ADMIN_TOKEN")
            if not self.metrics_token:
                missing.append("METRICS_TOKEN")
            if not self.appstore_shared_secret:
                missing.append("APPSTORE_SHARED_SECRET")
            if self.admin_session_secret.startswith("dev-"):
                missing.append("ADMIN_SESSION_SECRET")
            if missing:
                raise ValueError(
                    "Missing required settings for production: "
                    + ", ".join(missing)
                )
        return self

    @model_validator(mode="after")
    def _validate_score_ordering(self) -> "Settings":
        """Score thresholds must be ordered low <= medium <= high <= critical."""
        ordered = [
            self.fraud_score_low,
            self.fraud_score_medium,
            self.fraud_score_high,
            self.fraud_score_critical,
        ]
        if ordered != sorted(ordered):
            raise ValueError("Fraud score thresholds must be non-decreasing")
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment on every call.
    """
    return Settings()


# Singleton settings instance for easy import
settings = get_settings()

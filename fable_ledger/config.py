"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Fable Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and contest voting accounting service"

    # Identity - Firebase ID tokens
    firebase_project_id: str = ""
    admin_emails: str = ""  # Comma-separated list of admin emails
    uid_aliases: str = ""  # Comma-separated "from_uid:to_uid" pairs
    token_cache_size: int = 10000

    # Views - number of reverse proxies in front of the API whose
    # X-Forwarded-For entries are trusted; 0 means use the socket peer
    trusted_proxy_hops: int = 0

    @property
    def admin_email_set(self) -> frozenset[str]:
        """Get normalized set of admin emails."""
        return frozenset(
            email.strip().lower() for email in self.admin_emails.split(",") if email.strip()
        )

    @property
    def uid_alias_map(self) -> dict[str, str]:
        """Parse UID_ALIASES into a mapping of aliased uid -> canonical uid."""
        aliases: dict[str, str] = {}
        for pair in self.uid_aliases.split(","):
            pair = pair.strip()
            if not pair:
                continue
            source, _, target = pair.partition(":")
            if source.strip() and target.strip():
                aliases[source.strip()] = target.strip()
        return aliases

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "fable-ledger-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    checkout_success_url: str = "http://localhost:3000/credits/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "http://localhost:3000/credits/purchase"

    # Voting
    vote_weight_free: int = 1
    vote_weight_premium: int = 2
    vote_weight_super: int = 3
    vote_cost_free: int = 0  # Credits debited per vote of this tier
    vote_cost_premium: int = 0
    vote_cost_super: int = 0
    default_free_votes: int = 1
    default_premium_votes: int = 0
    default_super_votes: int = 0
    daily_claim_bonus_interval: int = 3  # Bonus vote every N streak days

    # Unlocks
    unlock_credit_cost: int = 1  # Credits debited to unlock one piece of content

    # Consistency
    storage_conflict_max_retries: int = 3
    operation_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        for name in ("vote_weight_free", "vote_weight_premium", "vote_weight_super"):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")

        for name in (
            "vote_cost_free",
            "vote_cost_premium",
            "vote_cost_super",
            "default_free_votes",
            "default_premium_votes",
            "default_super_votes",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name.upper()} cannot be negative")

        if self.unlock_credit_cost <= 0:
            errors.append("UNLOCK_CREDIT_COST must be positive")

        if self.daily_claim_bonus_interval <= 0:
            errors.append("DAILY_CLAIM_BONUS_INTERVAL must be positive")

        if self.trusted_proxy_hops < 0:
            errors.append("TRUSTED_PROXY_HOPS cannot be negative")

        if self.storage_conflict_max_retries < 1:
            errors.append("STORAGE_CONFLICT_MAX_RETRIES must be at least 1")

        if self.operation_timeout_seconds <= 0:
            errors.append("OPERATION_TIMEOUT_SECONDS must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings

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


QUOTA_POLICIES = ("free_first", "paid_first")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Bright Gateway API"
    api_version: str = "0.1.0"
    api_description: str = "Credit-metered gateway for the perspective analysis pipeline"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "bright-gateway"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_publishable_key: str = ""  # pk_test_... or pk_live_...

    # Pricing and quota
    unit_price_minor: int = 20  # price of one credit in minor units
    currency: str = "eur"
    max_purchase_quantity: int = 100
    free_pool_limit: int = 100  # total free conversations ever grantable
    quota_policy: str = "free_first"  # free_first | paid_first

    # Ledger transaction retries
    ledger_max_attempts: int = 5
    ledger_retry_base_delay: float = 0.02

    # Conversation sessions
    session_ttl_seconds: int = 600
    session_early_revocation: bool = False
    session_purge_interval_seconds: int = 300

    # Completion provider - Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    completion_timeout_seconds: float = 60.0
    completion_max_output_tokens: int = 8192

    # Evidence lookup
    evidence_search_url: str = "https://html.duckduckgo.com/html/"
    evidence_user_agent: str = "Mozilla/5.0 (compatible; BrightApp/1.0)"
    evidence_search_timeout_seconds: float = 10.0
    evidence_fetch_timeout_seconds: float = 10.0
    evidence_max_chars: int = 2000
    evidence_max_page_bytes: int = 512_000  # download cap per fetched page
    search_max_results: int = 3
    evidence_pages_per_search: int = 2

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def pipeline_budget_seconds(self) -> float:
        """Worst-case wall clock of one full pipeline run."""
        completion_calls = 6
        evidence_rounds = 2  # conflict + support, each search then fetch
        return completion_calls * self.completion_timeout_seconds + evidence_rounds * (
            self.evidence_search_timeout_seconds + self.evidence_fetch_timeout_seconds
        )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.unit_price_minor <= 0:
            errors.append(f"UNIT_PRICE_MINOR must be positive, got: {self.unit_price_minor}")
        if len(self.currency) != 3:
            errors.append(f"CURRENCY must be a 3-letter code, got: {self.currency}")
        if self.free_pool_limit < 0:
            errors.append(f"FREE_POOL_LIMIT cannot be negative, got: {self.free_pool_limit}")
        if self.quota_policy not in QUOTA_POLICIES:
            errors.append(
                f"QUOTA_POLICY must be one of {', '.join(QUOTA_POLICIES)}, "
                f"got: {self.quota_policy}"
            )
        if self.ledger_max_attempts < 1:
            errors.append("LEDGER_MAX_ATTEMPTS must be at least 1")

        # A session must outlive the conversation it paid for
        if self.session_ttl_seconds <= self.pipeline_budget_seconds:
            errors.append(
                f"SESSION_TTL_SECONDS ({self.session_ttl_seconds}) must exceed the "
                f"pipeline worst case ({self.pipeline_budget_seconds:.0f}s)"
            )

        # If we have errors, fail immediately with clear messaging
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

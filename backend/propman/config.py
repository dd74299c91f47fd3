"""
Property Management Backend — Configuration
============================================
Pydantic-based settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration."""

    # ---- Application ----
    app_name: str = "Property Management Backend"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    # ---- PostgreSQL ----
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "property_management"
    postgres_user: str = "pm_admin"
    postgres_password: str = "changeme"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ---- Storage ----
    # "postgres" uses SQLAlchemy over asyncpg; "memory" keeps records in-process (dev only)
    storage_backend: str = "postgres"
    rls_enabled: bool = True
    create_schema_on_startup: bool = True

    # ---- Auth ----
    auth_required: bool = True
    oidc_issuer_url: Optional[str] = None
    oidc_client_id: Optional[str] = None
    oidc_audience: Optional[str] = None
    oidc_org_claim: str = "org_id"

    # Caller used when auth_required is off
    dev_caller_id: str = "dev-user"
    dev_org_id: Optional[str] = "dev-org"
    dev_caller_email: str = "dev@example.com"

    # ---- Identity provider webhooks ----
    webhook_secret: Optional[str] = None

    # ---- Organization defaults ----
    default_timezone: str = "America/New_York"
    default_currency: str = "USD"
    default_late_fee_amount: int = 50
    default_grace_period_days: int = 5

    @property
    def default_org_settings(self) -> dict:
        return {
            "timezone": self.default_timezone,
            "currency": self.default_currency,
            "lateFeeAmount": self.default_late_fee_amount,
            "gracePeriodDays": self.default_grace_period_days,
        }

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()

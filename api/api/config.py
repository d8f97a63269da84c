"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Deployment environment labels."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.  Engine settings (database, pricing, subscription
    allotments) live in :class:`ledger_engine.config.LedgerSettings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Overrides LEDGER_DATABASE_URL when set.
    database_url: str | None = None

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]

    # Whether CORS responses include credentials (cookies, auth headers).
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers reject ``Access-Control-Allow-Origin: *`` together with
        ``Access-Control-Allow-Credentials: true``; fail at startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Payment provider webhook verification.
    stripe_webhook_secret: SecretStr = SecretStr("")
    stripe_webhook_tolerance_seconds: int = 300

    # Static bearer tokens.  An empty token disables that role.
    service_token: SecretStr = SecretStr("")
    admin_token: SecretStr = SecretStr("")

    @model_validator(mode="after")
    def _validate_production_secrets(self) -> Self:
        if self.platform_env == PlatformEnv.PRODUCTION:
            missing = [
                name
                for name, value in (
                    ("API_STRIPE_WEBHOOK_SECRET", self.stripe_webhook_secret),
                    ("API_SERVICE_TOKEN", self.service_token),
                )
                if not value.get_secret_value()
            ]
            if missing:
                raise ValueError(f"{', '.join(missing)} must be set in production")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()

"""Ledger engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ledger_engine.money import to_minor

logger = logging.getLogger(__name__)


class LedgerEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class LedgerSettings(BaseSettings):
    """Engine settings loaded from environment variables with LEDGER_ prefix.

    Amount-valued settings are expressed in currency units (``Decimal``)
    and exposed in minor units through the ``*_minor`` properties.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: LedgerEnv = LedgerEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.ledger/ledger.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Pricing
    default_markup_multiplier: Decimal = Field(default=Decimal("1.5"), ge=1)
    pricing_refresh_seconds: int = Field(default=300, ge=0)

    # Accounts
    welcome_credits: Decimal = Decimal("1.00")

    # Subscriptions
    default_credits_per_seat: Decimal = Decimal("5.00")
    plan_credits_per_seat: dict[str, Decimal] = Field(default_factory=dict)
    trial_credits_enabled: bool = True

    # Usage charging retries (transient store failures only)
    charge_max_retries: int = Field(default=2, ge=0)
    charge_retry_base_delay: float = Field(default=0.2, gt=0)

    @field_validator("welcome_credits", "default_credits_per_seat")
    @classmethod
    def _validate_amount(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Credit amounts must be non-negative")
        to_minor(v)
        return v

    @field_validator("plan_credits_per_seat")
    @classmethod
    def _validate_plan_credits(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        for plan_id, amount in v.items():
            if amount < 0:
                raise ValueError(f"Credits per seat for plan '{plan_id}' must be non-negative")
            to_minor(amount)
        return v

    @property
    def welcome_credits_minor(self) -> int:
        return to_minor(self.welcome_credits)

    @property
    def default_credits_per_seat_minor(self) -> int:
        return to_minor(self.default_credits_per_seat)

    @property
    def plan_credits_per_seat_minor(self) -> dict[str, int]:
        return {plan_id: to_minor(amount) for plan_id, amount in self.plan_credits_per_seat.items()}


def load_ledger_settings(**overrides: object) -> LedgerSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = LedgerSettings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded ledger settings for environment: %s", settings.env.value)

    return settings

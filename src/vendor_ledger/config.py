"""Configuration management for the vendor ledger."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    rejection_penalty: Decimal
    cancellation_penalty: Decimal
    auto_rejection_penalty: Decimal
    task_acceptance_fee: Decimal
    response_window_minutes: int
    auto_reject_interval_seconds: float
    payout_policy: str
    default_security_deposit: Decimal
    log_level: str

    @property
    def acceptance_fee_enabled(self) -> bool:
        """Whether vendors pay a fee to accept a task."""
        return self.task_acceptance_fee > 0

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///vendor_ledger.db"),
            rejection_penalty=Decimal(os.getenv("REJECTION_PENALTY", "100")),
            cancellation_penalty=Decimal(os.getenv("CANCELLATION_PENALTY", "100")),
            auto_rejection_penalty=Decimal(os.getenv("AUTO_REJECTION_PENALTY", "100")),
            task_acceptance_fee=Decimal(os.getenv("TASK_ACCEPTANCE_FEE", "0")),
            response_window_minutes=int(os.getenv("RESPONSE_WINDOW_MINUTES", "25")),
            auto_reject_interval_seconds=float(os.getenv("AUTO_REJECT_INTERVAL_SECONDS", "60")),
            payout_policy=os.getenv("PAYOUT_POLICY", "flat_fee"),
            default_security_deposit=Decimal(os.getenv("DEFAULT_SECURITY_DEPOSIT", "0")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()

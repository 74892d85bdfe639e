# bikehub/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from dotenv import load_dotenv
load_dotenv()


def _env(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///./bikehub.db"
    database_sslmode: str = ""
    allowed_origins: List[str] = field(
        default_factory=lambda: ["http://127.0.0.1:5173", "http://localhost:5173"]
    )
    log_level: str = "INFO"

    # payments
    currency: str = "USD"
    initial_payment_percent: Decimal = Decimal("20")
    checkout_poll_interval_seconds: int = 10
    checkout_poll_max_attempts: int = 30
    gateway_base_url: str = "https://api.stripe.com"
    gateway_api_key: str = ""
    checkout_success_url: str = "http://localhost:5173/payments/success"
    checkout_cancel_url: str = "http://localhost:5173/payments/cancel"

    # lifecycle sweeps
    request_timeout_minutes: int = 24 * 60
    sweep_interval_seconds: int = 60
    event_retention_days: int = 7
    enable_scheduler: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        origins = _env("ALLOWED_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
        return cls(
            database_url=_env("DATABASE_URL", cls.database_url),
            database_sslmode=_env("DATABASE_SSLMODE", ""),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            currency=_env("CURRENCY", cls.currency).upper(),
            initial_payment_percent=Decimal(_env("INITIAL_PAYMENT_PERCENT", "20")),
            checkout_poll_interval_seconds=int(_env("CHECKOUT_POLL_INTERVAL_SECONDS", "10")),
            checkout_poll_max_attempts=int(_env("CHECKOUT_POLL_MAX_ATTEMPTS", "30")),
            gateway_base_url=_env("GATEWAY_BASE_URL", cls.gateway_base_url),
            gateway_api_key=_env("GATEWAY_API_KEY", ""),
            checkout_success_url=_env("CHECKOUT_SUCCESS_URL", cls.checkout_success_url),
            checkout_cancel_url=_env("CHECKOUT_CANCEL_URL", cls.checkout_cancel_url),
            request_timeout_minutes=int(_env("REQUEST_TIMEOUT_MINUTES", str(24 * 60))),
            sweep_interval_seconds=int(_env("SWEEP_INTERVAL_SECONDS", "60")),
            event_retention_days=int(_env("EVENT_RETENTION_DAYS", "7")),
            enable_scheduler=_env_bool("ENABLE_SCHEDULER", True),
        )

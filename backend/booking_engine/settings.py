"""Environment-driven configuration for the booking engine.

Values are read once at import time. Malformed numbers fall back to their
defaults instead of breaking startup.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "booking.sqlite3")


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid integer for %s: %r", name, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range value for %s: %r (minimum %s)", name, raw, minimum)
        return default
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid float for %s: %r", name, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range value for %s: %r (minimum %s)", name, raw, minimum)
        return default
    return value


def _env_csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class FeeConfig:
    """Platform fee taken from each booking authorization."""

    percent: float = 0.0
    fixed_cents: int = 0


@dataclass(frozen=True)
class ScheduleDefaults:
    timezone: str = "America/New_York"
    buffer_minutes: int = 15
    minimum_notice_hours: int = 24
    advance_booking_days: int = 30


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    confirmation_window_hours: int = 24
    max_slot_query_days: int = 62
    default_currency: str = "usd"
    fees: FeeConfig = field(default_factory=FeeConfig)
    schedule_defaults: ScheduleDefaults = field(default_factory=ScheduleDefaults)
    stripe_api_key: str = ""
    stripe_max_network_retries: int = 2
    firebase_credentials_path: str = ""
    cancellation_policies_path: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    trusted_hosts: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings() -> Settings:
    loaded = Settings(
        db_path=os.getenv("BOOKING_DB_PATH", DEFAULT_DB_PATH),
        confirmation_window_hours=_env_int("CONFIRMATION_WINDOW_HOURS", 24, minimum=1),
        max_slot_query_days=_env_int("MAX_SLOT_QUERY_DAYS", 62, minimum=1),
        default_currency=os.getenv("DEFAULT_CURRENCY", "usd").strip().lower() or "usd",
        fees=FeeConfig(
            percent=_env_float("PLATFORM_FEE_PERCENT", 0.0),
            fixed_cents=_env_int("PLATFORM_FEE_FIXED_CENTS", 0),
        ),
        stripe_api_key=os.getenv("STRIPE_API_KEY", "").strip(),
        stripe_max_network_retries=_env_int("STRIPE_MAX_NETWORK_RETRIES", 2),
        firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip(),
        cancellation_policies_path=os.getenv("CANCELLATION_POLICIES_PATH", "").strip(),
        cors_origins=_env_csv("CORS_ORIGINS", "*"),
        trusted_hosts=_env_csv("TRUSTED_HOSTS", "*"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
    logging.basicConfig(
        level=getattr(logging, loaded.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    return loaded


settings = load_settings()

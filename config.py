from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_url: str
    booking_api_key: str
    admin_api_key: str
    log_level: str
    schedule_timezone: str
    min_booking_minutes: int
    max_active_bookings: int
    start_grace_minutes: int
    max_transaction_retries: int
    suggestion_shift_minutes: tuple[int, ...]
    suggestion_step_minutes: int
    suggestion_horizon_days: int
    suggestion_max_candidates: int
    suggestion_limit: int
    minor_overlap_minutes: int
    travel_buffer_minutes: int
    usage_lookback_days: int
    usage_penalty: float


@dataclass(frozen=True)
class EngineConfig:
    schedule_timezone: str = "UTC"
    min_booking_minutes: int = 30
    max_active_bookings: int = 5
    start_grace_minutes: int = 1
    max_transaction_retries: int = 3
    shift_minutes: tuple[int, ...] = (15, 30)
    step_minutes: int = 30
    horizon_days: int = 7
    max_candidates: int = 200
    suggestion_limit: int = 10
    minor_overlap_minutes: int = 5
    travel_buffer_minutes: int = 10
    usage_lookback_days: int = 30
    usage_penalty: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            schedule_timezone=settings.schedule_timezone,
            min_booking_minutes=settings.min_booking_minutes,
            max_active_bookings=settings.max_active_bookings,
            start_grace_minutes=settings.start_grace_minutes,
            max_transaction_retries=max(settings.max_transaction_retries, 1),
            shift_minutes=settings.suggestion_shift_minutes,
            step_minutes=max(settings.suggestion_step_minutes, 1),
            horizon_days=settings.suggestion_horizon_days,
            max_candidates=settings.suggestion_max_candidates,
            suggestion_limit=settings.suggestion_limit,
            minor_overlap_minutes=settings.minor_overlap_minutes,
            travel_buffer_minutes=settings.travel_buffer_minutes,
            usage_lookback_days=settings.usage_lookback_days,
            usage_penalty=settings.usage_penalty,
        )


def _clean(value: str) -> str:
    return value.strip().strip('"').strip("'")


def _get_required_env(name: str) -> str:
    value = _clean(os.getenv(name, ""))
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _get_int_env(name: str, default: int) -> int:
    raw = _clean(os.getenv(name, ""))
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = _clean(os.getenv(name, ""))
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}") from exc


def _get_int_list_env(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = _clean(os.getenv(name, ""))
    if not raw:
        return default
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a comma separated list of integers") from exc


@lru_cache
def get_settings() -> Settings:
    return Settings(
        app_name="Resource Booking Engine",
        app_version="1.0.0",
        database_url=_get_required_env("DATABASE_URL"),
        booking_api_key=_get_required_env("BOOKING_API_KEY"),
        admin_api_key=_get_required_env("ADMIN_API_KEY"),
        log_level=_clean(os.getenv("LOG_LEVEL", "INFO")) or "INFO",
        schedule_timezone=_clean(os.getenv("SCHEDULE_TIMEZONE", "UTC")) or "UTC",
        min_booking_minutes=_get_int_env("MIN_BOOKING_MINUTES", 30),
        max_active_bookings=_get_int_env("MAX_ACTIVE_BOOKINGS", 5),
        start_grace_minutes=_get_int_env("START_GRACE_MINUTES", 1),
        max_transaction_retries=_get_int_env("MAX_TRANSACTION_RETRIES", 3),
        suggestion_shift_minutes=_get_int_list_env("SUGGESTION_SHIFT_MINUTES", (15, 30)),
        suggestion_step_minutes=_get_int_env("SUGGESTION_STEP_MINUTES", 30),
        suggestion_horizon_days=_get_int_env("SUGGESTION_HORIZON_DAYS", 7),
        suggestion_max_candidates=_get_int_env("SUGGESTION_MAX_CANDIDATES", 200),
        suggestion_limit=_get_int_env("SUGGESTION_LIMIT", 10),
        minor_overlap_minutes=_get_int_env("MINOR_OVERLAP_MINUTES", 5),
        travel_buffer_minutes=_get_int_env("TRAVEL_BUFFER_MINUTES", 10),
        usage_lookback_days=_get_int_env("USAGE_LOOKBACK_DAYS", 30),
        usage_penalty=_get_float_env("USAGE_PENALTY", 1.0),
    )

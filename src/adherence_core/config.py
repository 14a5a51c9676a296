"""Runtime configuration read from ADHERENCE_* environment variables.

Invalid values fail fast with RuntimeError so a misconfigured process never
starts serving adherence data.
"""

import os
from dataclasses import dataclass
from datetime import timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_LOG_FORMATS = ("json", "text")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    tolerance_minutes: int = 15
    window_days: int = 30
    streak_cap: int = 366
    activity_days: int = 7
    timezone: str = "UTC"
    log_format: str = "json"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.tolerance_minutes < 0:
            raise RuntimeError("ADHERENCE_TOLERANCE_MINUTES must not be negative")
        if self.window_days <= 0 or self.activity_days <= 0:
            raise RuntimeError("ADHERENCE_WINDOW_DAYS and ADHERENCE_ACTIVITY_DAYS must be positive")
        if self.streak_cap < 366:
            raise RuntimeError("ADHERENCE_STREAK_CAP must allow at least a year (366)")
        if self.log_format not in _LOG_FORMATS:
            raise RuntimeError(f"ADHERENCE_LOG_FORMAT must be one of {_LOG_FORMATS}")
        if self.log_level not in _LOG_LEVELS:
            raise RuntimeError(f"ADHERENCE_LOG_LEVEL must be one of {_LOG_LEVELS}")

    @property
    def tolerance(self) -> timedelta:
        return timedelta(minutes=self.tolerance_minutes)

    def zone(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise RuntimeError(f"Unknown ADHERENCE_TIMEZONE {self.timezone!r}") from exc

    @classmethod
    def from_env(cls) -> "Config":
        try:
            return cls(
                tolerance_minutes=int(os.environ.get("ADHERENCE_TOLERANCE_MINUTES", "15")),
                window_days=int(os.environ.get("ADHERENCE_WINDOW_DAYS", "30")),
                streak_cap=int(os.environ.get("ADHERENCE_STREAK_CAP", "366")),
                activity_days=int(os.environ.get("ADHERENCE_ACTIVITY_DAYS", "7")),
                timezone=os.environ.get("ADHERENCE_TIMEZONE", "UTC"),
                log_format=os.environ.get("ADHERENCE_LOG_FORMAT", "json"),
                log_level=os.environ.get("ADHERENCE_LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as exc:
            raise RuntimeError(f"Invalid adherence configuration: {exc}") from exc

import os
from datetime import time
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        daily_run_at: time,
        monthly_run_at: time,
        sweep_workers: int,
        max_obligation_failures: int,
        max_catch_up: int,
        scheduler_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.daily_run_at = daily_run_at
        self.monthly_run_at = monthly_run_at
        self.sweep_workers = sweep_workers
        self.max_obligation_failures = max_obligation_failures
        self.max_catch_up = max_catch_up
        self.scheduler_enabled = scheduler_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("WALLET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_clock(value: str, name: str) -> time:
    try:
        hour, minute = value.split(":")
        return time(int(hour), int(minute))
    except ValueError as exc:
        raise ValueError(f"{name} must be HH:MM, got {value!r}") from exc


def _parse_positive_int(value: str, name: str) -> int:
    parsed = int(value)
    if parsed < 1:
        raise ValueError(f"{name} must be at least 1")
    return parsed


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "wallet.db"
    database_url = os.getenv("WALLET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("WALLET_TIMEZONE", "Europe/Berlin")
    daily_run_at = _parse_clock(
        os.getenv("WALLET_DAILY_RUN_AT", "00:01"), "WALLET_DAILY_RUN_AT"
    )
    monthly_run_at = _parse_clock(
        os.getenv("WALLET_MONTHLY_RUN_AT", "00:05"), "WALLET_MONTHLY_RUN_AT"
    )
    sweep_workers = _parse_positive_int(
        os.getenv("WALLET_SWEEP_WORKERS", "4"), "WALLET_SWEEP_WORKERS"
    )
    max_obligation_failures = _parse_positive_int(
        os.getenv("WALLET_MAX_OBLIGATION_FAILURES", "3"),
        "WALLET_MAX_OBLIGATION_FAILURES",
    )
    max_catch_up = _parse_positive_int(
        os.getenv("WALLET_MAX_CATCH_UP", "366"), "WALLET_MAX_CATCH_UP"
    )
    scheduler_enabled = _parse_bool(os.getenv("WALLET_SCHEDULER_ENABLED", "true"))
    log_level = os.getenv("WALLET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        daily_run_at=daily_run_at,
        monthly_run_at=monthly_run_at,
        sweep_workers=sweep_workers,
        max_obligation_failures=max_obligation_failures,
        max_catch_up=max_catch_up,
        scheduler_enabled=scheduler_enabled,
        log_level=log_level,
    )

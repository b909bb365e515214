import logging
import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        audit_interval_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.audit_interval_minutes = audit_interval_minutes


def _data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"LEDGER_TIMEZONE is not a known time zone: {name}") from exc
    return name


def _log_level(name: str) -> str:
    level = name.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"LEDGER_LOG_LEVEL is not a logging level: {name}")
    return level


def _positive_minutes(raw: str) -> int:
    minutes = int(raw)
    if minutes < 1:
        raise ValueError("LEDGER_AUDIT_INTERVAL_MINUTES must be at least 1")
    return minutes


def load_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_data_dir() / 'ledger.db'}"
    return Settings(
        database_url=database_url,
        timezone=_timezone(os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")),
        log_level=_log_level(os.getenv("LEDGER_LOG_LEVEL", "INFO")),
        audit_interval_minutes=_positive_minutes(
            os.getenv("LEDGER_AUDIT_INTERVAL_MINUTES", "60")
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()

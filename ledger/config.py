from __future__ import annotations

import logging
import logging.config
import os
from dataclasses import dataclass

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": LOG_FORMAT,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": logging.DEBUG,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": logging.INFO,
    },
}


@dataclass(frozen=True)
class Settings:
    database_url: str
    anchor_currency: str
    frontend_origin: str
    scheduler_enabled: bool
    scheduler_interval_seconds: int
    log_level: str


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_default_anchor_currency() -> str:
    raw = os.getenv("ANCHOR_CURRENCY", "USD").strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return "USD"
    return raw


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./ledger.db"),
        anchor_currency=get_default_anchor_currency(),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
        scheduler_enabled=_get_bool("SCHEDULER_ENABLED", True),
        scheduler_interval_seconds=_get_int("SCHEDULER_INTERVAL_SECONDS", 60 * 60),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"
    config = dict(LOGGING_CONFIG)
    config["root"] = {**LOGGING_CONFIG["root"], "level": level}
    logging.config.dictConfig(config)

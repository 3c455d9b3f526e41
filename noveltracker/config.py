"""Runtime configuration.

Settings come from environment variables. ``.env.local`` and ``.env`` in
the working directory are loaded first with python-dotenv; variables that
are already set in the environment take precedence.

Missing AI credentials are not an error: the summarizer or illustrator
simply turns into a skip and a warning is logged at startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


@dataclass
class Settings:
    anthropic_api_key: Optional[str] = None
    together_api_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "INFO"
    data_dir: Path = Path("data")
    images_dir: Path = Path("generated/images")
    log_dir: Path = Path("logs")
    summary_model: str = "claude-3-haiku-20240307"
    image_model: str = "black-forest-labs/FLUX.1-schnell-Free"
    check_interval_hours: int = 6
    daily_summary_hour: int = 8
    cleanup_weekday: int = 6  # Monday is 0
    cleanup_hour: int = 2
    retention_days: int = 30
    book_delay_seconds: float = 2.0
    chapter_delay_seconds: float = 1.0
    request_timeout_seconds: float = 30.0
    initial_chapters: int = 3
    max_summary_retries: int = 3
    enable_scheduler: bool = True

    @property
    def summarizer_enabled(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def illustrator_enabled(self) -> bool:
        return bool(self.together_api_key)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _weekday(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    if raw in WEEKDAYS:
        return WEEKDAYS.index(raw)
    value = _int(env, name, default)
    if not 0 <= value <= 6:
        logger.warning("Ignoring out of range %s=%r, using %s", name, raw, default)
        return default
    return value


def _interval_hours(env: Mapping[str, str], name: str, default: int) -> int:
    # Check slots repeat every day, so the interval has to divide 24.
    value = _int(env, name, default)
    if value < 1 or 24 % value != 0:
        logger.warning("Ignoring %s=%r, it must divide 24; using %s", name, env.get(name), default)
        return default
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``).

    When reading the real process environment the dotenv files are
    loaded first. Passing an explicit mapping skips dotenv entirely,
    which keeps tests independent of files on disk.
    """
    if env is None:
        load_dotenv(".env.local")
        load_dotenv(".env")
        env = os.environ

    environment = (env.get("APP_ENV") or "development").strip().lower()
    default_level = "DEBUG" if environment == "development" else "INFO"
    return Settings(
        anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
        together_api_key=env.get("TOGETHER_API_KEY") or None,
        host=env.get("HOST") or "0.0.0.0",
        port=_int(env, "PORT", 3000),
        environment=environment,
        log_level=(env.get("LOG_LEVEL") or default_level).upper(),
        data_dir=Path(env.get("DATA_DIR") or "data"),
        images_dir=Path(env.get("IMAGES_DIR") or "generated/images"),
        log_dir=Path(env.get("LOG_DIR") or "logs"),
        summary_model=env.get("SUMMARY_MODEL") or Settings.summary_model,
        image_model=env.get("IMAGE_MODEL") or Settings.image_model,
        check_interval_hours=_interval_hours(env, "CHECK_INTERVAL_HOURS", 6),
        daily_summary_hour=_int(env, "DAILY_SUMMARY_HOUR", 8) % 24,
        cleanup_weekday=_weekday(env, "CLEANUP_WEEKDAY", 6),
        cleanup_hour=_int(env, "CLEANUP_HOUR", 2) % 24,
        retention_days=_int(env, "RETENTION_DAYS", 30),
        book_delay_seconds=_float(env, "BOOK_DELAY_SECONDS", 2.0),
        chapter_delay_seconds=_float(env, "CHAPTER_DELAY_SECONDS", 1.0),
        request_timeout_seconds=_float(env, "REQUEST_TIMEOUT_SECONDS", 30.0),
        initial_chapters=max(1, _int(env, "INITIAL_CHAPTERS", 3)),
        max_summary_retries=max(0, _int(env, "MAX_SUMMARY_RETRIES", 3)),
        enable_scheduler=_bool(env, "ENABLE_SCHEDULER", environment != "test"),
    )

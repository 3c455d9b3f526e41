"""Logging setup.

Console output plus two files under ``settings.log_dir``:
``combined.log`` receives everything and ``error.log`` only errors.
Modules log through ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging

from .config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def setup_logging(settings: Settings) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    global _configured
    root = logging.getLogger()
    level = getattr(logging, settings.log_level, logging.INFO)
    root.setLevel(level)
    if _configured:
        return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    combined = logging.FileHandler(settings.log_dir / "combined.log", encoding="utf-8")
    combined.setFormatter(formatter)
    root.addHandler(combined)

    errors = logging.FileHandler(settings.log_dir / "error.log", encoding="utf-8")
    errors.setLevel(logging.ERROR)
    errors.setFormatter(formatter)
    root.addHandler(errors)

    # httpx logs every request at INFO; keep that out of the combined log.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True

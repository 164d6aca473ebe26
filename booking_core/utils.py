"""
Utility helpers: logging setup, date/time coercion shared by the modules.

Funções auxiliares: configuração de logs e conversão de datas/horários.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .config import LoggingConfig, get_settings


def setup_logging(logging_cfg: LoggingConfig | None = None) -> None:
    """
    Configure application-wide logging with rotation.

    Configura log em arquivo com rotação e saída no console.
    """
    if logging_cfg is None:
        logging_cfg = get_settings().logging

    logs_dir: Path = logging_cfg.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / "booking_core.log"

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)


def normalize_time(value: Any) -> Optional[str]:
    """
    Return ``value`` as a zero-padded ``HH:MM`` string, or None if it is not a time.

    "9:00" -> "09:00", "09:00:00" -> "09:00".
    """
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) < 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return f"{hours:02d}:{minutes:02d}"


def coerce_date(value: Any) -> Optional[date]:
    """Accept a date, a datetime or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def to_naive(value: datetime) -> datetime:
    """Drop tzinfo after converting to local time so aware and naive values compare."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def hour_bucket(now: datetime) -> str:
    return now.strftime("%Y-%m-%d-%H")


__all__ = ["setup_logging", "normalize_time", "coerce_date", "to_naive", "hour_bucket"]

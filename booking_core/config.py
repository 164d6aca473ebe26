"""
Config loading via Pydantic v2 and python-dotenv.

Carrega a configuração do .env e faz a validação básica.
"""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator


BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Carrega variáveis do .env explicitamente, se o arquivo existir
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


DEFAULT_WORKING_HOURS = [
    "08:00", "08:30", "09:00", "09:30", "10:00", "10:30", "11:00", "11:30",
    "13:00", "13:30", "14:00", "14:30", "15:00", "15:30", "16:00", "16:30",
]


class BookingConfig(BaseModel):
    """
    Portal-wide defaults that callers pass to the availability functions.

    The calculator itself stays configuration-free; ``booking_window_days`` is
    already clamped here so it can go straight into ``max_advance_days``.
    """

    working_hours: List[str] = Field(default_factory=lambda: list(DEFAULT_WORKING_HOURS))
    max_appointments_per_slot: int = Field(default=2, ge=1)
    booking_window_days: int = Field(default=60)

    @field_validator("booking_window_days")
    @classmethod
    def _clamp_window(cls, value: int) -> int:
        return max(1, min(365, value))


class AbuseConfig(BaseModel):
    window_days: int = Field(default=7, ge=1)
    max_reschedules: int = Field(default=3, ge=1)
    max_cancellations: int = Field(default=3, ge=1)
    max_no_shows: int = Field(default=3, ge=1)


class ReminderConfig(BaseModel):
    enabled: bool = True
    reminder_days: Optional[List[int]] = Field(
        default=None,
        description="Offsets in whole days. Empty means the legacy hours value is used.",
    )
    hours_before_appointment: int = Field(default=24, ge=1)
    custom_message: Optional[str] = None
    email_enabled: bool = True
    messaging_enabled: bool = True
    email_subject: Optional[str] = None
    email_body: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def offsets(self) -> List[int]:
        """Distinct reminder offsets in days, each at least 1."""
        if self.reminder_days:
            return sorted({max(1, int(d or 1)) for d in self.reminder_days})
        return [max(1, round(self.hours_before_appointment / 24))]


class ReadyReminderConfig(BaseModel):
    enabled: bool = True
    reminder_after_days: int = Field(default=7, ge=0)


class SchedulerConfig(BaseModel):
    sweep_interval: int = Field(default=3600, ge=1)
    notify_timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=1, ge=1)
    retry_within_window: bool = Field(
        default=True,
        description=(
            "Failed pre-appointment reminders stay eligible while their one-hour window is open; "
            "the running loop re-sweeps with force after retry_delay seconds."
        ),
    )
    retry_delay: float = Field(default=300.0, gt=0)


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    booking: BookingConfig = BookingConfig()
    abuse: AbuseConfig = AbuseConfig()
    reminders: ReminderConfig = ReminderConfig()
    ready_reminders: ReadyReminderConfig = ReadyReminderConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()


def _split_int_list(value: str | None) -> Optional[List[int]]:
    if not value:
        return None
    return [int(x.strip()) for x in value.split(",") if x.strip()]


def _split_str_list(value: str | None) -> Optional[List[str]]:
    if not value:
        return None
    return [x.strip() for x in value.split(",") if x.strip()]


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    # Lemos o ambiente manualmente, sem depender de pydantic-settings
    env = os.environ

    try:
        booking = BookingConfig(
            working_hours=_split_str_list(env.get("WORKING_HOURS")) or list(DEFAULT_WORKING_HOURS),
            max_appointments_per_slot=int(env.get("MAX_APPOINTMENTS_PER_SLOT", "2")),
            booking_window_days=int(env.get("BOOKING_WINDOW_DAYS", "60")),
        )
        abuse = AbuseConfig(
            window_days=int(env.get("ABUSE_WINDOW_DAYS", "7")),
            max_reschedules=int(env.get("MAX_RESCHEDULES_PER_WINDOW", "3")),
            max_cancellations=int(env.get("MAX_CANCELLATIONS_PER_WINDOW", "3")),
            max_no_shows=int(env.get("MAX_NO_SHOWS_PER_WINDOW", "3")),
        )
        reminders = ReminderConfig(
            enabled=_flag(env.get("REMINDER_ENABLED"), True),
            reminder_days=_split_int_list(env.get("REMINDER_DAYS")),
            hours_before_appointment=int(env.get("REMINDER_HOURS_BEFORE", "24")),
            custom_message=env.get("REMINDER_MESSAGE") or None,
            email_enabled=_flag(env.get("REMINDER_EMAIL_ENABLED"), True),
            messaging_enabled=_flag(env.get("REMINDER_MESSAGING_ENABLED"), True),
            email_subject=env.get("REMINDER_EMAIL_SUBJECT") or None,
            email_body=env.get("REMINDER_EMAIL_BODY") or None,
        )
        ready_reminders = ReadyReminderConfig(
            enabled=_flag(env.get("READY_REMINDER_ENABLED"), True),
            reminder_after_days=int(env.get("READY_REMINDER_AFTER_DAYS", "7")),
        )
        scheduler = SchedulerConfig(
            sweep_interval=int(env.get("SWEEP_INTERVAL_SECONDS", "3600")),
            notify_timeout=float(env.get("NOTIFY_TIMEOUT_SECONDS", "30")),
            max_concurrency=int(env.get("NOTIFY_MAX_CONCURRENCY", "1")),
            retry_within_window=_flag(env.get("RETRY_WITHIN_WINDOW"), True),
            retry_delay=float(env.get("RETRY_DELAY_SECONDS", "300")),
        )
        logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
        if env.get("LOGS_DIR"):
            logging_cfg = LoggingConfig(logs_dir=Path(env["LOGS_DIR"]), log_level=logging_cfg.log_level)
        return Settings(
            booking=booking,
            abuse=abuse,
            reminders=reminders,
            ready_reminders=ready_reminders,
            scheduler=scheduler,
            logging=logging_cfg,
        )
    except ValidationError:
        # Repassamos para que o nível de cima mostre um erro legível
        raise


__all__ = [
    "AbuseConfig",
    "BookingConfig",
    "LoggingConfig",
    "ReadyReminderConfig",
    "ReminderConfig",
    "SchedulerConfig",
    "Settings",
    "get_settings",
    "BASE_DIR",
]

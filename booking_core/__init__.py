"""
Scheduling core of the identity-document appointment portal.

Núcleo de agendamento: disponibilidade, limites por CPF e lembretes.
"""

from .abuse_guard import (
    count_recent_cancellations,
    count_recent_reschedules,
    evaluate_booking,
    is_cancellation_blocked,
    is_reschedule_blocked,
)
from .availability import compute_date_availability, compute_slot_availability
from .config import Settings, get_settings
from .reminders import AttemptCache, ReminderScheduler

__version__ = "0.1.0"

__all__ = [
    "AttemptCache",
    "ReminderScheduler",
    "Settings",
    "compute_date_availability",
    "compute_slot_availability",
    "count_recent_cancellations",
    "count_recent_reschedules",
    "evaluate_booking",
    "get_settings",
    "is_cancellation_blocked",
    "is_reschedule_blocked",
]

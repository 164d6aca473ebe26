"""
Rate limiting of cancel/reschedule cycling per citizen identity.

Limites de cancelamentos, reagendamentos e faltas por CPF numa janela móvel.
Tudo é derivado do histórico de status dos agendamentos; nada é materializado.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import AbuseConfig
from .models import (
    Appointment,
    AppointmentStatus,
    BookingDecision,
    CancellationCategory,
    DenialReason,
    StatusChange,
    valid_records,
)
from .utils import to_naive


BLOCK_WINDOW_DAYS = 7
MAX_RESCHEDULES_PER_WINDOW = 3
MAX_CANCELLATIONS_PER_WINDOW = 3
MAX_NO_SHOWS_PER_WINDOW = 3

CancellationFilter = Union[CancellationCategory, str]
ANY = "any"

# Heurística legada: motivo em texto livre indicando falta
NO_SHOW_KEYWORDS = ("faltou", "nao compareceu", "não compareceu", "no-show", "no show", "ausente")

ACTIVE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.AWAITING_ISSUANCE,
    AppointmentStatus.DOCUMENT_READY,
)

_IDENTITY_NOISE = re.compile(r"[.\-\s/]")


def normalize_identity(identity: Any) -> str:
    """Strip formatting so "123.456.789-00" and "12345678900" match."""
    if not isinstance(identity, str):
        return ""
    return _IDENTITY_NOISE.sub("", identity)


def infer_cancellation_category(reason: Optional[str]) -> Optional[CancellationCategory]:
    """Keyword heuristic for records written before the category was tagged."""
    if not reason:
        return None
    text = reason.lower()
    if any(keyword in text for keyword in NO_SHOW_KEYWORDS):
        return CancellationCategory.NO_SHOW
    return None


def import_status_change(raw: Dict[str, Any]) -> StatusChange:
    """
    Validate a legacy history entry and tag its cancellation category.

    Entries that move to ``cancelled`` without a category get one from the
    reason text, falling back to ``other`` so the tag is always explicit.
    """
    entry = StatusChange.model_validate(raw)
    if entry.to_status != AppointmentStatus.CANCELLED or entry.metadata.cancellation_category:
        return entry
    category = infer_cancellation_category(entry.reason) or CancellationCategory.OTHER
    metadata = entry.metadata.model_copy(update={"cancellation_category": category})
    return entry.model_copy(update={"metadata": metadata})


def _now(now: Optional[datetime]) -> datetime:
    return to_naive(now) if now is not None else datetime.now()


def _window_start(now: datetime, window_days: int) -> datetime:
    return now - timedelta(days=window_days)


def _entries_for_identity(appointments: Optional[Iterable[Any]], identity: str) -> List[StatusChange]:
    key = normalize_identity(identity)
    if not key:
        return []
    entries: List[StatusChange] = []
    for appointment in valid_records(appointments, Appointment):
        if normalize_identity(appointment.identity) == key:
            entries.extend(appointment.status_history or [])
    return entries


def _within_window(entry: StatusChange, window_start: datetime) -> bool:
    if entry.changed_at is None:
        return False
    return to_naive(entry.changed_at) >= window_start


def _is_reschedule(entry: StatusChange) -> bool:
    return bool(entry.metadata.old_date and entry.metadata.new_date)


def _matches_cancellation_filter(entry: StatusChange, category_filter: CancellationFilter) -> bool:
    wanted = category_filter.value if isinstance(category_filter, CancellationCategory) else category_filter
    if wanted == ANY:
        return True
    category = entry.metadata.cancellation_category
    if category is not None:
        return category.value == wanted
    inferred = infer_cancellation_category(entry.reason)
    return inferred is not None and inferred.value == wanted


def _reschedule_times(appointments, identity, window_days, now) -> List[datetime]:
    window_start = _window_start(now, window_days)
    return [
        to_naive(entry.changed_at)
        for entry in _entries_for_identity(appointments, identity)
        if _is_reschedule(entry) and _within_window(entry, window_start)
    ]


def _cancellation_times(appointments, identity, window_days, category_filter, now) -> List[datetime]:
    window_start = _window_start(now, window_days)
    return [
        to_naive(entry.changed_at)
        for entry in _entries_for_identity(appointments, identity)
        if entry.to_status == AppointmentStatus.CANCELLED
        and _within_window(entry, window_start)
        and _matches_cancellation_filter(entry, category_filter)
    ]


def count_recent_reschedules(
    appointments: Optional[Iterable[Any]],
    identity: str,
    window_days: int = BLOCK_WINDOW_DAYS,
    *,
    now: Optional[datetime] = None,
) -> int:
    return len(_reschedule_times(appointments, identity, window_days, _now(now)))


def is_reschedule_blocked(
    appointments: Optional[Iterable[Any]],
    identity: str,
    limit: int = MAX_RESCHEDULES_PER_WINDOW,
    window_days: int = BLOCK_WINDOW_DAYS,
    *,
    now: Optional[datetime] = None,
) -> bool:
    return count_recent_reschedules(appointments, identity, window_days, now=now) >= limit


def count_recent_cancellations(
    appointments: Optional[Iterable[Any]],
    identity: str,
    window_days: int = BLOCK_WINDOW_DAYS,
    category_filter: CancellationFilter = ANY,
    *,
    now: Optional[datetime] = None,
) -> int:
    return len(_cancellation_times(appointments, identity, window_days, category_filter, _now(now)))


def is_cancellation_blocked(
    appointments: Optional[Iterable[Any]],
    identity: str,
    limit: int = MAX_CANCELLATIONS_PER_WINDOW,
    window_days: int = BLOCK_WINDOW_DAYS,
    category_filter: CancellationFilter = ANY,
    *,
    now: Optional[datetime] = None,
) -> bool:
    return count_recent_cancellations(
        appointments, identity, window_days, category_filter, now=now
    ) >= limit


def _released_at(times: List[datetime], limit: int, window_days: int) -> Optional[datetime]:
    """Instant when enough entries leave the window for the count to drop below ``limit``."""
    if limit < 1 or len(times) < limit:
        return None
    ordered = sorted(times)
    return ordered[len(ordered) - limit] + timedelta(days=window_days)


def block_released_at(
    appointments: Optional[Iterable[Any]],
    identity: str,
    limit: int = MAX_CANCELLATIONS_PER_WINDOW,
    window_days: int = BLOCK_WINDOW_DAYS,
    category_filter: CancellationFilter = ANY,
    *,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """When the cancellation block on ``identity`` lifts; None if it is not blocked."""
    times = _cancellation_times(appointments, identity, window_days, category_filter, _now(now))
    return _released_at(times, limit, window_days)


def reschedule_block_released_at(
    appointments: Optional[Iterable[Any]],
    identity: str,
    limit: int = MAX_RESCHEDULES_PER_WINDOW,
    window_days: int = BLOCK_WINDOW_DAYS,
    *,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    times = _reschedule_times(appointments, identity, window_days, _now(now))
    return _released_at(times, limit, window_days)


def count_recent_no_shows(
    appointments: Optional[Iterable[Any]],
    identity: str,
    window_days: int = BLOCK_WINDOW_DAYS,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Past appointments inside the window that were never attended nor closed."""
    key = normalize_identity(identity)
    if not key:
        return 0
    today = _now(now).date()
    window_start = today - timedelta(days=window_days)
    return sum(
        1
        for appointment in valid_records(appointments, Appointment)
        if normalize_identity(appointment.identity) == key
        and appointment.status in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
        and window_start <= appointment.date < today
    )


def find_active_appointment(
    appointments: Optional[Iterable[Any]],
    identity: str,
    *,
    now: Optional[datetime] = None,
    exclude_appointment_id: Optional[str] = None,
) -> Optional[Appointment]:
    """Return an appointment of ``identity`` that is still active today or later."""
    key = normalize_identity(identity)
    if not key:
        return None
    today: date = _now(now).date()
    for appointment in valid_records(appointments, Appointment):
        if appointment.id == exclude_appointment_id:
            continue
        if normalize_identity(appointment.identity) != key:
            continue
        if appointment.status in ACTIVE_STATUSES and appointment.date >= today:
            return appointment
    return None


def evaluate_booking(
    appointments: Optional[Iterable[Any]],
    identity: str,
    *,
    now: Optional[datetime] = None,
    window_days: int = BLOCK_WINDOW_DAYS,
    max_no_shows: int = MAX_NO_SHOWS_PER_WINDOW,
    max_reschedules: int = MAX_RESCHEDULES_PER_WINDOW,
    max_cancellations: int = MAX_CANCELLATIONS_PER_WINDOW,
    config: Optional[AbuseConfig] = None,
) -> BookingDecision:
    """
    Decide whether ``identity`` may book a new appointment right now.

    Checked in the order the booking wizard applies them: no-shows,
    reschedules, cancellations, then an already active appointment.
    When ``config`` is given its window and limits replace the keyword values.
    """
    if config is not None:
        window_days = config.window_days
        max_no_shows = config.max_no_shows
        max_reschedules = config.max_reschedules
        max_cancellations = config.max_cancellations

    snapshot = valid_records(appointments, Appointment)
    current = _now(now)

    no_shows = count_recent_no_shows(snapshot, identity, window_days, now=current)
    if no_shows >= max_no_shows:
        return BookingDecision(allowed=False, reason=DenialReason.NO_SHOW_LIMIT, count=no_shows)

    reschedule_decision = evaluate_reschedule(
        snapshot, identity, now=current, window_days=window_days, limit=max_reschedules
    )
    if not reschedule_decision.allowed:
        return reschedule_decision

    cancellation_decision = evaluate_cancellation(
        snapshot, identity, now=current, window_days=window_days, limit=max_cancellations
    )
    if not cancellation_decision.allowed:
        return cancellation_decision

    active = find_active_appointment(snapshot, identity, now=current)
    if active is not None:
        return BookingDecision(
            allowed=False,
            reason=DenialReason.ACTIVE_APPOINTMENT,
            existing_appointment_id=active.id,
        )
    return BookingDecision(allowed=True)


def evaluate_reschedule(
    appointments: Optional[Iterable[Any]],
    identity: str,
    *,
    now: Optional[datetime] = None,
    window_days: int = BLOCK_WINDOW_DAYS,
    limit: int = MAX_RESCHEDULES_PER_WINDOW,
) -> BookingDecision:
    times = _reschedule_times(appointments, identity, window_days, _now(now))
    if len(times) >= limit:
        return BookingDecision(
            allowed=False,
            reason=DenialReason.RESCHEDULE_LIMIT,
            count=len(times),
            released_at=_released_at(times, limit, window_days),
        )
    return BookingDecision(allowed=True, count=len(times))


def evaluate_cancellation(
    appointments: Optional[Iterable[Any]],
    identity: str,
    *,
    now: Optional[datetime] = None,
    window_days: int = BLOCK_WINDOW_DAYS,
    limit: int = MAX_CANCELLATIONS_PER_WINDOW,
    category_filter: CancellationFilter = ANY,
) -> BookingDecision:
    times = _cancellation_times(appointments, identity, window_days, category_filter, _now(now))
    if len(times) >= limit:
        return BookingDecision(
            allowed=False,
            reason=DenialReason.CANCELLATION_LIMIT,
            count=len(times),
            released_at=_released_at(times, limit, window_days),
        )
    return BookingDecision(allowed=True, count=len(times))


__all__ = [
    "ANY",
    "BLOCK_WINDOW_DAYS",
    "MAX_CANCELLATIONS_PER_WINDOW",
    "MAX_NO_SHOWS_PER_WINDOW",
    "MAX_RESCHEDULES_PER_WINDOW",
    "block_released_at",
    "count_recent_cancellations",
    "count_recent_no_shows",
    "count_recent_reschedules",
    "evaluate_booking",
    "evaluate_cancellation",
    "evaluate_reschedule",
    "find_active_appointment",
    "import_status_change",
    "infer_cancellation_category",
    "is_cancellation_blocked",
    "is_reschedule_blocked",
    "normalize_identity",
    "reschedule_block_released_at",
]

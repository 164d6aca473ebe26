"""
Availability calculation for the date and time pickers.

Calcula, para uma data, quais horários podem ser agendados considerando:
- horários de atendimento configurados
- datas/horários bloqueados (por local ou globais)
- agendamentos existentes e a capacidade por horário

Every function here is pure: inputs are read-only snapshots and bad input
resolves to a default instead of an exception.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Iterator, List, Optional, Set, Tuple

from .models import Appointment, AppointmentStatus, BlockedDate, BlockType, TimeSlot, valid_records
from .utils import coerce_date, normalize_time, to_naive

logger = logging.getLogger(__name__)


DEFAULT_MAX_ADVANCE_DAYS = 60
MAX_ADVANCE_DAYS_LIMIT = 365


def clamp_advance_days(days: Any) -> int:
    """Clamp the booking lookahead to [1, 365] days."""
    try:
        value = int(days)
    except (TypeError, ValueError):
        return DEFAULT_MAX_ADVANCE_DAYS
    return max(1, min(MAX_ADVANCE_DAYS_LIMIT, value))


def booking_window(now: datetime, max_advance_days: Any = DEFAULT_MAX_ADVANCE_DAYS) -> Tuple[date, date]:
    """Return the first and last bookable dates (both inclusive)."""
    today = now.date()
    return today, today + timedelta(days=clamp_advance_days(max_advance_days))


def filter_blocked_dates_for_location(
    blocked_dates: Optional[Iterable[Any]],
    location_id: Optional[str],
) -> List[BlockedDate]:
    """Keep global blocks and blocks scoped to ``location_id``."""
    result: List[BlockedDate] = []
    for block in valid_records(blocked_dates, BlockedDate):
        if not block.location_id or str(block.location_id) == str(location_id):
            result.append(block)
    return result


def _blocks_for_date(
    blocked_dates: Optional[Iterable[Any]],
    target: date,
    location_id: Optional[str],
) -> Tuple[bool, Set[str]]:
    """Return (has full-day block, union of specifically blocked times)."""
    blocked_times: Set[str] = set()
    for block in filter_blocked_dates_for_location(blocked_dates, location_id):
        if block.date != target:
            continue
        if block.block_type == BlockType.FULL_DAY:
            return True, blocked_times
        for raw_time in block.blocked_times:
            blocked_times.add(normalize_time(raw_time) or raw_time)
    return False, blocked_times


def _occupancy(
    appointments: Optional[Iterable[Any]],
    target: date,
    location_id: str,
    exclude_appointment_id: Optional[str],
) -> Counter:
    counts: Counter = Counter()
    for appointment in valid_records(appointments, Appointment):
        if appointment.status == AppointmentStatus.CANCELLED:
            continue
        if appointment.date != target or str(appointment.location_id) != str(location_id):
            continue
        if exclude_appointment_id is not None and appointment.id == exclude_appointment_id:
            continue
        counts[appointment.time] += 1
    return counts


def _iter_slots(
    target: date,
    working_hours: List[Any],
    blocked_dates: Optional[Iterable[Any]],
    appointments: Optional[Iterable[Any]],
    max_per_slot: int,
    now: datetime,
    location_id: str,
    exclude_appointment_id: Optional[str],
) -> Iterator[TimeSlot]:
    full_day, blocked_times = _blocks_for_date(blocked_dates, target, location_id)
    counts = _occupancy(appointments, target, location_id, exclude_appointment_id)
    current_time = now.strftime("%H:%M") if target == now.date() else None

    # A ordem configurada é canônica: nunca reordenar
    for raw_time in working_hours:
        slot_time = normalize_time(raw_time)
        if slot_time is None:
            yield TimeSlot(time=str(raw_time), available=False, count=0)
            continue
        count = counts.get(slot_time, 0)
        if full_day:
            yield TimeSlot(time=slot_time, available=False, count=count)
        elif current_time is not None and slot_time <= current_time:
            yield TimeSlot(time=slot_time, available=False, count=count)
        elif slot_time in blocked_times:
            yield TimeSlot(time=slot_time, available=False, count=count)
        else:
            yield TimeSlot(time=slot_time, available=count < max_per_slot, count=count)


def _coerce_inputs(
    target_date: Any,
    now: Any,
    max_per_slot: Any,
) -> Optional[Tuple[date, datetime, int]]:
    target = coerce_date(target_date)
    if target is None or not isinstance(now, datetime):
        return None
    try:
        capacity = int(max_per_slot)
    except (TypeError, ValueError):
        return None
    return target, to_naive(now), capacity


def _within_window(target: date, now: datetime, max_advance_days: Any) -> bool:
    first_day, last_day = booking_window(now, max_advance_days)
    return first_day <= target <= last_day


def compute_slot_availability(
    target_date: Any,
    working_hours: Optional[Iterable[Any]],
    blocked_dates: Optional[Iterable[Any]],
    appointments: Optional[Iterable[Any]],
    max_per_slot: Any,
    now: datetime,
    location_id: Optional[str] = None,
    *,
    exclude_appointment_id: Optional[str] = None,
    max_advance_days: Any = DEFAULT_MAX_ADVANCE_DAYS,
) -> List[TimeSlot]:
    """
    Build the time grid for ``target_date``.

    Args:
        target_date: date or ``YYYY-MM-DD`` string
        working_hours: ``HH:MM`` strings in display order
        blocked_dates: BlockedDate records (or their dicts)
        appointments: current appointments snapshot
        max_per_slot: capacity of each (location, date, time)
        now: reference instant for "today" and past slots
        location_id: selected location; None means unconfigured (all open)
        exclude_appointment_id: appointment being rescheduled, not counted
        max_advance_days: booking lookahead, clamped to [1, 365]

    Returns:
        list[TimeSlot] in working-hours order; empty for unusable input.
    """
    coerced = _coerce_inputs(target_date, now, max_per_slot)
    if coerced is None:
        return []
    target, now, capacity = coerced
    hours = list(working_hours or [])
    in_window = _within_window(target, now, max_advance_days)

    if not location_id:
        return [
            TimeSlot(
                time=normalize_time(t) or str(t),
                available=in_window and normalize_time(t) is not None,
                count=0,
            )
            for t in hours
        ]

    slots = list(
        _iter_slots(
            target, hours, blocked_dates, appointments, capacity, now,
            str(location_id), exclude_appointment_id,
        )
    )
    if not in_window:
        return [slot.model_copy(update={"available": False}) for slot in slots]
    return slots


def compute_date_availability(
    target_date: Any,
    working_hours: Optional[Iterable[Any]],
    blocked_dates: Optional[Iterable[Any]],
    appointments: Optional[Iterable[Any]],
    max_per_slot: Any,
    now: datetime,
    location_id: Optional[str] = None,
    *,
    exclude_appointment_id: Optional[str] = None,
    max_advance_days: Any = DEFAULT_MAX_ADVANCE_DAYS,
) -> bool:
    """True iff at least one slot on ``target_date`` can still be booked."""
    coerced = _coerce_inputs(target_date, now, max_per_slot)
    if coerced is None:
        return False
    target, now, capacity = coerced
    if not _within_window(target, now, max_advance_days):
        return False

    hours = list(working_hours or [])
    if not location_id or not hours:
        return True

    full_day, _ = _blocks_for_date(blocked_dates, target, str(location_id))
    if full_day:
        return False

    return any(
        slot.available
        for slot in _iter_slots(
            target, hours, blocked_dates, appointments, capacity, now,
            str(location_id), exclude_appointment_id,
        )
    )


def list_available_dates(
    working_hours: Optional[Iterable[Any]],
    blocked_dates: Optional[Iterable[Any]],
    appointments: Optional[Iterable[Any]],
    max_per_slot: Any,
    now: datetime,
    location_id: Optional[str] = None,
    *,
    exclude_appointment_id: Optional[str] = None,
    max_advance_days: Any = DEFAULT_MAX_ADVANCE_DAYS,
) -> List[date]:
    """Dates inside the booking window with at least one free slot."""
    if not isinstance(now, datetime):
        return []
    first_day, last_day = booking_window(to_naive(now), max_advance_days)
    hours = list(working_hours or [])
    blocks = list(blocked_dates or [])
    snapshot = list(appointments or [])

    result: List[date] = []
    current = first_day
    while current <= last_day:
        if compute_date_availability(
            current, hours, blocks, snapshot, max_per_slot, now, location_id,
            exclude_appointment_id=exclude_appointment_id,
            max_advance_days=max_advance_days,
        ):
            result.append(current)
        current += timedelta(days=1)
    return result


__all__ = [
    "DEFAULT_MAX_ADVANCE_DAYS",
    "booking_window",
    "clamp_advance_days",
    "compute_date_availability",
    "compute_slot_availability",
    "filter_blocked_dates_for_location",
    "list_available_dates",
]

"""
Contracts of the collaborators the core talks to, plus an in-memory store.

Notifier, AuditLog e AppointmentStore são implementados fora do núcleo;
aqui ficam apenas os protocolos e um store em memória (copy-on-write).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Sequence, Tuple, Union

from .models import Appointment, AuditEntry, BlockedDate, DispatchResult, Location, OffsetInfo

logger = logging.getLogger(__name__)


Updater = Callable[[Sequence[Appointment]], Sequence[Appointment]]


class Notifier(Protocol):
    """Delivers notifications; only the boolean outcome is inspected by the core."""

    async def send_reminder(
        self,
        appointment: Appointment,
        config: Any,
        location_address: Optional[str],
        location_map_url: Optional[str],
        offset_info: OffsetInfo,
        location_name: Optional[str],
    ) -> DispatchResult: ...

    async def send_ready_for_pickup(
        self,
        appointment: Appointment,
        config: Any,
        location_address: Optional[str],
        location_map_url: Optional[str],
        location_name: Optional[str],
    ) -> DispatchResult: ...


class AuditLog(Protocol):
    def append(self, entry: AuditEntry) -> Union[None, Awaitable[None]]: ...


@dataclass(frozen=True)
class StoreSnapshot:
    appointments: Tuple[Appointment, ...] = ()
    locations: Tuple[Location, ...] = ()
    blocked_dates: Tuple[BlockedDate, ...] = ()

    def location(self, location_id: Optional[str]) -> Optional[Location]:
        if location_id is None:
            return None
        for location in self.locations:
            if str(location.id) == str(location_id):
                return location
        return None


class AppointmentStore(Protocol):
    def snapshot(self) -> StoreSnapshot: ...

    async def update(self, updater: Updater) -> StoreSnapshot: ...


@dataclass
class InMemoryAppointmentStore:
    """
    Copy-on-write store: readers get an immutable snapshot, writers pass an updater.

    Writes are serialized with an asyncio lock so concurrent updaters never
    lose each other's changes.
    """

    appointments: Iterable[Appointment] = ()
    locations: Iterable[Location] = ()
    blocked_dates: Iterable[BlockedDate] = ()
    _snapshot: StoreSnapshot = field(init=False)
    _lock: asyncio.Lock = field(init=False, default_factory=asyncio.Lock)

    def __post_init__(self) -> None:
        self._snapshot = StoreSnapshot(
            appointments=tuple(self.appointments),
            locations=tuple(self.locations),
            blocked_dates=tuple(self.blocked_dates),
        )

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    async def update(self, updater: Updater) -> StoreSnapshot:
        async with self._lock:
            current = self._snapshot
            updated = tuple(updater(current.appointments))
            self._snapshot = StoreSnapshot(
                appointments=updated,
                locations=current.locations,
                blocked_dates=current.blocked_dates,
            )
            return self._snapshot

    def get(self, appointment_id: str) -> Optional[Appointment]:
        for appointment in self._snapshot.appointments:
            if appointment.id == appointment_id:
                return appointment
        return None


def lead_time_text(offset_days: int, appointment_time: str) -> str:
    offset_days = max(1, int(offset_days or 1))
    if offset_days == 1:
        return f"amanhã às {appointment_time}"
    return f"em {offset_days} dias"


def render_message(
    template: Optional[str],
    appointment: Appointment,
    *,
    location_name: Optional[str] = None,
    location_address: Optional[str] = None,
    location_map_url: Optional[str] = None,
    offset_days: Optional[int] = None,
) -> str:
    """
    Fill a custom message template.

    Placeholders: {name}, {date}, {time}, {protocol}, {location}, {address},
    {map_link}, {lead_time}, {document_type}, {identity}. Unknown braces are
    left untouched.
    """
    if not template:
        return ""
    values = {
        "{name}": appointment.full_name,
        "{date}": appointment.date.strftime("%d/%m/%Y"),
        "{time}": appointment.time,
        "{protocol}": appointment.protocol or "",
        "{location}": location_name or location_address or "",
        "{address}": location_address or "",
        "{map_link}": location_map_url or "",
        "{lead_time}": lead_time_text(offset_days or 1, appointment.time),
        "{document_type}": appointment.document_type or "1ª via",
        "{identity}": appointment.identity or "",
    }
    text = template
    for placeholder, value in values.items():
        text = text.replace(placeholder, value)
    return text


__all__ = [
    "AppointmentStore",
    "AuditLog",
    "InMemoryAppointmentStore",
    "Notifier",
    "StoreSnapshot",
    "Updater",
    "lead_time_text",
    "render_message",
]

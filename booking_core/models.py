"""
Pydantic models for the appointment booking domain.

Modelos Pydantic para agendamentos, bloqueios de datas e estado interno.
"""

from __future__ import annotations

import datetime as dt
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .utils import normalize_time

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    AWAITING_ISSUANCE = "awaiting-issuance"
    DOCUMENT_READY = "document-ready"
    DOCUMENT_DELIVERED = "document-delivered"


class CancellationCategory(str, Enum):
    USER_REQUEST = "user-request"
    NO_SHOW = "no-show"
    OTHER = "other"


class BlockType(str, Enum):
    FULL_DAY = "full-day"
    SPECIFIC_TIMES = "specific-times"


class DenialReason(str, Enum):
    NO_SHOW_LIMIT = "no-show-limit"
    RESCHEDULE_LIMIT = "reschedule-limit"
    CANCELLATION_LIMIT = "cancellation-limit"
    ACTIVE_APPOINTMENT = "active-appointment"


LEGACY_STATUSES = {
    "cin-ready": AppointmentStatus.DOCUMENT_READY.value,
    "cin-delivered": AppointmentStatus.DOCUMENT_DELIVERED.value,
}


def _legacy_status(value: Any) -> Any:
    if isinstance(value, str):
        return LEGACY_STATUSES.get(value, value)
    return value


class _Record(BaseModel):
    """Base for records that may come from the portal's camelCase exports."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatusMetadata(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    old_date: Optional[str] = None
    old_time: Optional[str] = None
    new_date: Optional[str] = None
    new_time: Optional[str] = None
    cancellation_category: Optional[CancellationCategory] = None
    cancellation_reason_text: Optional[str] = None


class StatusChange(_Record):
    """One entry of an appointment's append-only status history."""

    from_status: Optional[AppointmentStatus] = Field(
        default=None, validation_alias=AliasChoices("from_status", "fromStatus", "from")
    )
    to_status: AppointmentStatus = Field(
        validation_alias=AliasChoices("to_status", "toStatus", "to")
    )
    changed_at: Optional[dt.datetime] = None
    changed_by: str = ""
    reason: Optional[str] = None
    metadata: StatusMetadata = Field(default_factory=StatusMetadata)

    @field_validator("from_status", "to_status", mode="before")
    @classmethod
    def _map_legacy_status(cls, value: Any) -> Any:
        return _legacy_status(value)

    @field_validator("changed_at", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value: Any) -> Any:
        # Registros antigos podem ter datas inválidas: viram None e não contam
        if isinstance(value, str):
            try:
                return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class Appointment(_Record):
    id: str
    protocol: str = ""
    full_name: str = ""
    identity: str = Field(default="", validation_alias=AliasChoices("identity", "cpf"))
    email: Optional[str] = None
    phone: Optional[str] = None
    location_id: Optional[str] = None
    date: dt.date
    time: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    status_history: List[StatusChange] = Field(default_factory=list)
    reminder_sent_offsets: List[int] = Field(default_factory=list)
    rg_ready_reminders_sent: int = 0
    completed_at: Optional[dt.datetime] = None
    last_ready_reminder_sent_at: Optional[dt.datetime] = None
    document_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("document_type", "documentType", "rgType")
    )

    @field_validator("location_id", mode="before")
    @classmethod
    def _location_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("time", mode="before")
    @classmethod
    def _normalize_time(cls, value: Any) -> Any:
        return normalize_time(value) or value

    @field_validator("status", mode="before")
    @classmethod
    def _map_legacy_status(cls, value: Any) -> Any:
        return _legacy_status(value)

    @field_validator("reminder_sent_offsets", mode="before")
    @classmethod
    def _distinct_offsets(cls, value: Any) -> Any:
        if value is None:
            return []
        return sorted({int(v) for v in value})

    @field_validator("status_history", mode="before")
    @classmethod
    def _none_history(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def starts_at(self) -> Optional[dt.datetime]:
        """Appointment instant, or None when the stored time is not parseable."""
        normalized = normalize_time(self.time)
        if normalized is None:
            return None
        hours, minutes = normalized.split(":")
        return dt.datetime.combine(self.date, dt.time(int(hours), int(minutes)))

    def with_status(
        self,
        status: AppointmentStatus,
        changed_by: str,
        changed_at: dt.datetime,
        reason: Optional[str] = None,
        metadata: Optional[StatusMetadata] = None,
        **updates: Any,
    ) -> "Appointment":
        """Return a copy with ``status`` set and one history entry appended."""
        entry = StatusChange(
            from_status=self.status,
            to_status=status,
            changed_at=changed_at,
            changed_by=changed_by,
            reason=reason,
            metadata=metadata or StatusMetadata(),
        )
        updates.update(status=status, status_history=[*self.status_history, entry])
        if status == AppointmentStatus.DOCUMENT_READY and "completed_at" not in updates:
            updates["completed_at"] = changed_at
        return self.model_copy(update=updates)

    def rescheduled(
        self,
        new_date: dt.date,
        new_time: str,
        changed_by: str,
        changed_at: dt.datetime,
        reason: Optional[str] = None,
    ) -> "Appointment":
        metadata = StatusMetadata(
            old_date=self.date.isoformat(),
            old_time=self.time,
            new_date=new_date.isoformat(),
            new_time=new_time,
        )
        return self.with_status(
            self.status,
            changed_by,
            changed_at,
            reason=reason or "Reagendamento",
            metadata=metadata,
            date=new_date,
            time=normalize_time(new_time) or new_time,
        )

    def cancelled(
        self,
        category: CancellationCategory,
        changed_by: str,
        changed_at: dt.datetime,
        reason: Optional[str] = None,
    ) -> "Appointment":
        """Cancel with an explicit category; new records never rely on the reason text."""
        metadata = StatusMetadata(
            cancellation_category=CancellationCategory(category),
            cancellation_reason_text=reason,
        )
        return self.with_status(
            AppointmentStatus.CANCELLED, changed_by, changed_at, reason=reason, metadata=metadata
        )

    def with_reminder_offset(self, offset_days: int) -> "Appointment":
        offsets = sorted({*self.reminder_sent_offsets, int(offset_days)})
        return self.model_copy(update={"reminder_sent_offsets": offsets})

    def with_ready_reminder(self, sent_at: dt.datetime) -> "Appointment":
        return self.model_copy(
            update={
                "rg_ready_reminders_sent": self.rg_ready_reminders_sent + 1,
                "last_ready_reminder_sent_at": sent_at,
            }
        )


class BlockedDate(_Record):
    date: dt.date
    block_type: BlockType = BlockType.FULL_DAY
    blocked_times: List[str] = Field(default_factory=list)
    location_id: Optional[str] = None
    reason: str = ""

    @field_validator("location_id", mode="before")
    @classmethod
    def _location_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("blocked_times", mode="before")
    @classmethod
    def _normalize_times(cls, value: Any) -> Any:
        if value is None:
            return []
        return [normalize_time(v) or v for v in value]


class Location(_Record):
    id: str
    name: str = ""
    address: Optional[str] = None
    map_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("map_url", "mapUrl", "googleMapsUrl")
    )


class TimeSlot(BaseModel):
    """Derived view of one working hour; never persisted."""

    time: str
    available: bool
    count: int = 0


class OffsetInfo(BaseModel):
    offset_days: int
    subject_template: Optional[str] = None
    body_template: Optional[str] = None


class DispatchResult(_Record):
    success: bool = False
    email_sent: bool = False
    messaging_sent: bool = Field(
        default=False,
        validation_alias=AliasChoices("messaging_sent", "messagingSent", "whatsappSent"),
    )

    @property
    def channels(self) -> List[str]:
        channels: List[str] = []
        if self.email_sent:
            channels.append("email")
        if self.messaging_sent:
            channels.append("messaging")
        return channels


class AuditEntry(BaseModel):
    action: str
    description: str
    performed_by: str
    target_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)


class BookingDecision(BaseModel):
    allowed: bool
    reason: Optional[DenialReason] = None
    count: int = 0
    released_at: Optional[dt.datetime] = None
    existing_appointment_id: Optional[str] = None


class DispatchRecord(BaseModel):
    appointment_id: str
    kind: str
    offset_days: Optional[int] = None
    channels: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class SweepReport(BaseModel):
    started_at: dt.datetime
    skipped: bool = False
    skip_reason: Optional[str] = None
    sent: List[DispatchRecord] = Field(default_factory=list)
    failed: List[DispatchRecord] = Field(default_factory=list)


class SweepState(BaseModel):
    """State of the reminder loop, used internally."""

    is_running: bool = False
    last_sweep_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    sweeps_count: int = 0
    skipped_count: int = 0
    reminders_sent_total: int = 0
    ready_reminders_sent_total: int = 0
    failures_total: int = 0



def as_record(entry: Any, model: Type[RecordT]) -> Optional[RecordT]:
    """Validate a dict (or pass through an instance); None when it does not fit ``model``."""
    if isinstance(entry, model):
        return entry
    try:
        return model.model_validate(entry)
    except ValidationError:
        logger.warning("Ignoring malformed %s entry: %r", model.__name__, entry)
        return None


def valid_records(entries: Optional[Iterable[Any]], model: Type[RecordT]) -> List[RecordT]:
    """Every entry of ``entries`` that validates as ``model``, in order."""
    records: List[RecordT] = []
    for entry in entries or []:
        record = as_record(entry, model)
        if record is not None:
            records.append(record)
    return records


__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AuditEntry",
    "BlockType",
    "BlockedDate",
    "BookingDecision",
    "CancellationCategory",
    "DenialReason",
    "DispatchRecord",
    "DispatchResult",
    "Location",
    "OffsetInfo",
    "StatusChange",
    "StatusMetadata",
    "SweepReport",
    "SweepState",
    "TimeSlot",
    "as_record",
    "valid_records",
]

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from booking_core.collaborators import InMemoryAppointmentStore
from booking_core.config import (
    ReadyReminderConfig,
    ReminderConfig,
    SchedulerConfig,
    Settings,
)
from booking_core.models import Appointment, DispatchResult, Location


NOW = datetime(2025, 1, 14, 9, 30)


def make_appointment(appointment_id="a1", **overrides) -> Appointment:
    data = {
        "id": appointment_id,
        "protocol": f"P-{appointment_id}",
        "full_name": "Maria Souza",
        "identity": "123.456.789-00",
        "location_id": "loc-1",
        "date": "2025-01-15",
        "time": "09:00",
        "status": "confirmed",
    }
    data.update(overrides)
    return Appointment.model_validate(data)


class RecordingAuditLog:
    def __init__(self):
        self.entries = []

    def append(self, entry):
        self.entries.append(entry)


@pytest.fixture
def settings():
    return Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        ready_reminders=ReadyReminderConfig(reminder_after_days=7),
        scheduler=SchedulerConfig(notify_timeout=1.0),
    )


@pytest.fixture
def notifier():
    mock = AsyncMock()
    mock.send_reminder.return_value = DispatchResult(success=True, email_sent=True, messaging_sent=True)
    mock.send_ready_for_pickup.return_value = DispatchResult(
        success=True, email_sent=True, messaging_sent=True
    )
    return mock


@pytest.fixture
def audit_log():
    return RecordingAuditLog()


@pytest.fixture
def location():
    return Location(id="loc-1", name="Sede Centro", address="Rua A, 100", map_url="https://maps.example/a")


def make_store(appointments, locations=()):
    return InMemoryAppointmentStore(appointments=appointments, locations=locations)

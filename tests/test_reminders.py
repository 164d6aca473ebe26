"""Tests for the reminder scheduler."""

import asyncio
from datetime import datetime, timedelta

import pytest

from booking_core.config import ReminderConfig, SchedulerConfig, Settings
from booking_core.models import DispatchResult, OffsetInfo
from booking_core.reminders import AttemptCache, ReminderScheduler, reminder_due

from conftest import make_appointment, make_store


NOW = datetime(2025, 1, 14, 9, 30)


def _scheduler(store, notifier, audit_log, settings, **kwargs):
    return ReminderScheduler(store=store, notifier=notifier, audit_log=audit_log, settings=settings, **kwargs)


@pytest.mark.asyncio
async def test_reminder_sent_inside_window_before_24h_mark(settings, notifier, audit_log, location):
    """Appointment tomorrow 09:00, now 09:30: 23.5h left falls in the 1-day window."""
    store = make_store([make_appointment("a1")], [location])
    notices = []

    async def on_notice(text):
        notices.append(text)

    scheduler = _scheduler(store, notifier, audit_log, settings, on_notice=on_notice)
    report = await scheduler.sweep(NOW)

    assert [(r.appointment_id, r.offset_days) for r in report.sent] == [("a1", 1)]
    assert store.get("a1").reminder_sent_offsets == [1]

    args = notifier.send_reminder.await_args.args
    assert args[0].id == "a1"
    assert args[1] is settings
    assert args[2:4] == ("Rua A, 100", "https://maps.example/a")
    assert args[4] == OffsetInfo(offset_days=1)
    assert args[5] == "Sede Centro"

    assert len(audit_log.entries) == 1
    entry = audit_log.entries[0]
    assert entry.action == "reminder_sent"
    assert entry.target_id == "a1"
    assert entry.metadata["channels"] == "email, messaging"
    assert entry.metadata["reminder_offset_days"] == 1
    assert notices and "Maria Souza" in notices[0]


@pytest.mark.asyncio
async def test_offset_already_sent_is_never_dispatched_again(settings, notifier, audit_log):
    store = make_store([make_appointment("a1", reminder_sent_offsets=[1])])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    for minutes in (0, 10, 20):
        await scheduler.sweep(NOW + timedelta(minutes=minutes), force=True)

    notifier.send_reminder.assert_not_awaited()
    assert audit_log.entries == []


@pytest.mark.asyncio
async def test_repeated_sweeps_dispatch_once(settings, notifier, audit_log):
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)
    await scheduler.sweep(NOW + timedelta(minutes=5), force=True)
    await scheduler.sweep(NOW + timedelta(minutes=20), force=True)

    assert notifier.send_reminder.await_count == 1
    assert store.get("a1").reminder_sent_offsets == [1]


@pytest.mark.asyncio
async def test_not_due_outside_one_hour_window(settings, notifier, audit_log):
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(datetime(2025, 1, 14, 8, 30))  # 24.5h left
    await scheduler.sweep(datetime(2025, 1, 14, 10, 30))  # 22.5h left

    notifier.send_reminder.assert_not_awaited()


def test_reminder_due_boundaries():
    assert reminder_due(24.0, 1) is True
    assert reminder_due(23.01, 1) is True
    assert reminder_due(23.0, 1) is False
    assert reminder_due(24.01, 1) is False
    assert reminder_due(71.5, 3) is True


@pytest.mark.asyncio
async def test_only_pending_and_confirmed_get_reminders(settings, notifier, audit_log):
    store = make_store(
        [
            make_appointment("a1", status="pending"),
            make_appointment("a2", status="cancelled"),
            make_appointment("a3", status="completed"),
        ]
    )
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)

    assert [r.appointment_id for r in report.sent] == ["a1"]


@pytest.mark.asyncio
async def test_each_offset_is_tracked_separately(notifier, audit_log):
    settings = Settings(reminders=ReminderConfig(reminder_days=[3, 1, 1, 0]))
    store = make_store([make_appointment("a1", date="2025-01-17")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)  # 71.5h left: 3-day window
    assert store.get("a1").reminder_sent_offsets == [3]

    await scheduler.sweep(datetime(2025, 1, 16, 9, 30))  # 23.5h left
    assert store.get("a1").reminder_sent_offsets == [1, 3]
    assert notifier.send_reminder.await_count == 2


@pytest.mark.asyncio
async def test_partial_channel_failure_still_consumes_offset(settings, notifier, audit_log):
    notifier.send_reminder.return_value = DispatchResult(success=True, email_sent=True, messaging_sent=False)
    store = make_store([make_appointment("a1")])
    notices = []

    async def on_notice(text):
        notices.append(text)

    scheduler = _scheduler(store, notifier, audit_log, settings, on_notice=on_notice)
    report = await scheduler.sweep(NOW)

    assert report.sent[0].channels == ["email"]
    assert store.get("a1").reminder_sent_offsets == [1]
    assert audit_log.entries[0].metadata["channels"] == "email"
    assert any("messaging" in n for n in notices)

    await scheduler.sweep(NOW + timedelta(minutes=10), force=True)
    assert notifier.send_reminder.await_count == 1


@pytest.mark.asyncio
async def test_total_failure_retries_only_while_window_is_open(settings, notifier, audit_log):
    notifier.send_reminder.return_value = DispatchResult(success=False)
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)
    assert report.failed[0].appointment_id == "a1"
    assert store.get("a1").reminder_sent_offsets == []
    assert audit_log.entries == []

    notifier.send_reminder.return_value = DispatchResult(success=True, email_sent=True)
    await scheduler.sweep(NOW + timedelta(minutes=20), force=True)
    assert store.get("a1").reminder_sent_offsets == [1]
    assert notifier.send_reminder.await_count == 2


@pytest.mark.asyncio
async def test_missed_window_is_not_retried_later(settings, notifier, audit_log):
    notifier.send_reminder.return_value = DispatchResult(success=False)
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)
    notifier.send_reminder.return_value = DispatchResult(success=True, email_sent=True)
    await scheduler.sweep(NOW + timedelta(hours=1))

    assert notifier.send_reminder.await_count == 1
    assert store.get("a1").reminder_sent_offsets == []


@pytest.mark.asyncio
async def test_failure_is_not_retried_when_retry_disabled(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        scheduler=SchedulerConfig(retry_within_window=False),
    )
    notifier.send_reminder.return_value = DispatchResult(success=False)
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)
    await scheduler.sweep(NOW + timedelta(minutes=10), force=True)

    assert notifier.send_reminder.await_count == 1


@pytest.mark.asyncio
async def test_one_failing_appointment_does_not_stop_the_batch(settings, notifier, audit_log):
    async def send_reminder(appointment, *args):
        if appointment.id == "a1":
            raise RuntimeError("smtp down")
        return DispatchResult(success=True, email_sent=True)

    notifier.send_reminder.side_effect = send_reminder
    store = make_store([make_appointment("a1"), make_appointment("a2")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)

    assert [r.appointment_id for r in report.failed] == ["a1"]
    assert "smtp down" in report.failed[0].error
    assert [r.appointment_id for r in report.sent] == ["a2"]
    assert store.get("a2").reminder_sent_offsets == [1]
    assert scheduler.state.failures_total == 1


@pytest.mark.asyncio
async def test_hung_notifier_times_out(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        scheduler=SchedulerConfig(notify_timeout=0.05),
    )

    async def hang(*args):
        await asyncio.sleep(5)

    notifier.send_reminder.side_effect = hang
    store = make_store([make_appointment("a1"), make_appointment("a2")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)

    assert [r.appointment_id for r in report.failed] == ["a1", "a2"]
    assert report.failed[0].error.startswith("timeout")
    assert store.get("a1").reminder_sent_offsets == []


@pytest.mark.asyncio
async def test_ready_for_pickup_reminder_sent_once(settings, notifier, audit_log):
    ready = make_appointment(
        "r1",
        status="document-ready",
        date="2025-01-02",
        completed_at=NOW - timedelta(days=8),
    )
    store = make_store([ready])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)
    await scheduler.sweep(NOW, force=True)
    await scheduler.sweep(NOW + timedelta(days=3), force=True)

    assert notifier.send_ready_for_pickup.await_count == 1
    assert [r.kind for r in report.sent] == ["ready-for-pickup"]
    updated = store.get("r1")
    assert updated.rg_ready_reminders_sent == 1
    assert updated.last_ready_reminder_sent_at == NOW
    assert audit_log.entries[0].action == "ready_reminder_sent"
    assert audit_log.entries[0].metadata["days_since_ready"] == 8


@pytest.mark.asyncio
async def test_ready_reminder_waits_for_configured_days(settings, notifier, audit_log):
    ready = make_appointment("r1", status="document-ready", completed_at=NOW - timedelta(days=6))
    store = make_store([ready])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)

    notifier.send_ready_for_pickup.assert_not_awaited()


@pytest.mark.asyncio
async def test_disabled_reminders_send_nothing(notifier, audit_log):
    settings = Settings(reminders=ReminderConfig(enabled=False, reminder_days=[1]))
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)

    notifier.send_reminder.assert_not_awaited()


@pytest.mark.asyncio
async def test_all_channels_disabled_sends_nothing(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1], email_enabled=False, messaging_enabled=False)
    )
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.sweep(NOW)

    notifier.send_reminder.assert_not_awaited()


@pytest.mark.asyncio
async def test_unchanged_check_key_skips_sweep(settings, notifier, audit_log):
    store = make_store([make_appointment("a1", date="2025-02-01")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    first = await scheduler.sweep(NOW)
    second = await scheduler.sweep(NOW + timedelta(minutes=10))
    third = await scheduler.sweep(NOW + timedelta(hours=1))

    assert first.skipped is False
    assert second.skipped is True and second.skip_reason == "unchanged"
    assert third.skipped is False
    assert scheduler.state.sweeps_count == 2
    assert scheduler.state.skipped_count == 1


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped_not_queued(settings, notifier, audit_log):
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_send(*args):
        started.set()
        await release.wait()
        return DispatchResult(success=True, email_sent=True)

    notifier.send_reminder.side_effect = slow_send
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings)

    running = asyncio.create_task(scheduler.sweep(NOW))
    await started.wait()
    overlapping = await scheduler.sweep(NOW, force=True)
    release.set()
    report = await running

    assert overlapping.skipped is True and overlapping.skip_reason == "in-flight"
    assert len(report.sent) == 1
    assert notifier.send_reminder.await_count == 1


@pytest.mark.asyncio
async def test_attempt_cache_is_injectable_and_shared(settings, notifier, audit_log):
    cache = AttemptCache()
    cache.add("a1-1")
    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, audit_log, settings, attempts=cache)

    await scheduler.sweep(NOW)

    notifier.send_reminder.assert_not_awaited()


def test_attempt_cache_expires_and_is_bounded():
    clock = [0.0]
    cache = AttemptCache(max_entries=2, ttl=timedelta(seconds=10), clock=lambda: clock[0])

    assert cache.add("a") is True
    assert cache.add("a") is False
    cache.add("b")
    cache.add("c")
    assert "a" not in cache
    assert len(cache) == 2

    clock[0] = 11.0
    assert "b" not in cache
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_parallel_dispatch_records_in_stable_order(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        scheduler=SchedulerConfig(max_concurrency=3),
    )
    delays = {"a1": 0.05, "a2": 0.0, "a3": 0.02}

    async def send(appointment, *args):
        await asyncio.sleep(delays[appointment.id])
        return DispatchResult(success=True, email_sent=True)

    notifier.send_reminder.side_effect = send
    store = make_store(
        [
            make_appointment("a3", time="09:00"),
            make_appointment("a2", time="09:00"),
            make_appointment("a1", time="09:00"),
        ]
    )
    scheduler = _scheduler(store, notifier, audit_log, settings)

    report = await scheduler.sweep(NOW)

    assert [r.appointment_id for r in report.sent] == ["a1", "a2", "a3"]
    assert [e.target_id for e in audit_log.entries] == ["a1", "a2", "a3"]


@pytest.mark.asyncio
async def test_audit_failure_does_not_undo_dispatch(settings, notifier):
    class BrokenAudit:
        def append(self, entry):
            raise RuntimeError("audit down")

    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, BrokenAudit(), settings)

    report = await scheduler.sweep(NOW)

    assert len(report.sent) == 1
    assert store.get("a1").reminder_sent_offsets == [1]


@pytest.mark.asyncio
async def test_async_audit_log_is_awaited(settings, notifier):
    entries = []

    class AsyncAudit:
        async def append(self, entry):
            entries.append(entry)

    store = make_store([make_appointment("a1")])
    scheduler = _scheduler(store, notifier, AsyncAudit(), settings)

    await scheduler.sweep(NOW)

    assert [e.action for e in entries] == ["reminder_sent"]


@pytest.mark.asyncio
async def test_loop_runs_immediately_and_stops(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        scheduler=SchedulerConfig(sweep_interval=3600),
    )
    appointment_time = datetime.now() + timedelta(hours=23, minutes=30)
    store = make_store(
        [
            make_appointment(
                "a1",
                date=appointment_time.date().isoformat(),
                time=appointment_time.strftime("%H:%M"),
            )
        ]
    )
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.start()
    for _ in range(50):
        if scheduler.state.sweeps_count:
            break
        await asyncio.sleep(0.01)
    assert scheduler.is_running is True

    scheduler.notify_changed()
    await scheduler.stop()

    assert scheduler.is_running is False
    assert scheduler.state.sweeps_count >= 1
    assert notifier.send_reminder.await_count == 1


@pytest.mark.asyncio
async def test_failed_ready_for_pickup_reminder_is_not_retried(settings, notifier, audit_log):
    """The pickup notice has no time window, so a failure is final for this process."""
    notifier.send_ready_for_pickup.return_value = DispatchResult(success=False)
    ready = make_appointment("r1", status="document-ready", completed_at=NOW - timedelta(days=8))
    store = make_store([ready])
    notices = []

    async def on_notice(text):
        notices.append(text)

    scheduler = _scheduler(store, notifier, audit_log, settings, on_notice=on_notice)

    for hours in range(5):
        await scheduler.sweep(NOW + timedelta(hours=hours), force=True)

    assert notifier.send_ready_for_pickup.await_count == 1
    assert len(notices) == 1
    assert store.get("r1").rg_ready_reminders_sent == 0


@pytest.mark.asyncio
async def test_loop_resweeps_failed_reminder_before_window_closes(notifier, audit_log):
    settings = Settings(
        reminders=ReminderConfig(reminder_days=[1]),
        scheduler=SchedulerConfig(sweep_interval=3600, retry_delay=0.05),
    )
    notifier.send_reminder.side_effect = [
        DispatchResult(success=False),
        DispatchResult(success=True, email_sent=True),
    ]
    appointment_time = datetime.now() + timedelta(hours=23, minutes=30)
    store = make_store(
        [
            make_appointment(
                "a1",
                date=appointment_time.date().isoformat(),
                time=appointment_time.strftime("%H:%M"),
            )
        ]
    )
    scheduler = _scheduler(store, notifier, audit_log, settings)

    await scheduler.start()
    for _ in range(100):
        if store.get("a1").reminder_sent_offsets:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert notifier.send_reminder.await_count == 2
    assert store.get("a1").reminder_sent_offsets == [1]


def test_attempt_cache_expires_in_insertion_order():
    clock = [0.0]
    cache = AttemptCache(ttl=timedelta(seconds=10), clock=lambda: clock[0])

    cache.add("a")
    clock[0] = 5.0
    cache.add("b")
    cache.add("c")
    cache.discard("b")
    cache.add("b")

    clock[0] = 12.0
    assert "a" not in cache
    assert "c" in cache
    assert "b" in cache

    clock[0] = 15.0
    assert len(cache) == 0

"""
Reminder scheduler for upcoming appointments and documents ready for pickup.

Serviço de lembretes em segundo plano:
- varredura periódica (a cada hora) e imediata ao iniciar ou quando os dados mudam
- no máximo uma varredura por vez; disparos duplicados bloqueados por cache
- cada agendamento é processado isoladamente; uma falha não derruba a varredura
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from .collaborators import AppointmentStore, AuditLog, Notifier, StoreSnapshot
from .config import Settings, get_settings
from .models import (
    Appointment,
    AppointmentStatus,
    AuditEntry,
    DispatchRecord,
    DispatchResult,
    OffsetInfo,
    SweepReport,
    SweepState,
)
from .utils import hour_bucket, to_naive

logger = logging.getLogger(__name__)


NoticeFunc = Callable[[str], Awaitable[None]]

REMINDER = "reminder"
READY_FOR_PICKUP = "ready-for-pickup"
SYSTEM_ACTOR = "Sistema Automático"

_REMINDER_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


class AttemptCache:
    """
    Bounded map of dispatch keys already attempted, each kept for ``ttl``.

    Owned by a scheduler instance (or shared on purpose by passing the same
    cache to several schedulers).
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl: timedelta = timedelta(days=2),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, max_entries)
        self.ttl_seconds = ttl.total_seconds()
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def _purge(self) -> None:
        # Mesmo TTL para todos: a ordem de inserção é a ordem de expiração
        now = self._clock()
        while self._entries:
            _, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            self._entries.popitem(last=False)

    def add(self, key: str) -> bool:
        """Record ``key``; False if it was already present."""
        self._purge()
        if key in self._entries:
            return False
        self._entries[key] = self._clock() + self.ttl_seconds
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        self._purge()
        return key in self._entries

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)


@dataclass(frozen=True)
class _Job:
    appointment: Appointment
    kind: str
    key: str
    offset_days: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[int, str, str, str, int]:
        # Ordem estável para a auditoria, mesmo com envios em paralelo
        return (
            0 if self.kind == REMINDER else 1,
            self.appointment.date.isoformat(),
            self.appointment.time,
            self.appointment.id,
            self.offset_days or 0,
        )


def _lead_text(offset_days: int) -> str:
    return "1 dia antes" if offset_days == 1 else f"{offset_days} dias antes"


def reminder_due(hours_remaining: float, offset_days: int) -> bool:
    """True inside the one-hour window that ends at ``offset_days * 24`` hours before."""
    offset_hours = offset_days * 24
    return offset_hours - 1 < hours_remaining <= offset_hours


@dataclass
class ReminderScheduler:
    """Periodic, re-entrancy guarded reminder sweep."""

    store: AppointmentStore
    notifier: Notifier
    audit_log: AuditLog
    settings: Optional[Settings] = None
    on_notice: Optional[NoticeFunc] = None
    attempts: Optional[AttemptCache] = None
    _state: SweepState = field(default_factory=SweepState)
    _task: Optional[asyncio.Task[None]] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _wake_event: asyncio.Event = field(default_factory=asyncio.Event)
    _in_flight: bool = False
    _last_check_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.settings is None:
            self.settings = get_settings()
        if self.attempts is None:
            self.attempts = AttemptCache()

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def state(self) -> SweepState:
        return self._state

    # region loop
    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.info("Reminder scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="reminder-sweep-loop")
        logger.info("Reminder scheduler started")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._wake_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Reminder task did not stop within timeout")
        self._task = None
        self._state.is_running = False
        logger.info("Reminder scheduler stopped")

    def notify_changed(self) -> None:
        """Ask the loop for an immediate sweep (appointments were added or edited)."""
        self._wake_event.set()

    async def _run_loop(self) -> None:
        self._state.is_running = True
        cfg = self.settings.scheduler
        retry_pending = False

        while not self._stop_event.is_set():
            self._wake_event.clear()
            try:
                report = await self.sweep(force=retry_pending)
                retry_pending = cfg.retry_within_window and any(
                    record.kind == REMINDER for record in report.failed
                )
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error in reminder loop: %s", e)
                self._state.last_error = str(e)
                retry_pending = False

            if self._stop_event.is_set():
                break
            # Após falha, nova varredura antes que a janela de 1 hora feche
            timeout = min(cfg.sweep_interval, cfg.retry_delay) if retry_pending else cfg.sweep_interval
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        self._state.is_running = False

    # endregion

    def _check_key(self, snapshot: StoreSnapshot, now: datetime) -> str:
        ids = ",".join(sorted(a.id for a in snapshot.appointments))
        return f"{ids}|{hour_bucket(now)}"

    async def sweep(self, now: Optional[datetime] = None, *, force: bool = False) -> SweepReport:
        """
        Run one due-check-and-dispatch pass.

        A sweep already in flight makes this call return a skipped report
        instead of queueing; so does an unchanged (appointment ids, hour) key
        unless ``force`` is set.
        """
        now = to_naive(now) if now is not None else datetime.now()
        report = SweepReport(started_at=now)

        if self._in_flight:
            logger.debug("Sweep already in flight, skipping trigger")
            self._state.skipped_count += 1
            return report.model_copy(update={"skipped": True, "skip_reason": "in-flight"})

        snapshot = self.store.snapshot()
        check_key = self._check_key(snapshot, now)
        if not force and check_key == self._last_check_key:
            self._state.skipped_count += 1
            return report.model_copy(update={"skipped": True, "skip_reason": "unchanged"})

        self._last_check_key = check_key
        self._in_flight = True
        try:
            jobs = self._collect_jobs(snapshot, now)
            if jobs:
                logger.info("Sweep found %s due notification(s)", len(jobs))
            await self._dispatch_all(jobs, snapshot, now, report)
        finally:
            self._in_flight = False
            self._state.sweeps_count += 1
            self._state.last_sweep_at = now
        return report

    # region due checks
    def _collect_jobs(self, snapshot: StoreSnapshot, now: datetime) -> List[_Job]:
        jobs = self._reminder_jobs(snapshot.appointments, now)
        jobs.extend(self._ready_jobs(snapshot.appointments, now))
        jobs.sort(key=lambda job: job.sort_key)
        return jobs

    def _reminder_jobs(self, appointments: Sequence[Appointment], now: datetime) -> List[_Job]:
        cfg = self.settings.reminders
        if not cfg.enabled:
            return []
        if not (cfg.email_enabled or cfg.messaging_enabled):
            logger.info("Reminders enabled but every channel is disabled")
            return []

        jobs: List[_Job] = []
        for appointment in appointments:
            if appointment.status not in _REMINDER_STATUSES:
                continue
            starts_at = appointment.starts_at
            if starts_at is None:
                logger.warning("Appointment %s has unparseable time %r", appointment.id, appointment.time)
                continue
            hours_remaining = (starts_at - now).total_seconds() / 3600

            for offset in cfg.offsets:
                if offset in appointment.reminder_sent_offsets:
                    continue
                key = f"{appointment.id}-{offset}"
                if key in self.attempts:
                    continue
                if reminder_due(hours_remaining, offset):
                    jobs.append(_Job(appointment, REMINDER, key, offset))
        return jobs

    def _ready_jobs(self, appointments: Sequence[Appointment], now: datetime) -> List[_Job]:
        cfg = self.settings.ready_reminders
        if not cfg.enabled:
            return []

        min_age = timedelta(days=cfg.reminder_after_days)
        jobs: List[_Job] = []
        for appointment in appointments:
            if appointment.status != AppointmentStatus.DOCUMENT_READY or appointment.completed_at is None:
                continue
            # Lembrete único: depois do primeiro envio não há outro automático
            if appointment.rg_ready_reminders_sent != 0:
                continue
            if now - to_naive(appointment.completed_at) < min_age:
                continue
            key = f"{appointment.id}-ready-{appointment.rg_ready_reminders_sent}"
            if key in self.attempts:
                continue
            jobs.append(_Job(appointment, READY_FOR_PICKUP, key))
        return jobs

    # endregion

    # region dispatch
    async def _dispatch_all(
        self,
        jobs: List[_Job],
        snapshot: StoreSnapshot,
        now: datetime,
        report: SweepReport,
    ) -> None:
        if not jobs:
            return
        semaphore = asyncio.Semaphore(self.settings.scheduler.max_concurrency)

        async def run(job: _Job) -> Tuple[Optional[DispatchResult], Optional[str]]:
            async with semaphore:
                return await self._dispatch(job, snapshot)

        for job in jobs:
            self.attempts.add(job.key)
        tasks = [asyncio.create_task(run(job)) for job in jobs]
        try:
            # Resultados registrados na ordem estável dos jobs
            for job, task in zip(jobs, tasks):
                outcome = await task
                await self._record(job, outcome, now, report)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _dispatch(
        self,
        job: _Job,
        snapshot: StoreSnapshot,
    ) -> Tuple[Optional[DispatchResult], Optional[str]]:
        appointment = job.appointment
        location = snapshot.location(appointment.location_id)
        address = location.address if location else None
        map_url = location.map_url if location else None
        name = location.name if location else None
        timeout = self.settings.scheduler.notify_timeout

        try:
            if job.kind == REMINDER:
                cfg = self.settings.reminders
                offset_info = OffsetInfo(
                    offset_days=job.offset_days or 1,
                    subject_template=cfg.email_subject,
                    body_template=cfg.email_body or cfg.custom_message,
                )
                call = self.notifier.send_reminder(
                    appointment, self.settings, address, map_url, offset_info, name
                )
            else:
                call = self.notifier.send_ready_for_pickup(
                    appointment, self.settings, address, map_url, name
                )
            result = await asyncio.wait_for(call, timeout=timeout)
            if not isinstance(result, DispatchResult):
                result = DispatchResult.model_validate(result)
            return result, None
        except asyncio.TimeoutError:
            logger.warning("Notifier timed out after %.1fs for %s", timeout, job.key)
            return None, f"timeout after {timeout:.0f}s"
        except Exception as e:  # noqa: BLE001
            logger.exception("Notifier failed for %s: %s", job.key, e)
            return None, repr(e)

    async def _record(
        self,
        job: _Job,
        outcome: Tuple[Optional[DispatchResult], Optional[str]],
        now: datetime,
        report: SweepReport,
    ) -> None:
        appointment = job.appointment
        result, error = outcome

        if result is None or not result.success:
            error = error or "notifier reported failure"
            report.failed.append(
                DispatchRecord(
                    appointment_id=appointment.id, kind=job.kind, offset_days=job.offset_days, error=error
                )
            )
            self._state.failures_total += 1
            self._state.last_error = error
            if job.kind == REMINDER and self.settings.scheduler.retry_within_window:
                # Continua elegível apenas enquanto a janela de 1 hora estiver aberta;
                # o aviso de documento pronto é tentado uma única vez
                self.attempts.discard(job.key)
            await self._notice(f"Falha ao enviar lembrete para {appointment.full_name}: {error}")
            return

        try:
            if job.kind == REMINDER:
                await self._mark_reminder_sent(job, result)
            else:
                await self._mark_ready_reminder_sent(job, result, now)
        except Exception as e:  # noqa: BLE001
            # Envio feito mas não registrado: a chave continua no cache para não repetir
            logger.exception("Failed to record dispatch for %s: %s", job.key, e)
            self._state.last_error = str(e)
            report.failed.append(
                DispatchRecord(
                    appointment_id=appointment.id,
                    kind=job.kind,
                    offset_days=job.offset_days,
                    channels=result.channels,
                    error=repr(e),
                )
            )
            return

        report.sent.append(
            DispatchRecord(
                appointment_id=appointment.id,
                kind=job.kind,
                offset_days=job.offset_days,
                channels=result.channels,
            )
        )

    async def _mark_reminder_sent(self, job: _Job, result: DispatchResult) -> None:
        appointment = job.appointment
        offset = job.offset_days or 1

        def updater(current: Sequence[Appointment]) -> List[Appointment]:
            return [a.with_reminder_offset(offset) if a.id == appointment.id else a for a in current]

        await self.store.update(updater)
        self._state.reminders_sent_total += 1

        channels = ", ".join(result.channels)
        lead = _lead_text(offset)
        await self._audit(
            AuditEntry(
                action="reminder_sent",
                description=f"Lembrete automático ({lead}) enviado para {appointment.full_name}",
                performed_by=SYSTEM_ACTOR,
                target_id=appointment.id,
                metadata={
                    "module": "Lembretes",
                    "protocol": appointment.protocol,
                    "citizen_name": appointment.full_name,
                    "date": appointment.date.isoformat(),
                    "time": appointment.time,
                    "channels": channels,
                    "reminder_offset_days": offset,
                },
                tags=["reminder", "automatic", "notification"],
            )
        )
        await self._notice(f"Lembrete ({lead}) enviado via {channels} para {appointment.full_name}")

        cfg = self.settings.reminders
        missing = []
        if cfg.email_enabled and not result.email_sent:
            missing.append("email")
        if cfg.messaging_enabled and not result.messaging_sent:
            missing.append("messaging")
        if missing:
            await self._notice(
                f"Lembrete para {appointment.full_name} não foi entregue via {', '.join(missing)}"
            )

    async def _mark_ready_reminder_sent(self, job: _Job, result: DispatchResult, now: datetime) -> None:
        appointment = job.appointment
        observed = appointment.rg_ready_reminders_sent

        def updater(current: Sequence[Appointment]) -> List[Appointment]:
            return [
                a.with_ready_reminder(now) if a.id == appointment.id and a.rg_ready_reminders_sent == observed else a
                for a in current
            ]

        await self.store.update(updater)
        self._state.ready_reminders_sent_total += 1

        days_ready = (now - to_naive(appointment.completed_at)).days if appointment.completed_at else 0
        channels = ", ".join(result.channels)
        await self._audit(
            AuditEntry(
                action="ready_reminder_sent",
                description=f"Aviso de documento pronto enviado para {appointment.full_name}",
                performed_by=SYSTEM_ACTOR,
                target_id=appointment.id,
                metadata={
                    "module": "Lembretes",
                    "protocol": appointment.protocol,
                    "citizen_name": appointment.full_name,
                    "days_since_ready": days_ready,
                    "channels": channels,
                },
                tags=["ready-for-pickup", "automatic", "notification"],
            )
        )
        await self._notice(
            f"Documento pronto há {days_ready} dias - lembrete enviado via {channels} para {appointment.full_name}"
        )

    # endregion

    async def _audit(self, entry: AuditEntry) -> None:
        try:
            pending = self.audit_log.append(entry)
            if inspect.isawaitable(pending):
                await pending
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to append audit entry %s for %s: %s", entry.action, entry.target_id, e)

    async def _notice(self, text: str) -> None:
        logger.info(text)
        if self.on_notice is None:
            return
        try:
            await self.on_notice(text)
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to deliver notice: %s", e)


__all__ = ["AttemptCache", "NoticeFunc", "ReminderScheduler", "reminder_due", "READY_FOR_PICKUP", "REMINDER"]

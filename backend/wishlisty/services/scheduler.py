"""Periodic sweeps: reservation expiry, reservation reminders, event reminders."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishlisty.core.config import Settings, settings
from wishlisty.core.sweep_lock import SweepLock
from wishlisty.core.sweep_metrics import SweepMetrics, sweep_metrics
from wishlisty.core.timeutils import utcnow
from wishlisty.db.session import transaction
from wishlisty.models.models import (
    Event,
    EventInvitation,
    EventStatusEnum,
    InvitationStatusEnum,
    NotificationTypeEnum,
)
from wishlisty.schemas.reservation import SweepSummary
from wishlisty.services.notifications import NotificationRouter
from wishlisty.services.reservations import ReservationLedger


logger = logging.getLogger("wishlisty.scheduler")

HOURLY_JOB_ID = "reservation_sweep"
DAILY_JOB_ID = "event_reminder_sweep"

REMINDED_INVITATION_STATUSES = (
    InvitationStatusEnum.PENDING.value,
    InvitationStatusEnum.ACCEPTED.value,
    InvitationStatusEnum.MAYBE.value,
)


class SweepScheduler:
    def __init__(
        self,
        ledger: ReservationLedger,
        router: NotificationRouter,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings = settings,
        lock: SweepLock | None = None,
        metrics: SweepMetrics | None = None,
    ) -> None:
        self._ledger = ledger
        self._router = router
        self._session_factory = session_factory
        self._config = config
        self._lock = lock or SweepLock(redis_dsn="")
        self._metrics = metrics or sweep_metrics
        self._tz = ZoneInfo(config.scheduler_timezone)
        self._pass_lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = AsyncIOScheduler(timezone=self._tz)
        scheduler.add_job(
            self.run_hourly_pass,
            CronTrigger.from_crontab(self._config.hourly_sweep_cron, timezone=self._tz),
            id=HOURLY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_daily_pass,
            CronTrigger.from_crontab(self._config.daily_sweep_cron, timezone=self._tz),
            id=DAILY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Sweep scheduler started tz=%s hourly=%r daily=%r",
            self._config.scheduler_timezone,
            self._config.hourly_sweep_cron,
            self._config.daily_sweep_cron,
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Sweep scheduler stopped")

    async def _measured(self, name: str, runner: Callable[[], Awaitable[SweepSummary]]) -> SweepSummary | None:
        started = time.perf_counter()
        try:
            summary = await runner()
        except Exception:
            self._metrics.record(name, (time.perf_counter() - started) * 1000, error=True)
            logger.exception("Sweep %s failed", name)
            return None
        self._metrics.record(name, (time.perf_counter() - started) * 1000, summary)
        return summary

    async def run_hourly_pass(self, now: datetime | None = None) -> dict[str, SweepSummary | None] | None:
        async with self._pass_lock:
            if not await self._lock.acquire("hourly"):
                self._metrics.record_skip("expire")
                self._metrics.record_skip("remind")
                return None
            try:
                now = now or utcnow()
                horizon = timedelta(hours=self._config.reservation_reminder_hours)
                expired = await self._measured("expire", lambda: self._ledger.expire_due(now))
                reminded = await self._measured("remind", lambda: self._ledger.remind_approaching(now, horizon))
                return {"expire": expired, "remind": reminded}
            finally:
                await self._lock.release("hourly")

    async def run_daily_pass(self, now: datetime | None = None) -> SweepSummary | None:
        async with self._pass_lock:
            if not await self._lock.acquire("daily"):
                self._metrics.record_skip("event_reminder")
                return None
            try:
                return await self._measured("event_reminder", lambda: self.remind_events(now or utcnow()))
            finally:
                await self._lock.release("daily")

    def _local_day_start(self, now: datetime, days_ahead: int = 0) -> datetime:
        local = now.astimezone(self._tz)
        day = local.date() + timedelta(days=days_ahead)
        return datetime(day.year, day.month, day.day, tzinfo=self._tz).astimezone(timezone.utc)

    async def remind_events(self, now: datetime) -> SweepSummary:
        today_start = self._local_day_start(now)
        days_ahead = self._config.event_reminder_days_ahead
        window_start = self._local_day_start(now, days_ahead)
        window_end = self._local_day_start(now, days_ahead + 1)

        async with transaction(self._session_factory, "load upcoming events") as session:
            rows = await session.execute(
                select(Event.id, Event.name, Event.creator_id)
                .where(
                    Event.status == EventStatusEnum.UPCOMING.value,
                    Event.date >= window_start,
                    Event.date < window_end,
                )
                .order_by(Event.id)
            )
            events = rows.all()

        summary = SweepSummary()
        for event_id, event_name, creator_id in events:
            try:
                invitee_ids = await self._pending_reminders(event_id, today_start)
            except Exception:
                summary.failed += 1
                logger.exception("Event reminder lookup failed event_id=%s", event_id)
                continue
            summary.processed += 1
            for invitee_id in invitee_ids:
                try:
                    if not await self._claim_reminder(event_id, invitee_id, now, today_start):
                        continue
                    await self._router.dispatch(
                        invitee_id,
                        NotificationTypeEnum.EVENT_REMINDER,
                        "Event Reminder",
                        "notif.event_reminder",
                        {"eventName": event_name, "days": days_ahead},
                        sender_id=creator_id,
                        related_id=event_id,
                    )
                    summary.notified += 1
                except Exception:
                    logger.exception("Failed to send event reminder event_id=%s user_id=%s", event_id, invitee_id)

        if events:
            logger.info(
                "Event reminder sweep events=%s notified=%s failed=%s",
                len(events),
                summary.notified,
                summary.failed,
            )
        return summary

    async def _pending_reminders(self, event_id: int, since: datetime) -> list[int]:
        async with transaction(self._session_factory, "load event invitees") as session:
            rows = await session.execute(
                select(EventInvitation.invitee_id)
                .where(
                    EventInvitation.event_id == event_id,
                    EventInvitation.status.in_(REMINDED_INVITATION_STATUSES),
                    or_(EventInvitation.reminded_at.is_(None), EventInvitation.reminded_at < since),
                )
                .order_by(EventInvitation.invitee_id)
            )
            return list(rows.scalars().all())

    async def _claim_reminder(self, event_id: int, invitee_id: int, now: datetime, since: datetime) -> bool:
        # Stamped on the invitation so deleting the notification does not re-arm the reminder
        async with transaction(self._session_factory, "claim event reminder") as session:
            claim = await session.execute(
                update(EventInvitation)
                .where(
                    EventInvitation.event_id == event_id,
                    EventInvitation.invitee_id == invitee_id,
                    or_(EventInvitation.reminded_at.is_(None), EventInvitation.reminded_at < since),
                )
                .values(reminded_at=now)
                .execution_options(synchronize_session=False)
            )
            return bool(claim.rowcount)

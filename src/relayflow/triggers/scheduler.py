"""Cron trigger scheduler.

Each schedule trigger becomes one job on an APScheduler
:class:`~apscheduler.schedulers.asyncio.AsyncIOScheduler`, driven by a
:class:`~apscheduler.triggers.cron.CronTrigger` in the trigger's
timezone. Jobs coalesce missed runs and drop slots older than
``misfire_grace_s``.

Before firing, a job takes a ``schedule:{code}:{trigger}:{fire_ts}``
lease that is never released, so every instance sharing a coordination
store fires a slot at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from relayflow.config import LockSettings, SchedulerSettings
from relayflow.pipeline.models import Run, ScheduleTrigger
from relayflow.runtime.locks import DistributedLockService

logger = logging.getLogger(__name__)

FireCallback = Callable[[str, str, list[dict[str, Any]] | None], Awaitable[Run | None]]


def schedule_lock_key(pipeline_code: str, trigger_key: str, fire_time: datetime) -> str:
    return f"schedule:{pipeline_code}:{trigger_key}:{int(fire_time.timestamp())}"


def schedule_job_id(pipeline_code: str, trigger_key: str) -> str:
    return f"{pipeline_code}:{trigger_key}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CronSchedule:
    """A five-field crontab expression bound to a timezone."""

    def __init__(self, expression: str, tz: str = "UTC") -> None:
        self.expression = expression
        self.timezone = tz
        self.trigger = CronTrigger.from_crontab(expression, timezone=tz)

    def next_after(self, moment: datetime) -> datetime | None:
        """First fire time strictly after *moment*."""
        return self.trigger.get_next_fire_time(None, moment + timedelta(microseconds=1))

    def next_from(self, moment: datetime) -> datetime | None:
        """First fire time at or after *moment*."""
        return self.trigger.get_next_fire_time(None, moment)

    def latest_slot(self, moment: datetime, window: timedelta) -> datetime | None:
        """Most recent fire time in ``[moment - window, moment]``, if any."""
        slot = None
        candidate = self.next_from(moment - window)
        while candidate is not None and candidate <= moment:
            slot = candidate
            candidate = self.next_after(candidate)
        return slot


@dataclass
class ScheduledEntry:
    pipeline_code: str
    trigger_key: str
    schedule: CronSchedule
    job_id: str


class TriggerScheduler:
    """Fires schedule triggers when their cron slot comes due.

    Args:
        fire: Callback that starts a run for ``(code, trigger, seed)``.
        locks: Lock service used to dedupe fires across instances.
        settings: Misfire grace window and default timezone.
        lock_settings: Supplies the per-fire lease TTL.
        clock: Returns the current timezone-aware time.
    """

    def __init__(
        self,
        fire: FireCallback,
        locks: DistributedLockService,
        settings: SchedulerSettings | None = None,
        lock_settings: LockSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._fire = fire
        self._locks = locks
        self._settings = settings or SchedulerSettings()
        self._lock_settings = lock_settings or LockSettings()
        self._clock = clock
        self._entries: dict[tuple[str, str], ScheduledEntry] = {}
        self._scheduler = AsyncIOScheduler(timezone=self._settings.default_timezone)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: SchedulerSettings) -> None:
        """Applies to triggers added afterwards."""
        self._settings = settings

    def add(self, pipeline_code: str, trigger: ScheduleTrigger) -> ScheduledEntry:
        schedule = CronSchedule(trigger.cron, trigger.timezone or self._settings.default_timezone)
        job = self._scheduler.add_job(
            self.fire_slot,
            schedule.trigger,
            args=(pipeline_code, trigger.key),
            id=schedule_job_id(pipeline_code, trigger.key),
            name=f"schedule {pipeline_code}/{trigger.key}",
            coalesce=True,
            misfire_grace_time=self._settings.misfire_grace_s,
            max_instances=1,
            replace_existing=True,
        )
        entry = ScheduledEntry(pipeline_code, trigger.key, schedule, job.id)
        self._entries[(pipeline_code, trigger.key)] = entry
        logger.info(
            "Scheduled '%s/%s' (%s %s); next fire %s",
            pipeline_code,
            trigger.key,
            trigger.cron,
            schedule.timezone,
            schedule.next_from(self._clock()),
        )
        return entry

    def remove(self, pipeline_code: str) -> int:
        doomed = [k for k in self._entries if k[0] == pipeline_code]
        for key in doomed:
            entry = self._entries.pop(key)
            self._scheduler.remove_job(entry.job_id)
        return len(doomed)

    def entries(self) -> list[ScheduledEntry]:
        return list(self._entries.values())

    def jobs(self) -> list[Job]:
        return self._scheduler.get_jobs()

    async def fire_slot(
        self, pipeline_code: str, trigger_key: str, now: datetime | None = None
    ) -> bool:
        """Fire the most recent due slot of one trigger.

        This is the job body APScheduler runs. The slot is the latest cron
        time within the misfire window before *now*; its lease decides
        which instance fires.

        Returns:
            Whether this instance fired the slot.
        """
        entry = self._entries.get((pipeline_code, trigger_key))
        if entry is None:
            return False
        now = now or self._clock()
        window = timedelta(seconds=max(1, self._settings.misfire_grace_s))
        slot = entry.schedule.latest_slot(now, window)
        if slot is None:
            logger.debug("No due slot for '%s/%s' at %s", pipeline_code, trigger_key, now)
            return False

        # The lease must outlive the misfire window of every instance.
        ttl_ms = max(self._lock_settings.scheduler_ttl_ms, int(window.total_seconds() * 2000))
        lease = await self._locks.acquire(
            schedule_lock_key(pipeline_code, trigger_key, slot), ttl_ms
        )
        if not lease.acquired:
            logger.debug(
                "Slot %s of '%s/%s' already fired elsewhere", slot, pipeline_code, trigger_key
            )
            return False
        await self._fire(pipeline_code, trigger_key, [{"_scheduledAt": slot.isoformat()}])
        return True

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

"""Digest job schedule: cron triggers and per-slot firing state."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import SchedulerConfig

logger = logging.getLogger(__name__)

MORNING_DIGEST = "morning_digest"
LUNCH_REMINDER = "lunch_reminder"
END_OF_DAY_SUMMARY = "end_of_day_summary"
HOURLY_CHECK = "hourly_check"

JOBS = (MORNING_DIGEST, LUNCH_REMINDER, END_OF_DAY_SUMMARY, HOURLY_CHECK)


def _as_utc(dt: datetime) -> datetime:
    """Convert to aware UTC; naive datetimes are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def job_hour(job_id: str, config: SchedulerConfig) -> Optional[int]:
    """Fixed hour of a daily job, None for the hourly check."""
    hours = {
        MORNING_DIGEST: config.morning_digest_hour,
        LUNCH_REMINDER: config.lunch_reminder_hour,
        END_OF_DAY_SUMMARY: config.end_of_day_hour,
        HOURLY_CHECK: None,
    }
    if job_id not in hours:
        raise ValueError(f"Unknown job '{job_id}'")
    return hours[job_id]


def slot_start(job_id: str, now: datetime, config: SchedulerConfig) -> datetime:
    """
    Return the scheduled instant of the most recent slot at or before now.

    Daily jobs have one slot per day at their hour. The hourly check has one
    slot per hour inside working hours; outside them the slot is the last
    working hour that already passed.

    Args:
        job_id: One of JOBS.
        now: Current time in the scheduler's timezone.
        config: Scheduler configuration.
    """
    hour = job_hour(job_id, config)
    if hour is None:
        slot = now.replace(minute=0, second=0, microsecond=0)
        if slot.hour > config.working_hours_end:
            return slot.replace(hour=config.working_hours_end)
        if slot.hour < config.working_hours_start:
            return slot.replace(hour=config.working_hours_end) - timedelta(days=1)
        return slot
    slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if slot > now:
        slot -= timedelta(days=1)
    return slot


def should_fire(last_fired_at: Optional[datetime], slot: datetime) -> bool:
    """
    Determine whether a slot still needs to run.

    Logic:
    - If last_fired_at is None, return True (first run).
    - If the last recorded slot is earlier than this one, return True.
    - Otherwise the slot was already taken, return False.
    """
    if last_fired_at is None:
        return True
    return _as_utc(last_fired_at) < _as_utc(slot)


def build_triggers(config: SchedulerConfig) -> Dict[str, CronTrigger]:
    """One CronTrigger per job in the configured timezone."""
    return {
        MORNING_DIGEST: CronTrigger(hour=config.morning_digest_hour, minute=0, timezone=config.timezone),
        LUNCH_REMINDER: CronTrigger(hour=config.lunch_reminder_hour, minute=0, timezone=config.timezone),
        END_OF_DAY_SUMMARY: CronTrigger(hour=config.end_of_day_hour, minute=0, timezone=config.timezone),
        HOURLY_CHECK: CronTrigger(
            hour=f"{config.working_hours_start}-{config.working_hours_end}",
            minute=0,
            timezone=config.timezone,
        ),
    }


class DigestScheduler:
    """Registers the digest jobs with an AsyncIOScheduler on the running loop."""

    def __init__(self, run_job: Callable[[str], Awaitable[object]], config: SchedulerConfig):
        self.run_job = run_job
        self.config = config
        self.scheduler = AsyncIOScheduler(timezone=config.timezone)

    def start(self) -> None:
        for job_id, trigger in build_triggers(self.config).items():
            self.scheduler.add_job(
                func=self.run_job,
                trigger=trigger,
                id=job_id,
                args=[job_id],
                name=job_id.replace("_", " "),
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info(f"Scheduler started with jobs: {', '.join(JOBS)} ({self.config.timezone})")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def next_run_times(self) -> Dict[str, Optional[str]]:
        return {
            job.id: job.next_run_time.isoformat() if job.next_run_time else None
            for job in self.scheduler.get_jobs()
        }

"""Scheduled digest generation: per-user evaluation, urgent push, digest e-mail."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from . import db
from .config import SchedulerConfig
from .db import AsyncDatabase, utcnow
from .email_notifier import Mailer
from .evaluator import evaluate, summarize
from .models import Candidate, DigestRun, DigestUser, NotificationType, UserPreferences
from .scheduler import (
    END_OF_DAY_SUMMARY,
    HOURLY_CHECK,
    JOBS,
    LUNCH_REMINDER,
    MORNING_DIGEST,
    should_fire,
    slot_start,
)
from .store import NotificationStore
from .summarizer import history_payload, render_digest

logger = logging.getLogger(__name__)

LAST_FIRED_KEY = "last_fired_at:{job_id}"

# Per-job preference toggles; the hourly check is gated per candidate kind instead
JOB_PREFERENCE = {
    MORNING_DIGEST: "morning_digest",
    LUNCH_REMINDER: "lunch_reminder",
    END_OF_DAY_SUMMARY: "end_of_day_summary",
}

MEETING_KINDS = {NotificationType.MEETING_REMINDER, NotificationType.SCHEDULE_CONFLICT}
TASK_KINDS = {NotificationType.OVERDUE, NotificationType.STALE_TASK, NotificationType.WORKLOAD_SPIKE}


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class UserResult:
    user_id: str
    urgent_sent: int = 0
    emailed: bool = False
    opted_out: bool = False


@dataclass
class JobReport:
    """Outcome of one job firing."""
    job_id: str
    slot: datetime
    skipped: bool = False
    users: int = 0
    processed: int = 0
    failed: int = 0
    timed_out: int = 0
    deferred: int = 0
    urgent_sent: int = 0
    emails_sent: int = 0


def filter_candidates(candidates: List[Candidate], prefs: UserPreferences) -> List[Candidate]:
    """Drop candidate kinds the user turned off."""
    kept = []
    for candidate in candidates:
        if candidate.kind in MEETING_KINDS and not prefs.meeting_reminders:
            continue
        if candidate.kind in TASK_KINDS and not prefs.task_reminders:
            continue
        kept.append(candidate)
    return kept


class DigestGenerator:
    """
    Runs the scheduled jobs.

    Each firing walks the active users with bounded concurrency. Users are
    isolated from each other: a failure or timeout for one user is logged and
    counted, the rest of the batch continues. Once the run deadline passes,
    users not yet started are skipped until the next firing.
    """

    def __init__(
        self,
        database: AsyncDatabase,
        store: NotificationStore,
        mailer: Mailer,
        config: SchedulerConfig,
        app_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.store = store
        self.mailer = mailer
        self.config = config
        self.app_url = app_url
        self.clock = clock
        self.tz = ZoneInfo(config.timezone)
        self._states: Dict[str, JobState] = {job_id: JobState.IDLE for job_id in JOBS}

    def state(self, job_id: str) -> JobState:
        return self._states[job_id]

    async def run_job(self, job_id: str, now: Optional[datetime] = None) -> JobReport:
        """
        Fire one job for every active user.

        A slot that was already recorded is skipped, so each (job, slot) runs at
        most once even across restarts. The slot is recorded before any user is
        processed.

        Args:
            job_id: One of JOBS.
            now: Firing time; defaults to the clock.

        Returns:
            Counters for the run.

        Raises:
            ValueError: If job_id is unknown.
            PersistenceFailure: If the schedule state or user list cannot be read.
        """
        if job_id not in self._states:
            raise ValueError(f"Unknown job '{job_id}'")
        now = (now or self.clock()).astimezone(self.tz)
        slot = slot_start(job_id, now, self.config)
        report = JobReport(job_id=job_id, slot=slot)

        if self._states[job_id] is JobState.RUNNING:
            logger.warning(f"Job {job_id} is still running; skipping slot {slot.isoformat()}")
            report.skipped = True
            return report

        # Claim the job before the first await
        self._states[job_id] = JobState.RUNNING
        try:
            key = LAST_FIRED_KEY.format(job_id=job_id)
            last_value = await self.database.run(db.get_meta, key)
            last_fired_at = datetime.fromisoformat(last_value) if last_value else None
            if not should_fire(last_fired_at, slot):
                logger.info(f"Job {job_id} already fired for slot {slot.isoformat()}; skipping")
                report.skipped = True
                return report

            await self.database.run(db.set_meta, key, slot.isoformat())
            users = await self.database.run(db.get_active_users)
            report.users = len(users)
            logger.info(f"Running {job_id} for {len(users)} user(s), slot {slot.isoformat()}")

            semaphore = asyncio.Semaphore(max(1, self.config.workers))
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.run_deadline_seconds
            await asyncio.gather(
                *(self._run_user(job_id, user, now, semaphore, deadline, report) for user in users)
            )
        finally:
            self._states[job_id] = JobState.IDLE

        logger.info(
            f"Finished {job_id}: {report.processed} processed, {report.failed} failed, "
            f"{report.timed_out} timed out, {report.deferred} deferred, "
            f"{report.urgent_sent} urgent notification(s), {report.emails_sent} e-mail(s)"
        )
        return report

    async def _run_user(
        self,
        job_id: str,
        user: DigestUser,
        now: datetime,
        semaphore: asyncio.Semaphore,
        deadline: float,
        report: JobReport,
    ) -> None:
        async with semaphore:
            if asyncio.get_running_loop().time() >= deadline:
                report.deferred += 1
                logger.warning(f"Run deadline passed; deferring {job_id} for user {user.id}")
                return
            try:
                result = await asyncio.wait_for(
                    self.process_user(job_id, user, now),
                    timeout=self.config.user_timeout_seconds,
                )
            except asyncio.TimeoutError:
                report.timed_out += 1
                logger.warning(
                    f"{job_id} for user {user.id} timed out after {self.config.user_timeout_seconds}s"
                )
                return
            except Exception as e:
                report.failed += 1
                logger.error(f"{job_id} failed for user {user.id}: {e}", exc_info=True)
                return
            report.processed += 1
            report.urgent_sent += result.urgent_sent
            report.emails_sent += int(result.emailed)

    async def build_run(self, job_id: str, user: DigestUser, now: datetime) -> DigestRun:
        """Read the user's tasks and meetings and evaluate them."""
        tasks = await self.database.run(db.get_user_tasks, user.id)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        meetings = await self.database.run(
            db.get_user_meetings, user.id, day_start, day_start + timedelta(days=2)
        )
        candidates = evaluate(
            tasks,
            meetings,
            now,
            lookahead_minutes=self.config.meeting_lookahead_minutes,
            workload_spike_threshold=self.config.workload_spike_threshold,
        )
        return DigestRun(
            user=user,
            job_id=job_id,
            now=now,
            summary=summarize(tasks, meetings, now),
            candidates=filter_candidates(candidates, user.preferences),
            tasks=tasks,
            meetings=meetings,
        )

    async def process_user(self, job_id: str, user: DigestUser, now: datetime) -> UserResult:
        """
        Evaluate one user, push urgent candidates, mail the rest as one digest.

        Urgent candidates are pushed by the hourly check only. The daily jobs
        share an hour with it, so they list urgent items in the e-mail instead.

        Raises:
            PersistenceFailure: If reads or notification writes fail.
            DeliveryFailure: If the digest e-mail could not be sent.
        """
        result = UserResult(user_id=user.id)
        prefs = user.preferences
        toggle = JOB_PREFERENCE.get(job_id)
        if not prefs.email_notifications or (toggle and not getattr(prefs, toggle)):
            result.opted_out = True
            return result

        run = await self.build_run(job_id, user, now)

        urgent = run.urgent if job_id == HOURLY_CHECK else []
        for candidate in urgent:
            await self.store.create(
                user.id,
                candidate.kind,
                candidate.title,
                candidate.message,
                candidate.payload,
                priority=candidate.priority,
            )
            result.urgent_sent += 1

        if prefs.urgent_only:
            return result
        email = render_digest(run, self.app_url, afternoon_end_hour=self.config.working_hours_end)
        if email is None:
            return result
        if await self.mailer.send(user.email, email.subject, email.text, email.html):
            await self.database.run(db.record_history, user.id, job_id, history_payload(run, email))
            result.emailed = True
        return result

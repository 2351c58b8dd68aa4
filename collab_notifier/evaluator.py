"""Trigger evaluation: a user's tasks and meetings in, prioritized candidates out.

Everything here is a pure function of its arguments, `now` included, so results
are reproducible and independent of input order.
"""

from datetime import date, datetime, timedelta
from itertools import combinations
from typing import Dict, List, Optional, Sequence

from .models import (
    Candidate,
    DigestSummary,
    Meeting,
    MeetingReminderData,
    NotificationType,
    OverdueData,
    Priority,
    ScheduleConflictData,
    StaleTaskData,
    Task,
    TaskStatus,
    WorkloadSpikeData,
)

MEETING_LOOKAHEAD_MINUTES = 30
UPCOMING_DEADLINE_DAYS = 3
WORKLOAD_SPIKE_THRESHOLD = 5
HIGH_PRIORITIES = (Priority.HIGH.value, Priority.URGENT.value)


def _local(dt: datetime, now: datetime) -> datetime:
    """dt as seen from now's timezone."""
    if dt.tzinfo is not None and now.tzinfo is not None:
        return dt.astimezone(now.tzinfo)
    return dt


def _local_date(dt: datetime, now: datetime) -> date:
    return _local(dt, now).date()


def clock_time(dt: datetime, now: datetime) -> str:
    """HH:MM of dt on now's wall clock."""
    return _local(dt, now).strftime("%H:%M")


def _sorted_tasks(tasks: Sequence[Task]) -> List[Task]:
    return sorted(tasks, key=lambda t: (t.deadline is None, t.deadline or datetime.min, t.id))


def _sorted_meetings(meetings: Sequence[Meeting]) -> List[Meeting]:
    return sorted(meetings, key=lambda m: (m.start_time, m.id))


def overdue_candidates(tasks: Sequence[Task], now: datetime) -> List[Candidate]:
    return [
        Candidate(
            kind=NotificationType.OVERDUE,
            priority=Priority.URGENT,
            title="Task Overdue",
            message=f'"{task.title}" was due {_local(task.deadline, now):%b %d, %H:%M} and is not done',
            payload=OverdueData(
                task_id=task.id,
                task_title=task.title,
                deadline=task.deadline.isoformat(),
                project_id=task.project_id,
            ),
        )
        for task in _sorted_tasks(tasks)
        if task.deadline is not None and task.deadline < now and not task.is_done
    ]


def meeting_reminder_candidates(
    meetings: Sequence[Meeting], now: datetime, lookahead_minutes: int = MEETING_LOOKAHEAD_MINUTES
) -> List[Candidate]:
    horizon = now + timedelta(minutes=lookahead_minutes)
    candidates = []
    for meeting in _sorted_meetings(meetings):
        if not now <= meeting.start_time <= horizon:
            continue
        minutes_until = int((meeting.start_time - now).total_seconds() // 60)
        candidates.append(Candidate(
            kind=NotificationType.MEETING_REMINDER,
            priority=Priority.HIGH,
            title="Meeting Starting Soon",
            message=f'"{meeting.title}" starts in {minutes_until} minutes',
            payload=MeetingReminderData(
                meeting_id=meeting.id,
                meeting_title=meeting.title,
                start_time=meeting.start_time.isoformat(),
                minutes_until=minutes_until,
            ),
        ))
    return candidates


def stale_task_candidates(tasks: Sequence[Task], now: datetime) -> List[Candidate]:
    """Tasks due today that are still untouched (status todo)."""
    today = now.date()
    return [
        Candidate(
            kind=NotificationType.STALE_TASK,
            priority=Priority.MEDIUM,
            title="Task Needs Progress",
            message=f'"{task.title}" is due today and has not been started',
            payload=StaleTaskData(
                task_id=task.id, task_title=task.title, deadline=task.deadline.isoformat()
            ),
        )
        for task in _sorted_tasks(tasks)
        if task.deadline is not None
        and task.status == TaskStatus.TODO.value
        and _local_date(task.deadline, now) == today
    ]


def schedule_conflict_candidates(meetings: Sequence[Meeting]) -> List[Candidate]:
    candidates = []
    for first, second in combinations(_sorted_meetings(meetings), 2):
        overlap = min(first.end_time, second.end_time) - max(first.start_time, second.start_time)
        if overlap <= timedelta(0):
            continue
        candidates.append(Candidate(
            kind=NotificationType.SCHEDULE_CONFLICT,
            priority=Priority.HIGH,
            title="Schedule Conflict",
            message=f'"{first.title}" overlaps "{second.title}"',
            payload=ScheduleConflictData(
                first_meeting_id=first.id,
                first_title=first.title,
                second_meeting_id=second.id,
                second_title=second.title,
                overlap_minutes=int(overlap.total_seconds() // 60),
            ),
        ))
    return candidates


def workload_spike_candidates(
    tasks: Sequence[Task], now: datetime, threshold: int = WORKLOAD_SPIKE_THRESHOLD
) -> List[Candidate]:
    if threshold <= 0:
        return []
    horizon = now + timedelta(days=UPCOMING_DEADLINE_DAYS)
    due_soon = [
        task for task in _sorted_tasks(tasks)
        if task.deadline is not None and not task.is_done and now <= task.deadline < horizon
    ]
    if len(due_soon) < threshold:
        return []
    return [Candidate(
        kind=NotificationType.WORKLOAD_SPIKE,
        priority=Priority.MEDIUM,
        title="Heavy Workload Ahead",
        message=f"{len(due_soon)} open tasks are due in the next {UPCOMING_DEADLINE_DAYS} days",
        payload=WorkloadSpikeData(
            open_due_soon=len(due_soon),
            threshold=threshold,
            task_ids=[task.id for task in due_soon],
        ),
    )]


def evaluate(
    tasks: Sequence[Task],
    meetings: Sequence[Meeting],
    now: datetime,
    lookahead_minutes: int = MEETING_LOOKAHEAD_MINUTES,
    workload_spike_threshold: int = WORKLOAD_SPIKE_THRESHOLD,
) -> List[Candidate]:
    """
    Run every trigger rule and return all matches, highest priority first.

    Rules are independent; a task may match more than one (overdue and stale).
    Ties keep rule order, then deadline/start order, then id.

    Args:
        tasks: The user's tasks (any status).
        meetings: The user's meetings.
        now: Evaluation instant; must be comparable with the stored datetimes.
        lookahead_minutes: Window for meeting reminders.
        workload_spike_threshold: Open tasks due within 3 days that count as a spike.

    Returns:
        Candidate notifications.
    """
    candidates = (
        overdue_candidates(tasks, now)
        + meeting_reminder_candidates(meetings, now, lookahead_minutes)
        + stale_task_candidates(tasks, now)
        + schedule_conflict_candidates(meetings)
        + workload_spike_candidates(tasks, now, workload_spike_threshold)
    )
    # sorted() is stable, so rule order survives within a priority
    return sorted(candidates, key=lambda c: -c.priority.rank)


def summarize(tasks: Sequence[Task], meetings: Sequence[Meeting], now: datetime) -> DigestSummary:
    """Workload counters for the day containing now."""
    today = now.date()
    open_tasks = [t for t in tasks if not t.is_done]
    upcoming = 0
    for task in open_tasks:
        if task.deadline is None:
            continue
        days = (_local_date(task.deadline, now) - today).days
        if 0 < days <= UPCOMING_DEADLINE_DAYS:
            upcoming += 1
    return DigestSummary(
        tasks_today=sum(
            1 for t in open_tasks if t.deadline is not None and _local_date(t.deadline, now) == today
        ),
        meetings_today=sum(1 for m in meetings if _local_date(m.start_time, now) == today),
        upcoming_deadlines=upcoming,
        high_priority_items=sum(1 for t in open_tasks if t.priority in HIGH_PRIORITIES),
    )


def today_schedule(tasks: Sequence[Task], meetings: Sequence[Meeting], now: datetime) -> List[Dict[str, Optional[str]]]:
    """Timed meetings for today followed by open high-priority tasks."""
    today = now.date()
    schedule = [
        {
            "time": clock_time(m.start_time, now),
            "title": m.title,
            "type": "meeting",
            "priority": Priority.HIGH.value,
        }
        for m in _sorted_meetings(meetings)
        if _local_date(m.start_time, now) == today
    ]
    schedule.extend(
        {"time": "Flexible", "title": t.title, "type": "task", "priority": t.priority}
        for t in _sorted_tasks(tasks)
        if not t.is_done and t.priority in HIGH_PRIORITIES
    )
    return schedule


def completed_on(tasks: Sequence[Task], day: date, now: datetime) -> List[Task]:
    """Done tasks whose last update falls on the given day."""
    return [
        t for t in _sorted_tasks(tasks)
        if t.is_done and t.updated_at is not None and _local_date(t.updated_at, now) == day
    ]


def due_on(tasks: Sequence[Task], day: date, now: datetime) -> List[Task]:
    return [
        t for t in _sorted_tasks(tasks)
        if not t.is_done and t.deadline is not None and _local_date(t.deadline, now) == day
    ]


def meetings_between(meetings: Sequence[Meeting], start: datetime, end: datetime) -> List[Meeting]:
    return [m for m in _sorted_meetings(meetings) if start <= m.start_time < end]

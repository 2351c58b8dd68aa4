from datetime import timedelta

from collab_notifier.evaluator import evaluate, summarize, today_schedule
from collab_notifier.models import Meeting, NotificationType, Priority, Task

from conftest import NOW


def _task(task_id, deadline=None, status="todo", priority="medium"):
    return Task(
        id=task_id,
        project_id="proj-1",
        title=f"Task {task_id}",
        status=status,
        priority=priority,
        assignee_id="bob",
        deadline=deadline,
        updated_at=NOW - timedelta(days=2),
    )


def _meeting(meeting_id, start, minutes=60):
    return Meeting(id=meeting_id, project_id="proj-1", title=f"Meeting {meeting_id}", start_time=start,
                   duration_minutes=minutes)


def test_overdue_task_yields_single_urgent_candidate():
    tasks = [_task("t1", deadline=NOW - timedelta(days=1))]

    candidates = evaluate(tasks, [], NOW)

    assert len(candidates) == 1
    assert candidates[0].kind == NotificationType.OVERDUE
    assert candidates[0].priority == Priority.URGENT
    assert candidates[0].payload.task_id == "t1"


def test_done_task_is_never_overdue():
    tasks = [_task("t1", deadline=NOW - timedelta(days=1), status="done")]

    assert evaluate(tasks, [], NOW) == []


def test_meeting_inside_lookahead_gets_reminder():
    meetings = [
        _meeting("soon", NOW + timedelta(minutes=20)),
        _meeting("later", NOW + timedelta(hours=3)),
        _meeting("past", NOW - timedelta(hours=3)),
    ]

    candidates = evaluate([], meetings, NOW)

    assert [c.kind for c in candidates] == [NotificationType.MEETING_REMINDER]
    assert candidates[0].priority == Priority.HIGH
    assert candidates[0].payload.meeting_id == "soon"
    assert candidates[0].payload.minutes_until == 20


def test_task_due_today_without_progress_is_stale():
    due_tonight = NOW.replace(hour=18)
    tasks = [
        _task("todo", deadline=due_tonight),
        _task("started", deadline=due_tonight, status="in_progress"),
    ]

    candidates = evaluate(tasks, [], NOW)

    assert [(c.kind, c.payload.task_id) for c in candidates] == [(NotificationType.STALE_TASK, "todo")]
    assert candidates[0].priority == Priority.MEDIUM


def test_overlapping_meetings_conflict():
    meetings = [
        _meeting("a", NOW + timedelta(hours=2), minutes=60),
        _meeting("b", NOW + timedelta(hours=2, minutes=30), minutes=60),
        _meeting("c", NOW + timedelta(hours=5), minutes=30),
    ]

    candidates = evaluate([], meetings, NOW)

    assert len(candidates) == 1
    conflict = candidates[0]
    assert conflict.kind == NotificationType.SCHEDULE_CONFLICT
    assert conflict.priority == Priority.HIGH
    assert (conflict.payload.first_meeting_id, conflict.payload.second_meeting_id) == ("a", "b")
    assert conflict.payload.overlap_minutes == 30


def test_back_to_back_meetings_do_not_conflict():
    meetings = [
        _meeting("a", NOW + timedelta(hours=2), minutes=60),
        _meeting("b", NOW + timedelta(hours=3), minutes=60),
    ]

    assert evaluate([], meetings, NOW) == []


def test_workload_spike_at_threshold():
    tasks = [_task(f"t{i}", deadline=NOW + timedelta(days=1, hours=i)) for i in range(3)]

    assert evaluate(tasks, [], NOW, workload_spike_threshold=4) == []
    candidates = evaluate(tasks, [], NOW, workload_spike_threshold=3)

    assert [c.kind for c in candidates] == [NotificationType.WORKLOAD_SPIKE]
    assert candidates[0].payload.open_due_soon == 3
    assert candidates[0].payload.task_ids == ["t0", "t1", "t2"]


def test_all_rules_fire_independently_highest_priority_first():
    tasks = [
        _task("late", deadline=NOW - timedelta(hours=1)),
        _task("today", deadline=NOW + timedelta(hours=4)),
    ]
    meetings = [
        _meeting("m1", NOW + timedelta(minutes=10), minutes=60),
        _meeting("m2", NOW + timedelta(minutes=30), minutes=30),
    ]

    candidates = evaluate(tasks, meetings, NOW)
    kinds = [c.kind for c in candidates]

    assert kinds[0] == NotificationType.OVERDUE
    assert kinds.count(NotificationType.MEETING_REMINDER) == 2
    assert NotificationType.SCHEDULE_CONFLICT in kinds
    assert kinds[-1] == NotificationType.STALE_TASK
    ranks = [c.priority.rank for c in candidates]
    assert ranks == sorted(ranks, reverse=True)


def test_evaluate_is_pure_and_order_independent():
    tasks = [
        _task("a", deadline=NOW - timedelta(days=1)),
        _task("b", deadline=NOW - timedelta(days=2)),
        _task("c", deadline=NOW + timedelta(hours=1)),
    ]
    meetings = [_meeting("m1", NOW + timedelta(minutes=5)), _meeting("m2", NOW + timedelta(minutes=15))]

    first = evaluate(tasks, meetings, NOW)
    second = evaluate(tasks, meetings, NOW)
    reversed_inputs = evaluate(list(reversed(tasks)), list(reversed(meetings)), NOW)

    assert first == second == reversed_inputs


def test_summarize_counts():
    tasks = [
        _task("today", deadline=NOW + timedelta(hours=3), priority="high"),
        _task("in_two_days", deadline=NOW + timedelta(days=2)),
        _task("next_week", deadline=NOW + timedelta(days=7), priority="urgent"),
        _task("finished", deadline=NOW + timedelta(hours=1), status="done", priority="high"),
    ]
    meetings = [_meeting("m1", NOW + timedelta(hours=1)), _meeting("m2", NOW + timedelta(days=1))]

    summary = summarize(tasks, meetings, NOW)

    assert summary.tasks_today == 1
    assert summary.meetings_today == 1
    assert summary.upcoming_deadlines == 1
    assert summary.high_priority_items == 2
    assert not summary.is_empty


def test_today_schedule_lists_meetings_then_high_priority_tasks():
    tasks = [_task("hp", priority="high"), _task("low", priority="low")]
    meetings = [_meeting("m1", NOW + timedelta(hours=2))]

    schedule = today_schedule(tasks, meetings, NOW)

    assert schedule[0] == {"time": "12:00", "title": "Meeting m1", "type": "meeting", "priority": "high"}
    assert schedule[1]["time"] == "Flexible"
    assert schedule[1]["title"] == "Task hp"
    assert len(schedule) == 2

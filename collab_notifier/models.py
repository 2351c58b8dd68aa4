"""Data models for connections, workload and notifications."""

from dataclasses import asdict, dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


class Priority(str, Enum):
    """Notification priority, ordered low < medium < high < urgent."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class NotificationType(str, Enum):
    """Known notification kinds."""
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    COMMENT_ADDED = "comment_added"
    MEETING_SCHEDULED = "meeting_scheduled"
    DEADLINE_APPROACHING = "deadline_approaching"
    OVERDUE = "overdue"
    MEETING_REMINDER = "meeting_reminder"
    STALE_TASK = "stale_task"
    SCHEDULE_CONFLICT = "schedule_conflict"
    WORKLOAD_SPIKE = "workload_spike"
    DIGEST = "digest"
    AI_INSIGHT = "ai_insight"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


@dataclass
class UserIdentity:
    """Resolved identity of an authenticated connection."""
    id: str
    email: str
    full_name: str = ""

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0] or "Unknown User"


@dataclass
class Connection:
    """One authenticated live session. Process-local, never persisted."""
    connection_id: str
    user_id: str
    display_name: str
    email: str = ""
    # Coroutine that writes one event to the underlying transport
    send: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = field(
        default=None, repr=False, compare=False
    )


@dataclass
class Project:
    id: str
    name: str
    owner_id: str


@dataclass
class Task:
    """Task row as read from the data store."""
    id: str
    project_id: str
    title: str
    status: str = TaskStatus.TODO.value
    priority: str = Priority.MEDIUM.value
    assignee_id: Optional[str] = None
    deadline: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE.value


@dataclass
class Meeting:
    """Meeting row as read from the data store."""
    id: str
    project_id: str
    title: str
    start_time: datetime
    duration_minutes: int = 60

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


@dataclass
class UserPreferences:
    """Per-user notification switches."""
    email_notifications: bool = True
    morning_digest: bool = True
    lunch_reminder: bool = True
    end_of_day_summary: bool = True
    meeting_reminders: bool = True
    task_reminders: bool = True
    urgent_only: bool = False


@dataclass
class DigestUser:
    """A user eligible for scheduled digests."""
    id: str
    email: str
    full_name: str
    preferences: UserPreferences = field(default_factory=UserPreferences)


# Typed notification payloads. Each known NotificationType maps to one of these;
# AI_INSIGHT and DIGEST carry free-form dicts.

@dataclass
class TaskAssignedData:
    task_id: str
    task_title: str
    assigner_name: str


@dataclass
class TaskUpdatedData:
    task_id: str
    task_title: str
    updater_name: str


@dataclass
class CommentAddedData:
    task_id: str
    task_title: str
    commenter_name: str


@dataclass
class MeetingScheduledData:
    meeting_id: str
    meeting_title: str
    scheduled_time: str


@dataclass
class DeadlineApproachingData:
    task_id: str
    task_title: str
    deadline: str


@dataclass
class OverdueData:
    task_id: str
    task_title: str
    deadline: str
    project_id: str


@dataclass
class MeetingReminderData:
    meeting_id: str
    meeting_title: str
    start_time: str
    minutes_until: int


@dataclass
class StaleTaskData:
    task_id: str
    task_title: str
    deadline: str


@dataclass
class ScheduleConflictData:
    first_meeting_id: str
    first_title: str
    second_meeting_id: str
    second_title: str
    overlap_minutes: int


@dataclass
class WorkloadSpikeData:
    open_due_soon: int
    threshold: int
    task_ids: List[str] = field(default_factory=list)


NotificationData = Union[
    TaskAssignedData,
    TaskUpdatedData,
    CommentAddedData,
    MeetingScheduledData,
    DeadlineApproachingData,
    OverdueData,
    MeetingReminderData,
    StaleTaskData,
    ScheduleConflictData,
    WorkloadSpikeData,
    Dict[str, Any],
]

PAYLOAD_TYPES = {
    NotificationType.TASK_ASSIGNED: TaskAssignedData,
    NotificationType.TASK_UPDATED: TaskUpdatedData,
    NotificationType.COMMENT_ADDED: CommentAddedData,
    NotificationType.MEETING_SCHEDULED: MeetingScheduledData,
    NotificationType.DEADLINE_APPROACHING: DeadlineApproachingData,
    NotificationType.OVERDUE: OverdueData,
    NotificationType.MEETING_REMINDER: MeetingReminderData,
    NotificationType.STALE_TASK: StaleTaskData,
    NotificationType.SCHEDULE_CONFLICT: ScheduleConflictData,
    NotificationType.WORKLOAD_SPIKE: WorkloadSpikeData,
}


def payload_to_dict(kind: NotificationType, data: Optional[NotificationData]) -> Dict[str, Any]:
    """
    Normalize a notification payload to a JSON-ready dict.

    Dataclass payloads are converted as-is. Plain dicts for a kind with a typed
    payload are checked against that payload's fields.

    Raises:
        ValueError: If a dict payload does not match the kind's payload type.
    """
    if data is None:
        return {}
    if is_dataclass(data):
        return asdict(data)
    payload_type = PAYLOAD_TYPES.get(kind)
    if payload_type is None:
        return dict(data)
    expected = {f.name for f in fields(payload_type)}
    unknown = set(data) - expected
    if unknown:
        raise ValueError(f"Unexpected fields for {kind.value} payload: {sorted(unknown)}")
    try:
        return asdict(payload_type(**data))
    except TypeError as e:
        raise ValueError(f"Invalid {kind.value} payload: {e}") from e


@dataclass
class Notification:
    """Persisted notification record (one per recipient)."""
    id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    read: bool = False
    created_at: Optional[datetime] = None
    priority: str = Priority.MEDIUM.value

    def to_event(self) -> Dict[str, Any]:
        """Payload of the outbound `notification` event."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "userId": self.user_id,
            "data": self.data,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "data": self.data,
            "read": self.read,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Candidate:
    """A potential notification produced by the trigger evaluator."""
    kind: NotificationType
    priority: Priority
    title: str
    message: str
    payload: NotificationData


@dataclass
class DigestSummary:
    """Workload counters for one user on one day."""
    tasks_today: int = 0
    meetings_today: int = 0
    upcoming_deadlines: int = 0
    high_priority_items: int = 0

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.tasks_today, self.meetings_today, self.upcoming_deadlines, self.high_priority_items)
        )


@dataclass
class DigestRun:
    """Everything computed for one (user, job, firing)."""
    user: DigestUser
    job_id: str
    now: datetime
    summary: DigestSummary
    candidates: List[Candidate] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    meetings: List[Meeting] = field(default_factory=list)

    @property
    def urgent(self) -> List[Candidate]:
        return [c for c in self.candidates if c.priority == Priority.URGENT]

    @property
    def non_urgent(self) -> List[Candidate]:
        return [c for c in self.candidates if c.priority != Priority.URGENT]

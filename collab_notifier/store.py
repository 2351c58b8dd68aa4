"""Persisted notifications and their live push."""

import asyncio
import logging
from typing import Iterable, List, Optional, Union

from . import db
from .db import AsyncDatabase
from .dispatcher import BroadcastDispatcher
from .errors import NotFound
from .models import (
    CommentAddedData,
    DeadlineApproachingData,
    MeetingScheduledData,
    Notification,
    NotificationData,
    NotificationType,
    Priority,
    TaskAssignedData,
    TaskUpdatedData,
    payload_to_dict,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

Kind = Union[NotificationType, str]


class NotificationStore:
    """
    Owns notification records.

    Every create persists first and pushes second. A persistence error aborts
    before any push; a push that reaches nobody is not an error, the record is
    the durable receipt.
    """

    def __init__(self, database: AsyncDatabase, dispatcher: BroadcastDispatcher):
        self.database = database
        self.dispatcher = dispatcher

    async def create(
        self,
        user_id: str,
        kind: Kind,
        title: str,
        message: str,
        data: Optional[NotificationData] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> Notification:
        """
        Persist one notification and push it to the recipient's live connections.

        Raises:
            PersistenceFailure: If the record could not be written.
            ValueError: If the payload does not fit the notification kind.
        """
        kind = NotificationType(kind)
        payload = payload_to_dict(kind, data)
        created = await self.database.run(
            db.insert_notifications,
            [(user_id, kind.value, title, message, payload, Priority(priority).value)],
        )
        notification = created[0]
        await self._push(notification)
        return notification

    async def create_bulk(
        self,
        user_ids: Iterable[str],
        kind: Kind,
        title: str,
        message: str,
        data: Optional[NotificationData] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> List[Notification]:
        """
        Persist one record per recipient in a single batch, then push each.

        Only the given user ids are notified; computing them from project
        membership is the caller's job. Duplicate ids collapse to one record.

        Returns:
            The created notifications, in first-seen recipient order.
        """
        kind = NotificationType(kind)
        payload = payload_to_dict(kind, data)
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            return []
        rows = [
            (user_id, kind.value, title, message, payload, Priority(priority).value)
            for user_id in recipients
        ]
        created = await self.database.run(db.insert_notifications, rows)
        await asyncio.gather(*(self._push(n) for n in created))
        logger.info(f"Created {len(created)} '{kind.value}' notification(s)")
        return created

    async def _push(self, notification: Notification) -> None:
        outcome = await self.dispatcher.deliver_to_user(
            notification.user_id, "notification", notification.to_event()
        )
        if not outcome.reached:
            logger.debug(
                f"Notification {notification.id} persisted; user {notification.user_id} not reachable live"
            )

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """
        Mark a notification read. Repeating the call is harmless.

        Raises:
            NotFound: If the notification does not exist or belongs to someone else.
        """
        return await self.set_read(notification_id, user_id, True)

    async def set_read(self, notification_id: str, user_id: str, read: bool) -> Notification:
        notification = await self.database.run(
            db.set_notification_read, notification_id, user_id, read
        )
        if notification is None:
            raise NotFound("Notification not found")
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        return await self.database.run(db.mark_all_read, user_id)

    async def list(self, user_id: str, page: int = 1, limit: int = 20) -> List[Notification]:
        """Newest-first page of a user's notifications."""
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        return await self.database.run(db.list_notifications, user_id, limit, (page - 1) * limit)

    async def unread_count(self, user_id: str) -> int:
        return await self.database.run(db.count_unread, user_id)

    async def delete(self, notification_id: str, user_id: str) -> None:
        deleted = await self.database.run(db.delete_notification, notification_id, user_id)
        if not deleted:
            raise NotFound("Notification not found")

    # Domain helpers used by the CRUD layer

    async def notify_task_assigned(
        self, task_id: str, assignee_id: str, assigner_name: str, task_title: str
    ) -> Notification:
        return await self.create(
            assignee_id,
            NotificationType.TASK_ASSIGNED,
            "New Task Assigned",
            f'{assigner_name} assigned you a task: "{task_title}"',
            TaskAssignedData(task_id=task_id, task_title=task_title, assigner_name=assigner_name),
        )

    async def notify_task_updated(
        self,
        task_id: str,
        project_id: str,
        updater_name: str,
        task_title: str,
        exclude_user_id: Optional[str] = None,
    ) -> List[Notification]:
        recipients = await self._project_recipients(project_id, exclude_user_id)
        return await self.create_bulk(
            recipients,
            NotificationType.TASK_UPDATED,
            "Task Updated",
            f'{updater_name} updated task: "{task_title}"',
            TaskUpdatedData(task_id=task_id, task_title=task_title, updater_name=updater_name),
        )

    async def notify_comment_added(
        self,
        task_id: str,
        commenter_name: str,
        task_title: str,
        exclude_user_id: Optional[str] = None,
    ) -> List[Notification]:
        """
        Notify the task's assignee and everyone on its project about a new comment.

        Raises:
            NotFound: If the task does not exist.
        """
        task = await self.database.run(db.get_task, task_id)
        if task is None:
            raise NotFound("Task not found")
        recipients = await self._project_recipients(task.project_id, exclude_user_id)
        if task.assignee_id and task.assignee_id != exclude_user_id:
            recipients = [task.assignee_id] + recipients
        return await self.create_bulk(
            recipients,
            NotificationType.COMMENT_ADDED,
            "New Comment",
            f'{commenter_name} commented on "{task_title}"',
            CommentAddedData(task_id=task_id, task_title=task_title, commenter_name=commenter_name),
        )

    async def notify_deadline_approaching(
        self, task_id: str, assignee_id: str, task_title: str, deadline: str
    ) -> Notification:
        return await self.create(
            assignee_id,
            NotificationType.DEADLINE_APPROACHING,
            "Deadline Approaching",
            f'Task "{task_title}" is due soon ({deadline})',
            DeadlineApproachingData(task_id=task_id, task_title=task_title, deadline=deadline),
            priority=Priority.HIGH,
        )

    async def notify_meeting_scheduled(
        self,
        meeting_id: str,
        project_id: str,
        meeting_title: str,
        scheduled_time: str,
        exclude_user_id: Optional[str] = None,
    ) -> List[Notification]:
        recipients = await self._project_recipients(project_id, exclude_user_id)
        return await self.create_bulk(
            recipients,
            NotificationType.MEETING_SCHEDULED,
            "Meeting Scheduled",
            f'New meeting: "{meeting_title}" at {scheduled_time}',
            MeetingScheduledData(
                meeting_id=meeting_id, meeting_title=meeting_title, scheduled_time=scheduled_time
            ),
        )

    async def _project_recipients(self, project_id: str, exclude_user_id: Optional[str]) -> List[str]:
        recipients = await self.database.run(db.get_project_recipients, project_id)
        return [user_id for user_id in recipients if user_id != exclude_user_id]

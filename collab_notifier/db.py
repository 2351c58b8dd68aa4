"""SQLite database operations for projects, workload and notifications."""

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import PersistenceFailure
from .models import (
    DigestUser,
    Meeting,
    Notification,
    Project,
    Task,
    UserIdentity,
    UserPreferences,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    full_name TEXT NOT NULL DEFAULT '',
    email_notifications INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS user_preferences (
    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    morning_digest INTEGER NOT NULL DEFAULT 1,
    lunch_reminder INTEGER NOT NULL DEFAULT 1,
    end_of_day_summary INTEGER NOT NULL DEFAULT 1,
    meeting_reminders INTEGER NOT NULL DEFAULT 1,
    task_reminders INTEGER NOT NULL DEFAULT 1,
    urgent_only INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    owner_id TEXT NOT NULL REFERENCES users(id)
);
CREATE TABLE IF NOT EXISTS project_members (
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL DEFAULT 'member',
    PRIMARY KEY (project_id, user_id)
);
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'todo',
    priority TEXT NOT NULL DEFAULT 'medium',
    assignee_id TEXT REFERENCES users(id),
    deadline TEXT,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS meetings (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    start_time TEXT NOT NULL,
    duration_minutes INTEGER NOT NULL DEFAULT 60
);
CREATE TABLE IF NOT EXISTS meeting_attendees (
    meeting_id TEXT NOT NULL REFERENCES meetings(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    PRIMARY KEY (meeting_id, user_id)
);
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    data TEXT NOT NULL DEFAULT '{}',
    read INTEGER NOT NULL DEFAULT 0,
    read_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_user_id_read ON notifications(user_id, read);
CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON notifications(created_at);
CREATE TABLE IF NOT EXISTS notification_history (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    sent_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _new_id() -> str:
    return uuid.uuid4().hex


def init_db(db_path: str) -> sqlite3.Connection:
    """
    Initialize the database and create tables if they don't exist.

    The connection may be used from worker threads; callers serialize access
    (see AsyncDatabase).

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        A connection to the database.
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


# Users and preferences

def create_user(
    conn: sqlite3.Connection,
    email: str,
    full_name: str = "",
    user_id: Optional[str] = None,
    email_notifications: bool = True,
) -> str:
    user_id = user_id or _new_id()
    with conn:
        conn.execute(
            "INSERT INTO users (id, email, full_name, email_notifications) VALUES (?, ?, ?, ?)",
            (user_id, email, full_name, int(email_notifications)),
        )
    return user_id


def _row_to_identity(row: sqlite3.Row) -> UserIdentity:
    return UserIdentity(id=row["id"], email=row["email"], full_name=row["full_name"])


def get_user(conn: sqlite3.Connection, user_id: str) -> Optional[UserIdentity]:
    row = conn.execute(
        "SELECT id, email, full_name FROM users WHERE id = ?", (user_id,)
    ).fetchone()
    return _row_to_identity(row) if row else None


def get_user_by_email(conn: sqlite3.Connection, email: str) -> Optional[UserIdentity]:
    row = conn.execute(
        "SELECT id, email, full_name FROM users WHERE email = ?", (email,)
    ).fetchone()
    return _row_to_identity(row) if row else None


def set_user_preferences(conn: sqlite3.Connection, user_id: str, **prefs: bool) -> None:
    """
    Upsert notification preference switches for a user.

    Args:
        conn: Database connection.
        user_id: Owner of the preferences.
        **prefs: Any UserPreferences field except email_notifications, which
            lives on the users table and is updated there.
    """
    email_notifications = prefs.pop("email_notifications", None)
    allowed = set(UserPreferences.__dataclass_fields__) - {"email_notifications"}
    unknown = set(prefs) - allowed
    if unknown:
        raise ValueError(f"Unknown preference(s): {sorted(unknown)}")
    with conn:
        if email_notifications is not None:
            conn.execute(
                "UPDATE users SET email_notifications = ? WHERE id = ?",
                (int(email_notifications), user_id),
            )
        conn.execute("INSERT OR IGNORE INTO user_preferences (user_id) VALUES (?)", (user_id,))
        for key, value in prefs.items():
            conn.execute(
                f"UPDATE user_preferences SET {key} = ? WHERE user_id = ?",
                (int(value), user_id),
            )


def get_active_users(conn: sqlite3.Connection) -> List[DigestUser]:
    """
    Return users with e-mail notifications enabled, with their preferences.

    Users without a preferences row get the defaults.
    """
    cursor = conn.execute(
        """
        SELECT u.id, u.email, u.full_name,
               p.morning_digest, p.lunch_reminder, p.end_of_day_summary,
               p.meeting_reminders, p.task_reminders, p.urgent_only
        FROM users u
        LEFT JOIN user_preferences p ON p.user_id = u.id
        WHERE u.email_notifications = 1
        ORDER BY u.id
        """
    )
    users = []
    for row in cursor.fetchall():
        prefs = UserPreferences()
        if row["morning_digest"] is not None:
            prefs = UserPreferences(
                email_notifications=True,
                morning_digest=bool(row["morning_digest"]),
                lunch_reminder=bool(row["lunch_reminder"]),
                end_of_day_summary=bool(row["end_of_day_summary"]),
                meeting_reminders=bool(row["meeting_reminders"]),
                task_reminders=bool(row["task_reminders"]),
                urgent_only=bool(row["urgent_only"]),
            )
        users.append(DigestUser(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            preferences=prefs,
        ))
    return users


# Projects and membership

def create_project(
    conn: sqlite3.Connection, name: str, owner_id: str, project_id: Optional[str] = None
) -> str:
    project_id = project_id or _new_id()
    with conn:
        conn.execute(
            "INSERT INTO projects (id, name, owner_id) VALUES (?, ?, ?)",
            (project_id, name, owner_id),
        )
    return project_id


def get_project(conn: sqlite3.Connection, project_id: str) -> Optional[Project]:
    row = conn.execute(
        "SELECT id, name, owner_id FROM projects WHERE id = ?", (project_id,)
    ).fetchone()
    return Project(id=row["id"], name=row["name"], owner_id=row["owner_id"]) if row else None


def add_project_member(
    conn: sqlite3.Connection, project_id: str, user_id: str, role: str = "member"
) -> None:
    with conn:
        conn.execute(
            "INSERT OR REPLACE INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)",
            (project_id, user_id, role),
        )


def remove_project_member(conn: sqlite3.Connection, project_id: str, user_id: str) -> bool:
    with conn:
        cursor = conn.execute(
            "DELETE FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
    return cursor.rowcount > 0


def has_project_access(conn: sqlite3.Connection, project_id: str, user_id: str) -> bool:
    """True if the user owns the project or has a membership row for it."""
    row = conn.execute(
        """
        SELECT 1 FROM projects WHERE id = ? AND owner_id = ?
        UNION
        SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?
        """,
        (project_id, user_id, project_id, user_id),
    ).fetchone()
    return row is not None


def get_project_recipients(conn: sqlite3.Connection, project_id: str) -> List[str]:
    """Return the ids of every member plus the owner of a project, deduplicated."""
    cursor = conn.execute(
        """
        SELECT user_id FROM project_members WHERE project_id = ?
        UNION
        SELECT owner_id FROM projects WHERE id = ?
        """,
        (project_id, project_id),
    )
    return sorted(row[0] for row in cursor.fetchall())


def get_user_projects(conn: sqlite3.Connection, user_id: str) -> List[Project]:
    cursor = conn.execute(
        """
        SELECT id, name, owner_id FROM projects WHERE owner_id = ?
        UNION
        SELECT p.id, p.name, p.owner_id FROM projects p
        JOIN project_members m ON m.project_id = p.id
        WHERE m.user_id = ?
        ORDER BY name
        """,
        (user_id, user_id),
    )
    return [Project(id=r["id"], name=r["name"], owner_id=r["owner_id"]) for r in cursor.fetchall()]


# Tasks and meetings

def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        status=row["status"],
        priority=row["priority"],
        assignee_id=row["assignee_id"],
        deadline=_parse_dt(row["deadline"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def create_task(
    conn: sqlite3.Connection,
    project_id: str,
    title: str,
    assignee_id: Optional[str] = None,
    deadline: Optional[datetime] = None,
    status: str = "todo",
    priority: str = "medium",
    task_id: Optional[str] = None,
) -> str:
    task_id = task_id or _new_id()
    with conn:
        conn.execute(
            """
            INSERT INTO tasks (id, project_id, title, status, priority, assignee_id, deadline, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (task_id, project_id, title, status, priority, assignee_id,
             _to_iso(deadline), _to_iso(utcnow())),
        )
    return task_id


def get_task(conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def get_user_tasks(conn: sqlite3.Connection, user_id: str) -> List[Task]:
    """Return every task assigned to the user, done ones included."""
    cursor = conn.execute(
        "SELECT * FROM tasks WHERE assignee_id = ? ORDER BY deadline, id", (user_id,)
    )
    return [_row_to_task(row) for row in cursor.fetchall()]


def create_meeting(
    conn: sqlite3.Connection,
    project_id: str,
    title: str,
    start_time: datetime,
    duration_minutes: int = 60,
    attendee_ids: Sequence[str] = (),
    meeting_id: Optional[str] = None,
) -> str:
    meeting_id = meeting_id or _new_id()
    with conn:
        conn.execute(
            "INSERT INTO meetings (id, project_id, title, start_time, duration_minutes) VALUES (?, ?, ?, ?, ?)",
            (meeting_id, project_id, title, _to_iso(start_time), duration_minutes),
        )
        conn.executemany(
            "INSERT OR IGNORE INTO meeting_attendees (meeting_id, user_id) VALUES (?, ?)",
            [(meeting_id, user_id) for user_id in attendee_ids],
        )
    return meeting_id


def get_user_meetings(
    conn: sqlite3.Connection,
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Meeting]:
    """
    Return meetings the user attends, optionally limited to those starting in [start, end).
    """
    query = """
        SELECT m.* FROM meetings m
        JOIN meeting_attendees a ON a.meeting_id = m.id
        WHERE a.user_id = ?
    """
    params: List[Any] = [user_id]
    if start is not None:
        query += " AND m.start_time >= ?"
        params.append(_to_iso(start))
    if end is not None:
        query += " AND m.start_time < ?"
        params.append(_to_iso(end))
    query += " ORDER BY m.start_time, m.id"
    return [
        Meeting(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            start_time=_parse_dt(row["start_time"]),
            duration_minutes=row["duration_minutes"],
        )
        for row in conn.execute(query, params).fetchall()
    ]


# Notifications

def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        priority=row["priority"],
        data=json.loads(row["data"] or "{}"),
        read=bool(row["read"]),
        created_at=_parse_dt(row["created_at"]),
    )


def insert_notifications(
    conn: sqlite3.Connection,
    rows: Sequence[Tuple[str, str, str, str, Dict[str, Any], str]],
) -> List[Notification]:
    """
    Insert notification records in a single transaction.

    Args:
        conn: Database connection.
        rows: (user_id, type, title, message, data, priority) per recipient.

    Returns:
        The created notifications, in input order.
    """
    now = utcnow()
    created = [
        Notification(
            id=_new_id(),
            user_id=user_id,
            type=kind,
            title=title,
            message=message,
            data=data,
            read=False,
            created_at=now,
            priority=priority,
        )
        for user_id, kind, title, message, data, priority in rows
    ]
    with conn:
        conn.executemany(
            """
            INSERT INTO notifications (id, user_id, type, title, message, priority, data, read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            [
                (n.id, n.user_id, n.type, n.title, n.message, n.priority,
                 json.dumps(n.data), _to_iso(n.created_at))
                for n in created
            ],
        )
    return created


def get_notification(
    conn: sqlite3.Connection, notification_id: str, user_id: str
) -> Optional[Notification]:
    row = conn.execute(
        "SELECT * FROM notifications WHERE id = ? AND user_id = ?",
        (notification_id, user_id),
    ).fetchone()
    return _row_to_notification(row) if row else None


def set_notification_read(
    conn: sqlite3.Connection, notification_id: str, user_id: str, read: bool = True
) -> Optional[Notification]:
    """
    Set read state on a notification owned by user_id.

    Returns:
        The updated notification, or None if no such notification belongs to the user.
    """
    with conn:
        cursor = conn.execute(
            "UPDATE notifications SET read = ?, read_at = ? WHERE id = ? AND user_id = ?",
            (int(read), _to_iso(utcnow()) if read else None, notification_id, user_id),
        )
    if cursor.rowcount == 0:
        return None
    return get_notification(conn, notification_id, user_id)


def mark_all_read(conn: sqlite3.Connection, user_id: str) -> int:
    with conn:
        cursor = conn.execute(
            "UPDATE notifications SET read = 1, read_at = ? WHERE user_id = ? AND read = 0",
            (_to_iso(utcnow()), user_id),
        )
    return cursor.rowcount


def list_notifications(
    conn: sqlite3.Connection, user_id: str, limit: int = 20, offset: int = 0
) -> List[Notification]:
    cursor = conn.execute(
        """
        SELECT * FROM notifications WHERE user_id = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT ? OFFSET ?
        """,
        (user_id, limit, offset),
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


def count_unread(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read = 0", (user_id,)
    ).fetchone()
    return row[0]


def delete_notification(conn: sqlite3.Connection, notification_id: str, user_id: str) -> bool:
    with conn:
        cursor = conn.execute(
            "DELETE FROM notifications WHERE id = ? AND user_id = ?",
            (notification_id, user_id),
        )
    return cursor.rowcount > 0


def record_history(
    conn: sqlite3.Connection, user_id: str, kind: str, data: Dict[str, Any]
) -> None:
    """Record that a digest e-mail was sent."""
    with conn:
        conn.execute(
            "INSERT INTO notification_history (id, user_id, type, data, sent_at) VALUES (?, ?, ?, ?, ?)",
            (_new_id(), user_id, kind, json.dumps(data), _to_iso(utcnow())),
        )


def get_history(conn: sqlite3.Connection, user_id: str) -> List[Dict[str, Any]]:
    cursor = conn.execute(
        "SELECT type, data, sent_at FROM notification_history WHERE user_id = ? ORDER BY sent_at",
        (user_id,),
    )
    return [
        {"type": row["type"], "data": json.loads(row["data"]), "sent_at": row["sent_at"]}
        for row in cursor.fetchall()
    ]


# Metadata

def get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    """
    Get a metadata value from the database.

    Args:
        conn: Database connection.
        key: Metadata key.

    Returns:
        The metadata value, or None if not found.
    """
    cursor = conn.execute("SELECT value FROM meta WHERE key = ?", (key,))
    row = cursor.fetchone()
    return row[0] if row else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    """
    Set a metadata value in the database.

    Args:
        conn: Database connection.
        key: Metadata key.
        value: Metadata value.
    """
    with conn:
        conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            (key, value)
        )


class AsyncDatabase:
    """
    Runs the functions above from the event loop.

    One sqlite connection is shared; calls are serialized by a lock and executed
    in a worker thread with a timeout. sqlite errors and timeouts surface as
    PersistenceFailure.
    """

    def __init__(self, conn: sqlite3.Connection, timeout_seconds: float = 10.0):
        self.conn = conn
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()

    def _call(self, fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        with self._lock:
            return fn(self.conn, *args, **kwargs)

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._call, fn, args, kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Data store call {fn.__name__} timed out after {self.timeout_seconds}s")
            raise PersistenceFailure(f"{fn.__name__} timed out") from e
        except sqlite3.Error as e:
            logger.error(f"Data store call {fn.__name__} failed: {e}")
            raise PersistenceFailure(f"{fn.__name__} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

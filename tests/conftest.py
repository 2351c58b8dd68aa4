import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from collab_notifier import db
from collab_notifier.auth import IdentityResolver, generate_token
from collab_notifier.config import (
    AppConfig,
    AuthConfig,
    DatabaseConfig,
    GatewayConfig,
    MailConfig,
    SchedulerConfig,
)
from collab_notifier.db import AsyncDatabase
from collab_notifier.dispatcher import BroadcastDispatcher
from collab_notifier.errors import DeliveryFailure
from collab_notifier.gateway import ProjectAuthorizer, RoomGateway
from collab_notifier.registry import ConnectionRegistry
from collab_notifier.store import NotificationStore

NOW = datetime(2024, 3, 12, 10, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Collects every message written to a connection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if name is None or m["event"] == name]


class FailingTransport:
    """A connection whose socket is already gone."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.calls += 1
        raise ConnectionResetError("connection closed")


class SlowTransport:
    async def __call__(self, message: Dict[str, Any]) -> None:
        await asyncio.sleep(10)


class RecordingMailer:
    """Stands in for Mailer; records instead of sending."""

    def __init__(self, fail_for=()):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for = set(fail_for)
        self.enabled = True

    async def send(self, to_email, subject, text, html=None) -> bool:
        if to_email in self.fail_for:
            raise DeliveryFailure(f"mail to {to_email} failed: connection refused")
        self.sent.append({"to": to_email, "subject": subject, "text": text, "html": html})
        return True


@dataclass
class Engine:
    database: AsyncDatabase
    registry: ConnectionRegistry
    dispatcher: BroadcastDispatcher
    store: NotificationStore
    resolver: IdentityResolver
    gateway: RoomGateway


@pytest.fixture
def conn():
    conn = db.init_db(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def database(conn):
    return AsyncDatabase(conn, timeout_seconds=5.0)


@pytest.fixture
def auth_config():
    return AuthConfig(jwt_secret="test-secret")


@pytest.fixture
def seeded(conn):
    """alice owns proj-1, bob is a member, carol is an outsider."""
    db.create_user(conn, "alice@example.com", "Alice Smith", user_id="alice")
    db.create_user(conn, "bob@example.com", "Bob Jones", user_id="bob")
    db.create_user(conn, "carol@example.com", "Carol White", user_id="carol")
    db.create_project(conn, "Launch", "alice", project_id="proj-1")
    db.add_project_member(conn, "proj-1", "bob")
    db.create_task(conn, "proj-1", "Write release notes", assignee_id="bob", task_id="task-1")
    return conn


@pytest.fixture
def engine(database, auth_config, seeded):
    registry = ConnectionRegistry()
    dispatcher = BroadcastDispatcher(registry, send_timeout_seconds=0.5)
    store = NotificationStore(database, dispatcher)
    resolver = IdentityResolver(auth_config, database)
    gateway = RoomGateway(resolver, registry, dispatcher, ProjectAuthorizer(database))
    return Engine(database, registry, dispatcher, store, resolver, gateway)


@pytest.fixture
def tokens(auth_config):
    return {
        user_id: generate_token(user_id, f"{user_id}@example.com", auth_config)
        for user_id in ("alice", "bob", "carol")
    }


@pytest.fixture
def app_config(auth_config):
    return AppConfig(
        database=DatabaseConfig(db_path=":memory:"),
        auth=auth_config,
        mail=MailConfig(provider="disabled", from_email="noreply@example.com"),
        scheduler=SchedulerConfig(),
        gateway=GatewayConfig(),
    )

import asyncio

from collab_notifier.dispatcher import BroadcastDispatcher, make_event
from collab_notifier.models import Connection
from collab_notifier.registry import ConnectionRegistry, project_room, user_room

from conftest import FailingTransport, FakeTransport, SlowTransport


async def _setup(transports, send_timeout=0.5):
    registry = ConnectionRegistry()
    for cid, (user_id, transport) in transports.items():
        await registry.register(Connection(cid, user_id, user_id, send=transport))
        await registry.add_to_room(cid, project_room("p1"))
    return registry, BroadcastDispatcher(registry, send_timeout_seconds=send_timeout)


def test_make_event_envelope():
    assert make_event("joined_project", {"projectId": "p1"}) == {
        "event": "joined_project",
        "data": {"projectId": "p1"},
    }


def test_room_delivery_excludes_sender():
    alice, bob = FakeTransport(), FakeTransport()

    async def scenario():
        _, dispatcher = await _setup({"c1": ("alice", alice), "c2": ("bob", bob)})
        return await dispatcher.deliver_to_room(
            project_room("p1"), "user_typing", {"taskId": "t1"}, exclude_connection_id="c1"
        )

    outcome = asyncio.run(scenario())

    assert outcome.attempted == 1 and outcome.delivered == 1
    assert alice.sent == []
    assert bob.events("user_typing") == [{"event": "user_typing", "data": {"taskId": "t1"}}]


def test_broken_connection_is_soft_failure():
    healthy, broken = FakeTransport(), FailingTransport()

    async def scenario():
        _, dispatcher = await _setup({"c1": ("alice", healthy), "c2": ("bob", broken)})
        return await dispatcher.deliver_to_room(project_room("p1"), "task_updated", {"taskId": "t1"})

    outcome = asyncio.run(scenario())

    assert outcome.attempted == 2
    assert outcome.delivered == 1
    assert outcome.failed == 1
    assert broken.calls == 1
    assert len(healthy.events("task_updated")) == 1


def test_slow_connection_times_out_without_blocking_others():
    fast = FakeTransport()

    async def scenario():
        _, dispatcher = await _setup({"c1": ("alice", fast), "c2": ("bob", SlowTransport())}, send_timeout=0.05)
        return await dispatcher.deliver_to_room(project_room("p1"), "task_updated", {})

    outcome = asyncio.run(scenario())

    assert outcome.delivered == 1
    assert outcome.failed == 1
    assert len(fast.sent) == 1


def test_delivery_to_offline_user_reaches_nobody():
    async def scenario():
        _, dispatcher = await _setup({})
        return await dispatcher.deliver_to_user("carol", "notification", {"id": "n1"})

    outcome = asyncio.run(scenario())

    assert outcome.room_id == user_room("carol")
    assert not outcome.reached
    assert outcome.attempted == 0


def test_deliver_to_unknown_connection_returns_false():
    async def scenario():
        _, dispatcher = await _setup({})
        return await dispatcher.deliver_to_connection("nope", "error", {"message": "x"})

    assert asyncio.run(scenario()) is False


class GatedTransport(FakeTransport):
    """Holds each send until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, message):
        self.started.set()
        await self.release.wait()
        await super().__call__(message)


def test_join_during_broadcast_misses_it_and_gets_the_next():
    late = FakeTransport()

    async def scenario():
        gated = GatedTransport()
        registry, dispatcher = await _setup({"c1": ("alice", gated)}, send_timeout=2)
        room = project_room("p1")
        in_flight = asyncio.ensure_future(dispatcher.deliver_to_room(room, "task_updated", {"taskId": "t1"}))
        await gated.started.wait()

        await registry.register(Connection("c2", "bob", "bob", send=late))
        joined = await registry.add_to_room("c2", room)
        gated.release.set()
        first = await in_flight
        second = await dispatcher.deliver_to_room(room, "task_updated", {"taskId": "t2"})
        return registry, gated, joined, first, second

    registry, gated, joined, first, second = asyncio.run(scenario())

    assert joined is True
    assert first.attempted == 1 and first.delivered == 1
    assert second.attempted == 2 and second.delivered == 2
    assert [m["data"]["taskId"] for m in late.events("task_updated")] == ["t2"]
    assert [m["data"]["taskId"] for m in gated.events("task_updated")] == ["t1", "t2"]
    assert registry.reachable(project_room("p1")) == {"c1", "c2"}

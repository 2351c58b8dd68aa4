"""Fan-out of events to live connections."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import DeliveryFailure
from .models import Connection
from .registry import ConnectionRegistry, user_room

logger = logging.getLogger(__name__)


def make_event(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Wire envelope for an outbound event."""
    return {"event": name, "data": data}


@dataclass
class DeliveryOutcome:
    """What happened to one dispatch. Nothing here is an error for the caller."""
    room_id: str
    event: str
    attempted: int = 0
    delivered: int = 0
    failed: int = 0

    @property
    def reached(self) -> bool:
        """True if at least one live connection received the event."""
        return self.delivered > 0


class BroadcastDispatcher:
    """
    Pushes events to whatever connections the registry reports as reachable.

    Delivery is fire-and-forget: a closed or broken connection counts as
    unreachable, gets logged, and never raises. There is no retry and no queue;
    durable notifications rely on the persisted record.
    """

    def __init__(self, registry: ConnectionRegistry, send_timeout_seconds: float = 5.0):
        self.registry = registry
        self.send_timeout_seconds = send_timeout_seconds

    async def deliver_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> DeliveryOutcome:
        return await self.deliver_to_room(user_room(user_id), event, data)

    async def deliver_to_room(
        self,
        room_id: str,
        event: str,
        data: Dict[str, Any],
        exclude_connection_id: Optional[str] = None,
    ) -> DeliveryOutcome:
        """
        Send one event to every connection currently in a room.

        Args:
            room_id: Target room ("user:<id>" or "project:<id>").
            event: Outbound event name.
            data: Event payload.
            exclude_connection_id: Connection to skip, typically the sender.

        Returns:
            Counts of attempted, delivered and failed sends.
        """
        outcome = DeliveryOutcome(room_id=room_id, event=event)
        targets = [
            c for c in self.registry.connections_in(room_id)
            if c.connection_id != exclude_connection_id
        ]
        if not targets:
            logger.debug(f"No live connections in {room_id} for '{event}'")
            return outcome

        message = make_event(event, data)
        results = await asyncio.gather(*(self._send(c, message) for c in targets))
        outcome.attempted = len(targets)
        outcome.delivered = sum(1 for ok in results if ok)
        outcome.failed = outcome.attempted - outcome.delivered
        return outcome

    async def deliver_to_connection(self, connection_id: str, event: str, data: Dict[str, Any]) -> bool:
        connection = self.registry.get(connection_id)
        if connection is None:
            return False
        return await self._send(connection, make_event(event, data))

    async def _send(self, connection: Connection, message: Dict[str, Any]) -> bool:
        if connection.send is None:
            return False
        try:
            await asyncio.wait_for(connection.send(message), timeout=self.send_timeout_seconds)
        except asyncio.TimeoutError:
            failure = DeliveryFailure(f"send timed out after {self.send_timeout_seconds}s")
        except Exception as e:
            failure = DeliveryFailure(str(e) or type(e).__name__)
        else:
            return True
        logger.warning(
            f"Delivery of '{message.get('event')}' to connection {connection.connection_id} "
            f"(user {connection.user_id}) failed: {failure}"
        )
        return False

"""Entry point for live connections: identity, rooms and inbound operations."""

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from . import db
from .auth import IdentityResolver
from .db import AsyncDatabase
from .dispatcher import BroadcastDispatcher
from .errors import AccessDenied, AuthError, NotFound, PersistenceFailure
from .models import Connection
from .registry import ConnectionRegistry, is_project_room, project_room, user_room

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class ProjectAuthorizer:
    """Answers "may this user see this project" from the data store."""

    def __init__(self, database: AsyncDatabase):
        self.database = database

    async def can_access(self, user_id: str, project_id: str) -> bool:
        return await self.database.run(db.has_project_access, project_id, user_id)

    async def project_for_task(self, task_id: str) -> Optional[str]:
        task = await self.database.run(db.get_task, task_id)
        return task.project_id if task else None


def _field(data: Any, name: str) -> str:
    """Pull an id out of an inbound payload; bare strings are accepted as the id."""
    if isinstance(data, str) and data:
        return data
    if isinstance(data, dict) and isinstance(data.get(name), str) and data[name]:
        return data[name]
    raise ValueError(f"Missing '{name}'")


class RoomGateway:
    """
    Accepts authenticated connections and manages their room membership.

    A connection always sits in its own user room. It enters a project room
    only after the authorizer confirms owner or member access at join time.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        registry: ConnectionRegistry,
        dispatcher: BroadcastDispatcher,
        authorizer: ProjectAuthorizer,
    ):
        self.resolver = resolver
        self.registry = registry
        self.dispatcher = dispatcher
        self.authorizer = authorizer
        self._handlers = {
            "join_user_room": self._on_join_user_room,
            "join_project": self._on_join_project,
            "leave_project": self._on_leave_project,
            "task_updated": self._on_task_updated,
            "comment_added": self._on_comment_added,
            "typing": self._on_typing,
            "viewing": self._on_viewing,
        }

    async def connect(
        self,
        credential: Optional[str],
        send: SendFn,
        accept: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> Connection:
        """
        Run the handshake for a new connection.

        Args:
            credential: Bearer token from the client.
            send: Coroutine that writes one outbound message to the transport.
            accept: Called once the credential resolves, before registration.

        Raises:
            AuthError: If the credential does not resolve. Nothing is registered.
        """
        identity = await self.resolver.resolve(credential)
        if accept is not None:
            await accept()
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            user_id=identity.id,
            display_name=identity.display_name,
            email=identity.email,
            send=send,
        )
        await self.registry.register(connection)
        logger.info(f"User {identity.email} connected ({connection.connection_id})")
        return connection

    async def disconnect(self, connection_id: str) -> None:
        """Remove a connection everywhere and announce it to its project rooms. Idempotent."""
        connection = self.registry.get(connection_id)
        rooms = await self.registry.unregister(connection_id)
        if connection is None:
            return
        for room_id in rooms:
            if is_project_room(room_id):
                await self.dispatcher.deliver_to_room(
                    room_id, "user_left_project", self._presence(connection, room_id)
                )
        logger.info(f"User {connection.email} disconnected ({connection_id})")

    def _require(self, connection_id: str) -> Connection:
        connection = self.registry.get(connection_id)
        if connection is None:
            raise AuthError("Connection is not registered")
        return connection

    @staticmethod
    def _presence(connection: Connection, room_id: str) -> Dict[str, Any]:
        return {
            "userId": connection.user_id,
            "userEmail": connection.email,
            "userName": connection.display_name,
            "projectId": room_id.split(":", 1)[1],
        }

    async def join_user_room(self, connection_id: str, user_id: str) -> None:
        connection = self._require(connection_id)
        if user_id != connection.user_id:
            raise AccessDenied("Cannot join another user's room")
        await self.registry.add_to_room(connection_id, user_room(user_id))
        await self.dispatcher.deliver_to_connection(connection_id, "joined_user_room", {"userId": user_id})

    async def join_project(self, connection_id: str, project_id: str) -> None:
        """
        Join a project room after checking owner/member access.

        Raises:
            AccessDenied: If the user is neither owner nor member. Membership is unchanged.
        """
        connection = self._require(connection_id)
        if not await self.authorizer.can_access(connection.user_id, project_id):
            logger.info(f"User {connection.user_id} denied access to project {project_id}")
            raise AccessDenied("Access denied to project")

        room_id = project_room(project_id)
        already_member = self.registry.is_member(connection_id, room_id)
        if not await self.registry.add_to_room(connection_id, room_id):
            return  # disconnected while the check was in flight
        await self.dispatcher.deliver_to_connection(connection_id, "joined_project", {"projectId": project_id})
        if not already_member:
            await self.dispatcher.deliver_to_room(
                room_id,
                "user_joined_project",
                self._presence(connection, room_id),
                exclude_connection_id=connection_id,
            )

    async def leave_project(self, connection_id: str, project_id: str) -> None:
        connection = self._require(connection_id)
        room_id = project_room(project_id)
        if await self.registry.remove_from_room(connection_id, room_id):
            await self.dispatcher.deliver_to_room(
                room_id, "user_left_project", self._presence(connection, room_id)
            )

    async def revoke_project_access(self, project_id: str, user_id: str) -> int:
        """
        Evict every live connection of a user from a project room.

        Called when a membership is removed; joins are not re-validated otherwise.

        Returns:
            Number of connections evicted.
        """
        room_id = project_room(project_id)
        evicted = 0
        for connection in self.registry.connections_in(room_id):
            if connection.user_id != user_id:
                continue
            if await self.registry.remove_from_room(connection.connection_id, room_id):
                evicted += 1
                await self.dispatcher.deliver_to_connection(
                    connection.connection_id,
                    "error",
                    {"message": "Access to project revoked", "projectId": project_id},
                )
                await self.dispatcher.deliver_to_room(
                    room_id, "user_left_project", self._presence(connection, room_id)
                )
        if evicted:
            logger.info(f"Evicted {evicted} connection(s) of user {user_id} from project {project_id}")
        return evicted

    async def _require_access(self, connection: Connection, project_id: str) -> None:
        if not await self.authorizer.can_access(connection.user_id, project_id):
            raise AccessDenied("Access denied to project")

    async def task_updated(
        self, connection_id: str, task_id: str, project_id: str, changes: Dict[str, Any]
    ) -> None:
        connection = self._require(connection_id)
        await self._require_access(connection, project_id)
        await self.dispatcher.deliver_to_room(
            project_room(project_id),
            "task_updated",
            {"taskId": task_id, "projectId": project_id, "changes": changes, "updatedBy": connection.user_id},
        )

    async def comment_added(
        self, connection_id: str, task_id: str, project_id: str, comment: Dict[str, Any]
    ) -> None:
        connection = self._require(connection_id)
        await self._require_access(connection, project_id)
        await self.dispatcher.deliver_to_room(
            project_room(project_id),
            "comment_added",
            {"taskId": task_id, "projectId": project_id, "comment": comment, "userId": connection.user_id},
        )

    async def typing(self, connection_id: str, task_id: str) -> None:
        connection = self._require(connection_id)
        project_id = await self.authorizer.project_for_task(task_id)
        if project_id is None:
            raise NotFound("Task not found")
        room_id = project_room(project_id)
        # Presence only goes to rooms the sender has already joined
        if not self.registry.is_member(connection_id, room_id):
            raise AccessDenied("Join the project before sending presence")
        await self.dispatcher.deliver_to_room(
            room_id,
            "user_typing",
            {"taskId": task_id, "userId": connection.user_id, "userName": connection.display_name},
            exclude_connection_id=connection_id,
        )

    async def viewing(self, connection_id: str, entity_id: str, entity_type: str) -> None:
        connection = self._require(connection_id)
        if entity_type == "task":
            project_id = await self.authorizer.project_for_task(entity_id)
            if project_id is None:
                raise NotFound("Task not found")
        elif entity_type == "project":
            project_id = entity_id
        else:
            raise ValueError(f"Unsupported entityType '{entity_type}'")
        room_id = project_room(project_id)
        if not self.registry.is_member(connection_id, room_id):
            raise AccessDenied("Join the project before sending presence")
        await self.dispatcher.deliver_to_room(
            room_id,
            "user_viewing",
            {
                "userId": connection.user_id,
                "entityId": entity_id,
                "entityType": entity_type,
                "userName": connection.display_name,
            },
            exclude_connection_id=connection_id,
        )

    # Inbound message routing

    async def handle_message(self, connection_id: str, message: Any) -> None:
        """
        Route one inbound `{"event": ..., "data": ...}` message.

        Refusals and bad payloads become an `error` event on the sender; the
        connection stays open.
        """
        if not isinstance(message, dict) or message.get("event") not in self._handlers:
            event = message.get("event") if isinstance(message, dict) else None
            await self._send_error(connection_id, f"Unknown event: {event}")
            return
        event = message["event"]
        try:
            await self._handlers[event](connection_id, message.get("data"))
        except (AccessDenied, NotFound, AuthError) as e:
            await self._send_error(connection_id, str(e))
        except (ValueError, TypeError) as e:
            await self._send_error(connection_id, f"Invalid payload for {event}: {e}")
        except PersistenceFailure:
            logger.error(f"Data store unavailable while handling '{event}' for {connection_id}")
            await self._send_error(connection_id, f"Failed to handle {event}")

    async def _send_error(self, connection_id: str, text: str) -> None:
        await self.dispatcher.deliver_to_connection(connection_id, "error", {"message": text})

    async def _on_join_user_room(self, connection_id: str, data: Any) -> None:
        await self.join_user_room(connection_id, _field(data, "userId"))

    async def _on_join_project(self, connection_id: str, data: Any) -> None:
        await self.join_project(connection_id, _field(data, "projectId"))

    async def _on_leave_project(self, connection_id: str, data: Any) -> None:
        await self.leave_project(connection_id, _field(data, "projectId"))

    async def _on_task_updated(self, connection_id: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValueError("Expected an object with taskId and projectId")
        await self.task_updated(
            connection_id, _field(data, "taskId"), _field(data, "projectId"), data.get("changes") or {}
        )

    async def _on_comment_added(self, connection_id: str, data: Any) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("comment"), dict):
            raise ValueError("Missing 'comment'")
        await self.comment_added(
            connection_id, _field(data, "taskId"), _field(data, "projectId"), data["comment"]
        )

    async def _on_typing(self, connection_id: str, data: Any) -> None:
        await self.typing(connection_id, _field(data, "taskId"))

    async def _on_viewing(self, connection_id: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValueError("Missing 'entityId'")
        await self.viewing(connection_id, _field(data, "entityId"), _field(data, "entityType"))

"""FastAPI application: websocket gateway, notification API and the digest scheduler."""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import db
from .auth import IdentityResolver, extract_bearer
from .config import AppConfig
from .db import AsyncDatabase
from .digest import DigestGenerator
from .dispatcher import BroadcastDispatcher
from .email_notifier import Mailer
from .errors import AccessDenied, AuthError, NotFound, PersistenceFailure
from .gateway import ProjectAuthorizer, RoomGateway
from .models import UserIdentity
from .registry import ConnectionRegistry
from .scheduler import DigestScheduler
from .store import MAX_PAGE_SIZE, NotificationStore

logger = logging.getLogger(__name__)

AUTH_CLOSE_CODE = 4401


@dataclass
class Services:
    """The engine's components, wired together once per process."""
    database: AsyncDatabase
    registry: ConnectionRegistry
    dispatcher: BroadcastDispatcher
    store: NotificationStore
    resolver: IdentityResolver
    gateway: RoomGateway
    mailer: Mailer
    generator: DigestGenerator


def build_services(config: AppConfig, conn=None, mailer: Optional[Mailer] = None) -> Services:
    """
    Wire the components together.

    Args:
        config: Application configuration.
        conn: Existing sqlite connection; opened from config.database when None.
        mailer: Mailer override, used by tests.
    """
    if conn is None:
        conn = db.init_db(config.database.db_path)
    database = AsyncDatabase(conn, timeout_seconds=config.database.timeout_seconds)
    registry = ConnectionRegistry()
    dispatcher = BroadcastDispatcher(registry, send_timeout_seconds=config.gateway.send_timeout_seconds)
    store = NotificationStore(database, dispatcher)
    resolver = IdentityResolver(config.auth, database)
    gateway = RoomGateway(resolver, registry, dispatcher, ProjectAuthorizer(database))
    mailer = mailer or Mailer(config.mail)
    generator = DigestGenerator(database, store, mailer, config.scheduler, app_url=config.mail.app_url)
    return Services(
        database=database,
        registry=registry,
        dispatcher=dispatcher,
        store=store,
        resolver=resolver,
        gateway=gateway,
        mailer=mailer,
        generator=generator,
    )


class ReadUpdate(BaseModel):
    read: bool = True


def create_app(
    config: AppConfig,
    services: Optional[Services] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        config: Application configuration.
        services: Pre-built components; built from config when None.
        start_scheduler: Whether the lifespan starts the digest jobs.
    """
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if start_scheduler:
            scheduler = DigestScheduler(services.generator.run_job, config.scheduler)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown()

    app = FastAPI(title="Collaboration Notifier", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.gateway.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"error": str(exc)})

    @app.exception_handler(AccessDenied)
    async def access_denied_handler(request: Request, exc: AccessDenied):
        return JSONResponse(status_code=403, content={"error": str(exc)})

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(PersistenceFailure)
    async def persistence_handler(request: Request, exc: PersistenceFailure):
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    async def current_user(authorization: Optional[str] = Header(None)) -> UserIdentity:
        return await services.resolver.resolve(extract_bearer(authorization))

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "connections": services.registry.connection_count}

    @app.get("/api/notifications")
    async def list_notifications(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
        user: UserIdentity = Depends(current_user),
    ):
        notifications = await services.store.list(user.id, page=page, limit=limit)
        return {
            "notifications": [n.to_dict() for n in notifications],
            "page": page,
            "limit": limit,
        }

    @app.get("/api/notifications/unread-count")
    async def unread_count(user: UserIdentity = Depends(current_user)):
        return {"count": await services.store.unread_count(user.id)}

    @app.put("/api/notifications/mark-all-read")
    async def mark_all_read(user: UserIdentity = Depends(current_user)):
        return {"updated": await services.store.mark_all_read(user.id)}

    @app.put("/api/notifications/{notification_id}")
    async def update_notification(
        notification_id: str,
        update: Optional[ReadUpdate] = None,
        user: UserIdentity = Depends(current_user),
    ):
        read = update.read if update is not None else True
        notification = await services.store.set_read(notification_id, user.id, read)
        return notification.to_dict()

    @app.delete("/api/notifications/{notification_id}")
    async def delete_notification(notification_id: str, user: UserIdentity = Depends(current_user)):
        await services.store.delete(notification_id, user.id)
        return {"deleted": True}

    @app.delete("/api/projects/{project_id}/members/{member_id}")
    async def remove_member(project_id: str, member_id: str, user: UserIdentity = Depends(current_user)):
        """Owner removes a member; the member's live connections leave the project room."""
        project = await services.database.run(db.get_project, project_id)
        if project is None:
            raise NotFound("Project not found")
        if project.owner_id != user.id:
            raise AccessDenied("Only the project owner can remove members")
        if not await services.database.run(db.remove_project_member, project_id, member_id):
            raise NotFound("Member not found")
        evicted = await services.gateway.revoke_project_access(project_id, member_id)
        return {"removed": True, "evicted": evicted}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        credential = token or extract_bearer(websocket.headers.get("authorization"))

        async def send(message: Dict[str, Any]) -> None:
            await websocket.send_json(message)

        try:
            connection = await services.gateway.connect(credential, send, accept=websocket.accept)
        except AuthError as e:
            logger.info(f"Rejected websocket handshake: {e}")
            await websocket.close(code=AUTH_CLOSE_CODE, reason=str(e))
            return

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    await services.dispatcher.deliver_to_connection(
                        connection.connection_id, "error", {"message": "Malformed message"}
                    )
                    continue
                await services.gateway.handle_message(connection.connection_id, message)
        except WebSocketDisconnect:
            pass
        finally:
            await services.gateway.disconnect(connection.connection_id)

    return app

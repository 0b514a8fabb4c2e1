"""
Bubble Timer Backend

REST endpoints for timers, sharing and device tokens, and the WebSocket channel
that keeps every device of every involved user in sync.

REST responses are always HTTP 200; failures are reported in an `error` field
of the JSON body.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bubble_timer.config import Settings, configure_logging, get_settings
from bubble_timer.connections import ConnectionDirectory, SocketRegistry
from bubble_timer.errors import AppError, AuthenticationError, NotFoundError, ValidationError
from bubble_timer.fanout import FanoutEngine
from bubble_timer.models import (
    DeviceTokenRequest,
    NotificationPreferences,
    RejectSharedTimerRequest,
    ShareTimerRequest,
    Timer,
    TimerUpdateRequest,
)
from bubble_timer.notifications import FirebasePushGateway, NotificationDispatcher
from bubble_timer.storage import Tables
from bubble_timer.timers import SharingStore, TimerStore
from bubble_timer.websocket_handler import WebSocketHandler, make_frame

logger = logging.getLogger(__name__)

# ============================================================
# CONSTANTS
# ============================================================

CORS_ALLOW_METHODS = "OPTIONS,GET,POST,PUT,PATCH,DELETE"
CORS_ALLOW_HEADERS = "Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token"
WS_CLOSE_UNAUTHENTICATED = 4001
WS_CLOSE_REGISTRATION_FAILED = 1011


# ============================================================
# SERVICES
# ============================================================


@dataclass
class Services:
    settings: Settings
    tables: Tables
    timers: TimerStore
    sharing: SharingStore
    connections: ConnectionDirectory
    sockets: SocketRegistry
    notifications: NotificationDispatcher
    engine: FanoutEngine
    websocket_handler: WebSocketHandler


def build_services(
    settings: Settings,
    tables: Tables | None = None,
    push_gateway: FirebasePushGateway | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Services:
    """Construct every component once; they share the injected tables."""
    tables = tables or Tables.in_memory(settings)
    timers = TimerStore(tables.timers)
    sharing = SharingStore(tables.shared_timers, timers)
    connections = ConnectionDirectory(tables.user_connections)
    sockets = SocketRegistry()
    notifications = NotificationDispatcher(
        tables.device_tokens, push_gateway or FirebasePushGateway(settings), clock
    )
    engine = FanoutEngine(timers, sharing, connections, sockets, notifications)
    return Services(
        settings=settings,
        tables=tables,
        timers=timers,
        sharing=sharing,
        connections=connections,
        sockets=sockets,
        notifications=notifications,
        engine=engine,
        websocket_handler=WebSocketHandler(connections, engine),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(request: Request) -> str:
    """The caller's identity, verified upstream and passed in a header."""
    services: Services = request.app.state.services
    user_id = request.headers.get(services.settings.identity_header)
    if not user_id:
        raise AuthenticationError("Authentication required")
    return user_id


# ============================================================
# REST ENDPOINTS
# ============================================================

router = APIRouter()


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Health check endpoint."""
    return {"status": "healthy", "connections_active": len(services.sockets)}


@router.get("/timers/shared")
async def get_shared_timers(
    user_id: str = Depends(current_user), services: Services = Depends(get_services)
):
    """Timers other users shared with the caller."""
    timers = await services.sharing.get_timers_shared_with_user(user_id)
    return [t.to_wire() for t in timers]


@router.post("/timers/shared")
async def share_timer(
    request: ShareTimerRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Share a timer with users and send each of them an invitation."""
    result = await services.engine.share_timer_with_users(
        request.timer_id, user_id, request.user_ids, request.timer
    )
    return {"result": "shared", "success": result.success, "failed": result.failed}


@router.delete("/timers/shared")
async def reject_shared_timer(
    request: RejectSharedTimerRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Remove the caller from a timer's share list."""
    if not await services.sharing.remove_relationship(request.timer_id, user_id):
        return {"error": "Failed to reject shared timer invitation"}
    return {"result": "rejected"}


@router.get("/timers/{timer_id}")
async def get_timer(
    timer_id: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    timer = await services.timers.get_timer(timer_id)
    if not timer:
        raise NotFoundError("Timer not found")
    return timer.to_wire()


@router.post("/timers/{timer_id}")
async def save_timer(
    timer_id: str,
    request: TimerUpdateRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Create or replace a timer owned by the caller."""
    timer = Timer(
        **request.timer.model_dump(exclude={"id", "user_id"}), id=timer_id, user_id=user_id
    )
    if not await services.timers.save_timer(timer):
        return {"error": "Failed to save timer"}
    return {"result": "updated"}


@router.post("/device-tokens")
async def register_device_token(
    request: DeviceTokenRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    await services.notifications.register_device_token(
        user_id, request.device_id, request.fcm_token, request.platform
    )
    return {"result": "registered"}


@router.delete("/device-tokens/{device_id}")
async def remove_device_token(
    device_id: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    await services.notifications.remove_device_token(user_id, device_id)
    return {"result": "removed"}


@router.put("/notification-preferences")
async def update_notification_preferences(
    request: NotificationPreferences,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    devices = await services.notifications.update_preferences(user_id, request)
    return {"result": "updated", "devices": devices}


# ============================================================
# WEBSOCKET ENDPOINT
# ============================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Realtime channel for one device.

    Every inbound message gets a `{"statusCode", "body"}` reply frame, except
    acknowledgements. Timer updates from other devices and users arrive as the
    raw `data` payload that triggered them.
    """
    services: Services = websocket.app.state.services
    settings = services.settings
    handler = services.websocket_handler

    user_id = websocket.headers.get(settings.identity_header)
    device_id = websocket.headers.get(settings.device_header, "")
    if not user_id:
        await websocket.close(code=WS_CLOSE_UNAUTHENTICATED, reason="Authentication required")
        return

    connection_id = f"conn_{uuid.uuid4().hex[:12]}"
    await websocket.accept()
    services.sockets.register(connection_id, websocket)

    reply = await handler.handle_connect(connection_id, user_id, device_id)
    await websocket.send_json(reply)
    if reply["statusCode"] != 200:
        services.sockets.unregister(connection_id)
        await websocket.close(code=WS_CLOSE_REGISTRATION_FAILED)
        return

    try:
        while True:
            try:
                raw = await asyncio.wait_for(
                    websocket.receive_text(), timeout=settings.websocket_keepalive_seconds
                )
            except TimeoutError:
                await websocket.send_json({"type": "keepalive"})
                continue

            try:
                reply = await handler.handle_message(connection_id, user_id, device_id, raw)
            except ValidationError as e:
                reply = make_frame(e.status_code, e.to_dict())
            if reply is not None:
                await websocket.send_json(reply)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("WebSocket error for user %s on connection %s", user_id, connection_id)
    finally:
        services.sockets.unregister(connection_id)
        await handler.handle_disconnect(connection_id, user_id, device_id)


# ============================================================
# FASTAPI APP
# ============================================================


def _error_response(body: dict) -> JSONResponse:
    return JSONResponse(status_code=200, content=body)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    error = ValidationError(first.get("msg", "Invalid request"), ".".join(loc) or None)
    return _error_response(error.to_dict())


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        logger.info("%s started", settings.app_name)
        yield
        logger.info("%s stopped", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        description="Realtime fanout and sharing backend for collaborative countdown timers",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=True,
        allow_methods=CORS_ALLOW_METHODS.split(","),
        allow_headers=CORS_ALLOW_HEADERS.split(","),
    )

    @app.middleware("http")
    async def fixed_cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = settings.cors_origin
        response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        return response

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


# ============================================================
# MAIN
# ============================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)

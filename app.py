import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import RedisBackend, create_redis_client
from config import Settings, load_settings
from constants import DEFAULT_ROOM_ID, TRANSPORT_GATEWAY, TRANSPORT_LOCAL
from delivery import GatewayDeliverySink, LocalChannelHub, LocalDeliverySink
from errors import ChatError, StoreError
from logging_config import get_logger
from metrics import MetricsEmitter
from routers.chat import chat_router
from routers.dev import dev_router
from routers.gateway import gateway_router
from routers.health import health_router
from services.broadcast import BroadcastDispatcher
from services.change_feed import ChangeFeedConsumer
from services.connections import ConnectionLifecycleManager
from services.messages import MessageService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    backend = app.state.backend
    if not await backend.ping():
        raise StoreError(f"Redis unreachable at {settings.redis_host}:{settings.redis_port}")
    logger.info(f"Redis connected successfully to {settings.redis_host}:{settings.redis_port}")

    listener = None
    if settings.dispatch_enabled:
        consumer = ChangeFeedConsumer(
            backend,
            app.state.dispatcher,
            consumer_name=settings.dispatch_consumer_name,
            batch_size=settings.dispatch_batch_size,
            timeout=settings.dispatch_timeout_seconds,
            poll_timeout=settings.dispatch_poll_seconds,
            max_redeliveries=settings.dispatch_max_redeliveries,
            claim_idle_ms=settings.dispatch_claim_idle_ms,
        )
        listener = asyncio.create_task(consumer.run())
        logger.debug("Started change feed consumer")
    yield
    if listener:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        logger.debug("Cancelled change feed consumer")
    local_sink = app.state.dispatcher.local_sink
    if isinstance(local_sink, LocalDeliverySink):
        await local_sink.aclose()
    if app.state.owns_redis_client:
        await backend.close()


def create_app(settings: Optional[Settings] = None, redis_client=None, metrics: Optional[MetricsEmitter] = None,
               gateway_sink=None, local_sink=None) -> FastAPI:
    """Build the FastAPI app and wire the chat services onto `app.state`.

    Settings are validated here, before any traffic, so a bad environment
    fails the process at boot with a ConfigError.
    """
    settings = settings or load_settings()
    owns_redis_client = redis_client is None
    backend = RedisBackend(create_redis_client(settings) if owns_redis_client else redis_client)
    metrics = metrics or MetricsEmitter(settings.metrics_namespace, settings.stage)

    if gateway_sink is None and settings.transport == TRANSPORT_GATEWAY:
        gateway_sink = GatewayDeliverySink(settings.gateway_endpoint_url, settings.aws_region)
    if local_sink is None:
        local_sink = LocalDeliverySink(timeout=settings.local_push_timeout)

    app = FastAPI(title="EphemeralChat", version=settings.version, lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.backend = backend
    app.state.owns_redis_client = owns_redis_client
    app.state.metrics = metrics
    app.state.message_service = MessageService(backend)
    app.state.lifecycle = ConnectionLifecycleManager(
        backend, metrics, transport=settings.transport, ttl_seconds=settings.connection_ttl_seconds
    )
    app.state.dispatcher = BroadcastDispatcher(backend, metrics, gateway_sink=gateway_sink, local_sink=local_sink)
    app.state.channel_hub = LocalChannelHub()

    app.add_exception_handler(RequestValidationError, opaque_error_handler)
    app.add_exception_handler(ChatError, opaque_error_handler)

    app.include_router(health_router)
    app.include_router(chat_router)
    # Each intake path only exists for the transport its records are written with
    if settings.transport == TRANSPORT_GATEWAY:
        app.include_router(gateway_router)
    if settings.transport == TRANSPORT_LOCAL:
        app.include_router(dev_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info(f"FastAPI application initialized (mode={settings.mode}, transport={settings.transport})")
    return app


async def opaque_error_handler(request: Request, exc: Exception):
    logger.error(f"Request to {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


async def websocket_endpoint(
    websocket: WebSocket,
    room_id: Optional[str] = Query(None, alias="roomId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    username: Optional[str] = Query(None),
):
    """Development-mode socket: registry record plus an in-process outbound queue.

    Query parameters (all optional): roomId, userId, username.
    Inbound frames are logged and ignored; outbound frames are chat messages
    pushed through /dev/conn/{connectionId}/send.
    """
    state = websocket.app.state
    settings = state.settings
    if settings.transport != TRANSPORT_LOCAL:
        logger.info("WebSocket connection rejected: sockets are brokered by the managed gateway")
        await websocket.close(code=1008, reason="Use the managed gateway endpoint")
        return

    room = (room_id or "").strip().lower() or DEFAULT_ROOM_ID
    logger.info(f"WebSocket connection request: room={room}, user={user_id}, username={username}")
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    hub = state.channel_hub
    queue = await hub.register(room, connection_id)
    push_target = f"{settings.public_base_url}/dev/conn/{connection_id}/send"
    await state.lifecycle.on_connect(room, user_id, username, connection_id=connection_id, push_target=push_target)

    receive_task = None
    outbound_task = None
    try:
        await websocket.send_text(json.dumps({
            "type": "connected",
            "connectionId": connection_id,
            "roomId": room,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }))

        receive_task = asyncio.create_task(websocket.receive())
        outbound_task = asyncio.create_task(queue.get())
        while True:
            done, _ = await asyncio.wait({receive_task, outbound_task}, return_when=asyncio.FIRST_COMPLETED)
            if outbound_task in done:
                await websocket.send_text(outbound_task.result())
                outbound_task = asyncio.create_task(queue.get())
            if receive_task in done:
                message = receive_task.result()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                if message.get("text") is not None:
                    logger.info(f"Received WebSocket message from {connection_id} in room {room}: {message['text']}")
                else:
                    logger.info(f"Ignoring binary WebSocket frame from {connection_id} in room {room}")
                receive_task = asyncio.create_task(websocket.receive())
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id} in room {room}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id} in room {room}: {e}", exc_info=True)
    finally:
        for task in (receive_task, outbound_task):
            if task is not None and not task.done():
                task.cancel()
        await hub.close(connection_id)
        await state.lifecycle.on_disconnect(connection_id)
        await hub.unregister(connection_id)
        logger.info(f"Connection {connection_id} left room {room}")

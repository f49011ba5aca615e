import time
import uuid
from typing import Callable, Optional

from backend import RedisBackend
from constants import (
    DEFAULT_ROOM_ID,
    GATEWAY_DEFAULT_USER_ID,
    GATEWAY_DEFAULT_USERNAME,
    LOCAL_DEFAULT_USER_ID,
    LOCAL_DEFAULT_USERNAME,
    TRANSPORT_GATEWAY,
    UNKNOWN_ROOM_ID,
)
from errors import StoreError
from logging_config import get_logger
from metrics import MetricsEmitter
from schemas.chat import Connection

logger = get_logger(__name__)


def _clean(value: Optional[str]) -> str:
    return value.strip() if value else ""


class ConnectionLifecycleManager:
    """Registers sockets in the connection registry on open and removes them on close.

    Neither path ever fails the socket: registry errors are logged and counted
    as error metrics. On connect that keeps the handshake available; on
    disconnect it keeps clients from entering reconnect loops.
    """

    def __init__(self, backend: RedisBackend, metrics: MetricsEmitter, transport: str,
                 ttl_seconds: int, clock: Callable[[], float] = None):
        self.backend = backend
        self.metrics = metrics
        self.transport = transport
        self.ttl_seconds = ttl_seconds
        self.clock = clock or time.time

    async def on_connect(self, room_id: Optional[str] = None, user_id: Optional[str] = None,
                   username: Optional[str] = None, connection_id: Optional[str] = None,
                   push_target: Optional[str] = None) -> str:
        if self.transport == TRANSPORT_GATEWAY:
            default_user_id, default_username = GATEWAY_DEFAULT_USER_ID, GATEWAY_DEFAULT_USERNAME
        else:
            default_user_id, default_username = LOCAL_DEFAULT_USER_ID, LOCAL_DEFAULT_USERNAME

        # Same normalization as message room ids, or fan-out would never match
        room_id = _clean(room_id).lower() or DEFAULT_ROOM_ID
        user_id = _clean(user_id) or default_user_id
        username = _clean(username) or default_username
        connection_id = connection_id or str(uuid.uuid4())
        # Gateway connections are addressed by their own id
        push_target = push_target or connection_id

        now = self.clock()
        record = Connection(
            connection_id=connection_id,
            room_id=room_id,
            user_id=user_id,
            username=username,
            transport=self.transport,
            push_target=push_target,
            connected_at=int(now * 1000),
            expires_at=int(now) + self.ttl_seconds,
        )

        logger.info(f"Connecting user '{username}' to room '{room_id}' with connectionId: {connection_id}")
        try:
            await self.backend.put_connection(record.model_dump(), ttl=self.ttl_seconds)
        except StoreError as e:
            logger.error(f"Failed to store connection {connection_id}: {e}")
            self.metrics.emit_error("ConnectionErrors", room_id)
            return connection_id

        logger.info(f"Successfully stored connection {connection_id} for user {username} in room {room_id}")
        self.metrics.emit_connection_event("connect", room_id)
        return connection_id

    async def on_disconnect(self, connection_id: str) -> bool:
        logger.info(f"Disconnecting connectionId: {connection_id}")

        room_id = UNKNOWN_ROOM_ID
        try:
            record = await self.backend.get_connection(connection_id)
            if record and record.get("room_id"):
                room_id = record["room_id"]
        except StoreError as e:
            logger.warning(f"Could not look up connection {connection_id} before delete: {e}")

        try:
            await self.backend.delete_connection(connection_id, None if room_id == UNKNOWN_ROOM_ID else room_id)
        except StoreError as e:
            logger.error(f"Failed to remove connection {connection_id}: {e}")
            self.metrics.emit_error("DisconnectionErrors", room_id)
            return True

        logger.info(f"Successfully removed connection {connection_id}")
        self.metrics.emit_connection_event("disconnect", room_id)
        return True

import asyncio
import functools
from typing import Dict, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from errors import StaleConnectionError, TransientDeliveryError
from logging_config import get_logger

logger = get_logger(__name__)

PUSH_OK = "ok"
PUSH_NOT_FOUND = "not_found"
PUSH_GONE = "gone"


class GatewayDeliverySink:
    """Pushes bytes to sockets held by the managed WebSocket gateway.

    Uses the API Gateway Management API. A `GoneException` means the gateway
    has already dropped the socket and surfaces as StaleConnectionError; any
    other failure is a TransientDeliveryError.
    """

    def __init__(self, endpoint_url: Optional[str] = None, region: Optional[str] = None, client=None):
        self.endpoint_url = endpoint_url
        self.region = region
        self._client = client

    def _get_client(self):
        if self._client is None:
            kwargs = {"endpoint_url": self.endpoint_url}
            if self.region:
                kwargs["region_name"] = self.region
            self._client = boto3.client("apigatewaymanagementapi", **kwargs)
            logger.info(f"Created gateway management client for {self.endpoint_url}")
        return self._client

    async def deliver(self, connection_id: str, data: bytes):
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            # boto3 is blocking; keep it off the event loop
            await loop.run_in_executor(
                None, functools.partial(client.post_to_connection, ConnectionId=connection_id, Data=data)
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code")
            if error_code == "GoneException":
                raise StaleConnectionError(f"Gateway connection {connection_id} is gone", target=connection_id) from e
            raise TransientDeliveryError(f"Gateway push failed with {error_code}", target=connection_id) from e
        except BotoCoreError as e:
            raise TransientDeliveryError(f"Gateway push failed: {e}", target=connection_id) from e
        logger.debug(f"Sent via gateway to connection {connection_id}")


class LocalDeliverySink:
    """POSTs JSON payloads to a local push URL and returns the HTTP status."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def deliver(self, push_target: str, payload: dict) -> int:
        try:
            response = await self._get_client().post(push_target, json=payload)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"HTTP error sending to {push_target}: {e}", target=push_target) from e
        return response.status_code

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LocalChannelHub:
    """In-process socket channels for development mode.

    Format: {room_id: {connection_id: queue}}. The push endpoint looks a
    connection up here and enqueues the payload; the socket task drains its
    queue. Every access goes through one lock.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._rooms: Dict[str, Dict[str, asyncio.Queue]] = {}
        self._connection_rooms: Dict[str, str] = {}
        self._closing = set()
        self._lock = asyncio.Lock()

    async def register(self, room_id: str, connection_id: str) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.queue_size)
        async with self._lock:
            if room_id not in self._rooms:
                self._rooms[room_id] = {}
                logger.debug(f"Created local channel for room {room_id}")
            self._rooms[room_id][connection_id] = queue
            self._connection_rooms[connection_id] = room_id
        logger.debug(f"Added connection {connection_id} to room {room_id} (local connections: {len(self._rooms[room_id])})")
        return queue

    async def close(self, connection_id: str):
        """Mark a connection as closing; pushes to it now answer `gone`."""
        async with self._lock:
            if connection_id in self._connection_rooms:
                self._closing.add(connection_id)

    async def unregister(self, connection_id: str):
        async with self._lock:
            self._closing.discard(connection_id)
            room_id = self._connection_rooms.pop(connection_id, None)
            if room_id is None:
                return
            room = self._rooms.get(room_id, {})
            room.pop(connection_id, None)
            if not room:
                self._rooms.pop(room_id, None)
                logger.info(f"No more local connections in room {room_id}, cleaning up")

    async def push(self, connection_id: str, payload: str) -> str:
        async with self._lock:
            room_id = self._connection_rooms.get(connection_id)
            if room_id is None:
                return PUSH_NOT_FOUND
            if connection_id in self._closing:
                return PUSH_GONE
            queue = self._rooms[room_id][connection_id]
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for connection {connection_id} in room {room_id}")
            return PUSH_GONE
        return PUSH_OK

    async def connection_count(self, room_id: str) -> int:
        async with self._lock:
            return len(self._rooms.get(room_id, {}))

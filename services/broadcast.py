import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional

from backend import RedisBackend
from constants import EVENT_INSERT, STALE_STATUS_CODES, TRANSPORT_GATEWAY, TRANSPORT_LOCAL, UNKNOWN_USER_ID
from errors import DeliveryError, StaleConnectionError, StoreError, ValidationError
from logging_config import get_logger
from metrics import MetricsEmitter
from schemas.chat import ChatMessage
from services.messages import millis_to_datetime

logger = get_logger(__name__)

DELIVERED = "delivered"
STALE = "stale"
FAILED = "failed"
SKIPPED = "skipped"

REQUIRED_STRING_FIELDS = ("room_id", "id", "username", "message_text")


@dataclass
class DeliveryResult:
    connection_id: str
    outcome: str
    pruned: bool = False
    error: Optional[str] = None


@dataclass
class RecordResult:
    status: str  # broadcast | skipped | failed
    message_id: Optional[str] = None
    room_id: Optional[str] = None
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    pruned: List[str] = field(default_factory=list)
    error: Optional[str] = None


def _string_attr(image: dict, name: str) -> Optional[str]:
    value = image.get(name)
    if isinstance(value, dict) and isinstance(value.get("S"), str):
        return value["S"]
    return None


def parse_new_image(record: dict) -> ChatMessage:
    """Turn a change record's new image into the outbound chat message.

    Raises ValidationError when the image or one of its required fields is
    missing or malformed.
    """
    stream_record = record.get("dynamodb")
    if not isinstance(stream_record, dict):
        raise ValidationError("No dynamodb data in record")
    image = stream_record.get("NewImage")
    if not isinstance(image, dict):
        raise ValidationError("No NewImage in record")

    values = {}
    for name in REQUIRED_STRING_FIELDS:
        value = _string_attr(image, name)
        if value is None:
            raise ValidationError(f"Missing {name}")
        values[name] = value

    ts_attr = image.get("ts")
    try:
        ts = int(ts_attr["N"])
    except (TypeError, KeyError, ValueError):
        raise ValidationError("Missing or invalid ts")

    return ChatMessage(
        id=values["id"],
        room_id=values["room_id"],
        user_id=_string_attr(image, "user_id") or UNKNOWN_USER_ID,
        username=values["username"],
        text=values["message_text"],
        created_at=millis_to_datetime(ts),
        client_message_id=_string_attr(image, "client_message_id"),
    )


class BroadcastDispatcher:
    """Fans newly inserted messages out to every live connection in their room.

    Each change record is handled on its own: a malformed record or a store
    outage fails that record only, and the rest of the batch still runs.
    Within a record, deliveries run concurrently and a failed recipient never
    blocks the others. Connections found stale during delivery are deleted
    from the registry on the spot, since nothing else checks whether they are still live.
    """

    def __init__(self, backend: RedisBackend, metrics: MetricsEmitter, gateway_sink=None, local_sink=None):
        self.backend = backend
        self.metrics = metrics
        self.gateway_sink = gateway_sink
        self.local_sink = local_sink

    async def handle_stream_event(self, event: dict) -> dict:
        records = event.get("Records") or []
        logger.info(f"Change stream event with {len(records)} records")
        results = await self.dispatch_batch(records)
        return {"statusCode": 200, "results": [asdict(result) for result in results]}

    async def dispatch_batch(self, records: Iterable[dict]) -> List[RecordResult]:
        results = []
        for record in records:
            try:
                result = await self.process_record(record)
            except Exception as e:
                logger.error(f"Failed to process record: {e}", exc_info=True)
                result = RecordResult(status="failed", error=str(e))
            results.append(result)
        return results

    async def process_record(self, record: dict) -> RecordResult:
        event_name = record.get("eventName")
        if event_name != EVENT_INSERT:
            logger.info(f"Skipping event: {event_name}")
            return RecordResult(status="skipped")

        try:
            message = parse_new_image(record)
        except ValidationError as e:
            logger.error(f"Failed to process record: {e}")
            return RecordResult(status="failed", error=str(e))

        room_id = message.room_id
        payload = message.to_payload()
        data = json.dumps(payload).encode("utf-8")
        logger.info(f"Broadcasting message {message.id} to room {room_id}")

        started = time.monotonic()
        try:
            connections = await self.backend.get_room_connections(room_id)
        except StoreError as e:
            logger.error(f"Failed to look up connections for room {room_id}: {e}")
            return RecordResult(status="failed", message_id=message.id, room_id=room_id, error=str(e))
        logger.info(f"Found {len(connections)} connections in room {room_id}")

        outcomes = await asyncio.gather(
            *(self._deliver(connection, room_id, payload, data) for connection in connections),
            return_exceptions=True,
        )

        result = RecordResult(status="broadcast", message_id=message.id, room_id=room_id)
        for connection, outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected delivery error for {connection.get('connection_id')}: {outcome}")
                outcome = DeliveryResult(connection.get("connection_id", ""), FAILED, error=str(outcome))
            if outcome.outcome == SKIPPED:
                continue
            result.attempts += 1
            if outcome.outcome == DELIVERED:
                result.successes += 1
            if outcome.pruned:
                result.pruned.append(outcome.connection_id)
        result.failures = result.attempts - result.successes

        self.metrics.emit_message_sent(room_id, len(message.text))
        self.metrics.emit_message_broadcast(room_id, result.attempts, result.successes)
        self.metrics.emit_duration_ms("BroadcastDuration", (time.monotonic() - started) * 1000, {"RoomId": room_id})

        logger.info(
            f"Finished broadcasting message {message.id} to room {room_id}: "
            f"{result.successes}/{result.attempts} delivered, {len(result.pruned)} pruned"
        )
        return result

    async def _deliver(self, connection: Dict[str, str], room_id: str, payload: dict, data: bytes) -> DeliveryResult:
        connection_id = connection.get("connection_id")
        # Records written before transports existed were all gateway sockets
        transport = connection.get("transport") or TRANSPORT_GATEWAY
        if not connection_id:
            logger.error(f"Skipping connection record without connection_id in room {room_id}")
            return DeliveryResult("", SKIPPED)

        if transport == TRANSPORT_GATEWAY:
            return await self._deliver_gateway(connection_id, connection.get("push_target") or connection_id, room_id, data)
        if transport == TRANSPORT_LOCAL:
            return await self._deliver_local(connection_id, connection.get("push_target"), room_id, payload)

        logger.info(f"Skipping connection {connection_id} with unknown transport: {transport}")
        return DeliveryResult(connection_id, SKIPPED)

    async def _deliver_gateway(self, connection_id: str, target: str, room_id: str, data: bytes) -> DeliveryResult:
        if self.gateway_sink is None:
            logger.error(f"No gateway sink configured; cannot reach connection {connection_id}")
            return DeliveryResult(connection_id, FAILED, error="gateway sink not configured")
        try:
            await self.gateway_sink.deliver(target, data)
        except StaleConnectionError as e:
            logger.info(f"Removing stale connection {connection_id}: {e}")
            return DeliveryResult(connection_id, STALE, pruned=await self._prune(connection_id, room_id), error=str(e))
        except DeliveryError as e:
            logger.error(f"Failed to send via gateway to {connection_id}: {e}")
            return DeliveryResult(connection_id, FAILED, error=str(e))
        logger.info(f"Sent via gateway to connection {connection_id}")
        return DeliveryResult(connection_id, DELIVERED)

    async def _deliver_local(self, connection_id: str, push_target: Optional[str], room_id: str, payload: dict) -> DeliveryResult:
        if not push_target:
            logger.error(f"Missing push_target for local connection {connection_id}")
            return DeliveryResult(connection_id, FAILED, error="missing push_target")
        if self.local_sink is None:
            logger.error(f"No local sink configured; cannot reach connection {connection_id}")
            return DeliveryResult(connection_id, FAILED, error="local sink not configured")
        try:
            status = await self.local_sink.deliver(push_target, payload)
        except DeliveryError as e:
            logger.error(f"Failed to send to local push target {push_target}: {e}")
            return DeliveryResult(connection_id, FAILED, error=str(e))

        if 200 <= status < 300:
            logger.info(f"Sent via local push target to {push_target}")
            return DeliveryResult(connection_id, DELIVERED)
        if status in STALE_STATUS_CODES:
            logger.info(f"Removing stale connection {connection_id} (push target answered {status})")
            return DeliveryResult(connection_id, STALE, pruned=await self._prune(connection_id, room_id), error=f"status {status}")
        logger.error(f"Local push target {push_target} responded with status {status}")
        return DeliveryResult(connection_id, FAILED, error=f"status {status}")

    async def _prune(self, connection_id: str, room_id: str) -> bool:
        try:
            await self.backend.delete_connection(connection_id, room_id)
        except StoreError as e:
            logger.error(f"Failed to delete stale connection {connection_id}: {e}")
            return False
        return True

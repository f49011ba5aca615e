import json
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

import redis
import redis.asyncio as aioredis

from constants import CHANGES_STREAM_MAXLEN
from errors import StoreError
from logging_config import get_logger
from redis_keys import (
    REDIS_CHANGES_GROUP,
    REDIS_CHANGES_STREAM,
    REDIS_CONN_KEY,
    REDIS_MESSAGE_KEY,
    REDIS_ROOM_CONNS_KEY,
    REDIS_ROOM_KEY,
    REDIS_ROOM_MESSAGES_KEY,
)

logger = get_logger(__name__)


def create_redis_client(settings) -> aioredis.Redis:
    # Connections are opened lazily; the app lifespan verifies reachability
    client = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        decode_responses=True,
    )
    logger.info(f"Redis client created for {settings.redis_host}:{settings.redis_port}")
    return client


@asynccontextmanager
async def _store_call(action: str):
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis error during {action}: {e}", exc_info=True)
        raise StoreError(f"Failed to {action}") from e


def _parse_change_entries(entries) -> List[Tuple[str, Optional[dict]]]:
    """(entry id, record) pairs; record is None for trimmed or unreadable entries."""
    parsed = []
    for entry_id, fields in entries or []:
        record = None
        if fields and "record" in fields:
            try:
                record = json.loads(fields["record"])
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing change record {entry_id}: {e}")
        parsed.append((entry_id, record))
    return parsed


class RedisBackend:
    """Rooms, messages, the connection registry and the change stream, all kept in Redis.

    Values are stored as string hashes (decode_responses=True). Room messages
    are indexed by a sorted set scored by their millisecond timestamp; live
    connections are indexed per room by a plain set. Every call is awaited on
    the redis asyncio client, so a slow round-trip never holds the event loop.
    """

    def __init__(self, redis_client: aioredis.Redis):
        self.redis_client = redis_client

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self):
        await self.redis_client.aclose()
        logger.debug("Closed Redis client")

    # --- Rooms ---

    async def create_room_if_absent(self, room_id: str, room_data: dict) -> bool:
        """Create the room unless it exists. Returns True only for the winning creator.

        The `id` field and the room attributes go out in one MULTI, every one
        as HSETNX: the winner writes the whole hash atomically and losers
        change nothing.
        """
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        async with _store_call(f"create room {room_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(key, "id", room_id)
                for field, value in room_data.items():
                    if value is not None:
                        pipe.hsetnx(key, field, str(value))
                results = await pipe.execute()
        created = bool(results[0])
        if created:
            logger.info(f"Created new room: {room_id}")
        else:
            logger.debug(f"Room {room_id} already exists")
        return created

    async def get_room(self, room_id: str) -> Optional[Dict[str, str]]:
        logger.debug(f"Fetching room {room_id}")
        async with _store_call(f"fetch room {room_id}"):
            room_data = await self.redis_client.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        return room_data or None

    # --- Messages ---

    async def save_message(self, message_item: Dict[str, str]):
        """Persist a message hash and index it in its room by `ts`."""
        message_id = message_item["id"]
        room_id = message_item["room_id"]
        async with _store_call(f"store message {message_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(REDIS_MESSAGE_KEY.format(message_id=message_id), mapping=message_item)
                pipe.zadd(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), {message_id: int(message_item["ts"])})
                await pipe.execute()
        logger.info(f"Stored message {message_id} in room {room_id}")

    async def get_room_messages(self, room_id: str, limit: int) -> List[Dict[str, str]]:
        """Oldest `limit` messages of a room, ascending by timestamp."""
        async with _store_call(f"query messages for room {room_id}"):
            message_ids = await self.redis_client.zrange(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), 0, limit - 1)
            if not message_ids:
                return []
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for message_id in message_ids:
                    pipe.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
                items = await pipe.execute()
        return [item for item in items if item]

    # --- Connection registry ---

    async def put_connection(self, record: Dict[str, str], ttl: int):
        connection_id = record["connection_id"]
        room_id = record["room_id"]
        conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
        room_conns_key = REDIS_ROOM_CONNS_KEY.format(room_id=room_id)
        async with _store_call(f"store connection {connection_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(conn_key, mapping={k: str(v) for k, v in record.items()})
                pipe.expire(conn_key, ttl)
                pipe.sadd(room_conns_key, connection_id)
                # The index outlives each member's record by at most one TTL
                pipe.expire(room_conns_key, ttl)
                await pipe.execute()
        logger.debug(f"Stored connection {connection_id} in room {room_id} with TTL {ttl}")

    async def get_connection(self, connection_id: str) -> Optional[Dict[str, str]]:
        async with _store_call(f"fetch connection {connection_id}"):
            record = await self.redis_client.hgetall(REDIS_CONN_KEY.format(connection_id=connection_id))
        return record or None

    async def delete_connection(self, connection_id: str, room_id: Optional[str] = None) -> bool:
        """Remove a connection record. Deleting an absent key is a no-op."""
        async with _store_call(f"delete connection {connection_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
                if room_id:
                    pipe.srem(REDIS_ROOM_CONNS_KEY.format(room_id=room_id), connection_id)
                results = await pipe.execute()
        logger.debug(f"Connection {connection_id} removed: record={results[0]}")
        return bool(results[0])

    async def get_room_connections(self, room_id: str) -> List[Dict[str, str]]:
        """Snapshot of the live connection records indexed under a room.

        Ids whose record has expired are dropped from the index on the way.
        """
        room_conns_key = REDIS_ROOM_CONNS_KEY.format(room_id=room_id)
        async with _store_call(f"query connections for room {room_id}"):
            connection_ids = sorted(await self.redis_client.smembers(room_conns_key))
            if not connection_ids:
                return []
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for connection_id in connection_ids:
                    pipe.hgetall(REDIS_CONN_KEY.format(connection_id=connection_id))
                records = await pipe.execute()

        live = []
        expired = []
        for connection_id, record in zip(connection_ids, records):
            if record:
                live.append(record)
            else:
                expired.append(connection_id)
        if expired:
            try:
                await self.redis_client.srem(room_conns_key, *expired)
                logger.debug(f"Dropped {len(expired)} expired connection ids from room {room_id} index")
            except redis.RedisError as e:
                logger.warning(f"Could not drop expired connection ids from room {room_id}: {e}")
        logger.debug(f"Room {room_id} has {len(live)} live connections")
        return live

    # --- Change stream ---

    async def publish_change(self, record: dict) -> str:
        """Append a change record to the message change stream."""
        async with _store_call("publish change record"):
            entry_id = await self.redis_client.xadd(
                REDIS_CHANGES_STREAM,
                {"record": json.dumps(record)},
                maxlen=CHANGES_STREAM_MAXLEN,
                approximate=True,
            )
        logger.debug(f"Published change record {entry_id} to {REDIS_CHANGES_STREAM}")
        return entry_id

    async def ensure_change_group(self, group: str = REDIS_CHANGES_GROUP):
        """Create the consumer group (and the stream) unless it exists.

        The group starts at the beginning of the stream, so records published
        before the first consumer came up are still dispatched.
        """
        try:
            await self.redis_client.xgroup_create(REDIS_CHANGES_STREAM, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} on {REDIS_CHANGES_STREAM}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                logger.error(f"Failed to create consumer group {group}: {e}", exc_info=True)
                raise StoreError(f"Failed to create consumer group {group}") from e
            logger.debug(f"Consumer group {group} already exists")
        except redis.RedisError as e:
            logger.error(f"Failed to create consumer group {group}: {e}", exc_info=True)
            raise StoreError(f"Failed to create consumer group {group}") from e

    async def read_changes(self, consumer: str, count: int, block_ms: Optional[int] = None,
                           pending: bool = False, group: str = REDIS_CHANGES_GROUP) -> List[Tuple[str, Optional[dict]]]:
        """Read change entries for `consumer` in the group.

        pending=True re-reads entries already delivered to this consumer but
        not yet acknowledged; otherwise only new entries are read, waiting up
        to `block_ms` for the first one (None means do not wait).
        """
        stream_id = "0" if pending else ">"
        async with _store_call(f"read changes for {consumer}"):
            response = await self.redis_client.xreadgroup(
                group, consumer, {REDIS_CHANGES_STREAM: stream_id}, count=count, block=None if pending else block_ms
            )
        entries = []
        for _stream, stream_entries in response or []:
            entries.extend(_parse_change_entries(stream_entries))
        return entries

    async def ack_changes(self, entry_ids: List[str], group: str = REDIS_CHANGES_GROUP) -> int:
        if not entry_ids:
            return 0
        async with _store_call(f"acknowledge {len(entry_ids)} change records"):
            acked = await self.redis_client.xack(REDIS_CHANGES_STREAM, group, *entry_ids)
        logger.debug(f"Acknowledged {acked} change records")
        return acked

    async def claim_stale_changes(self, consumer: str, min_idle_ms: int, count: int,
                                  group: str = REDIS_CHANGES_GROUP) -> int:
        """Take over entries another consumer left unacknowledged for `min_idle_ms`.

        Claimed entries join `consumer`'s pending list and are picked up by its
        next pending read.
        """
        async with _store_call(f"claim stale changes for {consumer}"):
            response = await self.redis_client.xautoclaim(
                REDIS_CHANGES_STREAM, group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=count
            )
        claimed = len(response[1]) if response and len(response) > 1 else 0
        if claimed:
            logger.info(f"Claimed {claimed} stale change records for {consumer}")
        return claimed

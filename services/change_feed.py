import asyncio
from typing import Dict, List, Optional, Tuple

from backend import RedisBackend
from errors import StoreError
from logging_config import get_logger
from services.broadcast import BroadcastDispatcher, RecordResult

logger = get_logger(__name__)


async def run_dispatch(dispatcher: BroadcastDispatcher, records: List[dict], timeout: float) -> Optional[List[RecordResult]]:
    """Dispatch one batch under a wall-clock budget.

    On timeout the batch is abandoned as is and None is returned; its entries
    stay unacknowledged and are read again.
    """
    try:
        return await asyncio.wait_for(dispatcher.dispatch_batch(records), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Dispatch of {len(records)} change records exceeded {timeout}s, abandoning batch")
        return None


class ChangeFeedConsumer:
    """Feeds message change records from the Redis stream to the broadcast dispatcher.

    Each app instance is one consumer in a shared group, so a record is
    dispatched by one instance. Entries are acknowledged only after the batch
    holding them was dispatched; an abandoned batch stays pending and is
    re-read before anything new. Entries left pending by a dead consumer are
    claimed once they have been idle for `claim_idle_ms`.
    """

    def __init__(self, backend: RedisBackend, dispatcher: BroadcastDispatcher, consumer_name: str,
                 batch_size: int, timeout: float, poll_timeout: float = 1.0,
                 max_redeliveries: int = 3, claim_idle_ms: int = 60000):
        self.backend = backend
        self.dispatcher = dispatcher
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.timeout = timeout
        self.poll_timeout = poll_timeout
        self.max_redeliveries = max_redeliveries
        self.claim_idle_ms = claim_idle_ms
        # entry id -> number of abandoned dispatches
        self._abandoned: Dict[str, int] = {}

    async def read_batch(self) -> List[Tuple[str, Optional[dict]]]:
        """Own pending entries first, then new ones (waiting up to poll_timeout)."""
        entries = await self.backend.read_changes(self.consumer_name, self.batch_size, pending=True)
        if entries:
            logger.debug(f"Re-reading {len(entries)} pending change records")
            return entries
        block_ms = int(self.poll_timeout * 1000) or None
        return await self.backend.read_changes(self.consumer_name, self.batch_size, block_ms=block_ms)

    async def process_batch(self, entries: List[Tuple[str, Optional[dict]]]) -> Optional[List[RecordResult]]:
        entry_ids = [entry_id for entry_id, _ in entries]
        records = [record for _, record in entries if record is not None]

        results = await run_dispatch(self.dispatcher, records, self.timeout) if records else []
        if results is not None:
            await self.backend.ack_changes(entry_ids)
            for entry_id in entry_ids:
                self._abandoned.pop(entry_id, None)
            return results

        exhausted = []
        for entry_id in entry_ids:
            self._abandoned[entry_id] = self._abandoned.get(entry_id, 0) + 1
            if self._abandoned[entry_id] > self.max_redeliveries:
                exhausted.append(entry_id)
        if exhausted:
            logger.error(f"Dropping {len(exhausted)} change records after {self.max_redeliveries} redeliveries: {exhausted}")
            await self.backend.ack_changes(exhausted)
            for entry_id in exhausted:
                self._abandoned.pop(entry_id, None)
        return None

    async def run(self):
        logger.info(f"Starting change feed consumer {self.consumer_name}")
        try:
            while True:
                try:
                    await self.backend.ensure_change_group()
                    break
                except StoreError as e:
                    logger.error(f"Change feed group unavailable, retrying: {e}")
                    await asyncio.sleep(self.poll_timeout)

            while True:
                try:
                    entries = await self.read_batch()
                    if not entries:
                        if self.claim_idle_ms:
                            await self.backend.claim_stale_changes(self.consumer_name, self.claim_idle_ms, self.batch_size)
                        continue
                    logger.debug(f"Received {len(entries)} change records")
                    await self.process_batch(entries)
                except StoreError as e:
                    logger.error(f"Error in change feed read: {e}")
                    await asyncio.sleep(self.poll_timeout)
        except asyncio.CancelledError:
            logger.info(f"Change feed consumer {self.consumer_name} cancelled")
            raise

"""
Change feed over the message store, and the consumer that drives fanout.

The feed is partitioned by room. Each partition keeps a durable cursor (the
last committed message seq). A batch is read past the cursor, handed to the
fanout engine, and the cursor is committed only when the batch succeeds, so a
failed batch is redelivered in full (at-least-once).

Only one worker processes a given partition at a time; partitions run
concurrently. No ordering is implied between different rooms.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.errors import StoreUnavailable
from chatrelay.fanout import FanoutEngine
from chatrelay.metrics import record_connection_event, record_feed_batch
from chatrelay.models import ChatMessage, FeedCursor
from chatrelay.registry import ConnectionRegistry
from chatrelay.schemas import ChatMessageResponse
from chatrelay.storage import SessionLocal, store_errors
from chatrelay.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FeedBatch:
    partition: str
    messages: List[ChatMessageResponse]
    start_position: int
    end_position: int


class ChangeFeed:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        batch_size: int = settings.FEED_BATCH_SIZE,
    ):
        self._session_factory = session_factory
        self.batch_size = batch_size

    def position(self, partition: str) -> int:
        with store_errors("feed.position"), self._session_factory() as db:
            cursor = db.get(FeedCursor, partition)
            return cursor.position if cursor is not None else 0

    def pending_partitions(self) -> List[str]:
        """Rooms with messages past their committed cursor."""
        with store_errors("feed.pending_partitions"), self._session_factory() as db:
            rows = (
                db.query(ChatMessage.room_id)
                .outerjoin(FeedCursor, FeedCursor.partition == ChatMessage.room_id)
                .group_by(ChatMessage.room_id)
                .having(func.max(ChatMessage.seq) > func.coalesce(func.max(FeedCursor.position), 0))
                .order_by(ChatMessage.room_id.asc())
                .all()
            )
            return [row.room_id for row in rows]

    def read_batch(self, partition: str) -> Optional[FeedBatch]:
        """Next batch past the cursor, in append order, or None when caught up."""
        with store_errors("feed.read_batch"), self._session_factory() as db:
            cursor = db.get(FeedCursor, partition)
            start = cursor.position if cursor is not None else 0
            rows = (
                db.query(ChatMessage)
                .filter(ChatMessage.room_id == partition, ChatMessage.seq > start)
                .order_by(ChatMessage.seq.asc())
                .limit(self.batch_size)
                .all()
            )
            if not rows:
                return None
            return FeedBatch(
                partition=partition,
                messages=[ChatMessageResponse.model_validate(row) for row in rows],
                start_position=start,
                end_position=rows[-1].seq,
            )

    def commit(self, batch: FeedBatch) -> None:
        """Advance the partition cursor past a successfully processed batch."""
        with store_errors("feed.commit"), self._session_factory() as db:
            cursor = db.get(FeedCursor, batch.partition)
            if cursor is None:
                db.add(FeedCursor(
                    partition=batch.partition,
                    position=batch.end_position,
                    updated_at=to_iso(utc_now()),
                ))
            elif cursor.position < batch.end_position:
                cursor.position = batch.end_position
                cursor.updated_at = to_iso(utc_now())
            db.commit()


class FeedConsumer:
    """
    Polls the change feed and hands batches to the fanout engine.

    run() loops until stop(); notify() wakes it early after an append.
    Expired registry rows are reaped on a slower interval.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        engine: FanoutEngine,
        registry: ConnectionRegistry,
        poll_interval: float = settings.FEED_POLL_INTERVAL_SECONDS,
        reap_interval: float = settings.CONNECTION_REAP_INTERVAL_SECONDS,
    ):
        self.feed = feed
        self.engine = engine
        self.registry = registry
        self.poll_interval = poll_interval
        self.reap_interval = reap_interval
        self._partition_locks: Dict[str, asyncio.Lock] = {}
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    def notify(self) -> None:
        self._wakeup.set()

    async def process_partition(self, partition: str) -> bool:
        """
        Process one batch of a partition under its lock.

        Returns:
            True if a batch was committed
        """
        lock = self._partition_locks.setdefault(partition, asyncio.Lock())
        async with lock:
            try:
                batch = self.feed.read_batch(partition)
                if batch is None:
                    return False
                await self.engine.process_batch(batch.messages)
                self.feed.commit(batch)
            except StoreUnavailable as e:
                record_feed_batch("failed")
                logger.error(
                    f"Batch failed for partition {partition}, will be redelivered: {e.detail}",
                    extra={"partition": partition},
                )
                return False

        record_feed_batch("committed")
        logger.debug(
            f"Committed partition {partition} through seq {batch.end_position}",
            extra={"partition": partition, "messages": len(batch.messages)},
        )
        return True

    async def run_once(self) -> int:
        """One pass over every pending partition. Returns batches committed."""
        try:
            partitions = self.feed.pending_partitions()
        except StoreUnavailable:
            return 0
        if not partitions:
            return 0
        committed = await asyncio.gather(*(self.process_partition(p) for p in partitions))
        return sum(1 for ok in committed if ok)

    async def drain(self, max_passes: int = 100) -> int:
        """Run passes until the feed is caught up. Returns batches committed."""
        total = 0
        for _ in range(max_passes):
            committed = await self.run_once()
            if not committed:
                break
            total += committed
        return total

    def reap(self) -> int:
        try:
            removed = self.registry.reap_expired()
        except StoreUnavailable:
            return 0
        if removed:
            record_connection_event("reaped", removed)
        return removed

    async def run(self) -> None:
        logger.info("Feed consumer started")
        loop = asyncio.get_running_loop()
        next_reap = loop.time() + self.reap_interval
        while not self._stopping:
            try:
                committed = await self.run_once()
            except Exception:
                logger.exception("Feed pass failed")
                committed = 0
            if loop.time() >= next_reap:
                self.reap()
                next_reap = loop.time() + self.reap_interval
            if committed:
                # More may be waiting behind a full batch
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
        logger.info("Feed consumer stopped")

    def start(self) -> asyncio.Task:
        self._stopping = False
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None

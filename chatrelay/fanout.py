"""
Fanout engine: delivers each newly appended message to every connection
subscribed to its room.

Per message: RECEIVED -> CONNECTIONS_RESOLVED -> DELIVERING -> DONE. There is
no failed state at the message level. Deliveries to individual connections
succeed, get pruned, or get dropped independently:

- ConnectionGone is proof of death: the registry row is deleted at once and
  the delivery is never retried.
- TransientDeliveryError (including timeouts) is retried with exponential
  backoff up to DELIVERY_MAX_ATTEMPTS, then dropped and logged. It is never
  handed back to the feed.
- A send that times out is abandoned, not cancelled: it keeps running in
  the background while the retry goes ahead.
- A registry lookup failure raises StoreUnavailable out of process_batch, so
  the feed redelivers the whole batch.

Redelivered batches are delivered again. Clients deduplicate by message id.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Set

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chatrelay.config import settings
from chatrelay.errors import ConnectionGone, StoreUnavailable, TransientDeliveryError
from chatrelay.metrics import record_connection_event, record_delivery_outcome
from chatrelay.registry import ConnectionRegistry
from chatrelay.schemas import ChatMessageResponse, ConnectionInfo
from chatrelay.transport import Transport

logger = logging.getLogger(__name__)


class FanoutState(str, Enum):
    RECEIVED = "received"
    CONNECTIONS_RESOLVED = "connections_resolved"
    DELIVERING = "delivering"
    DONE = "done"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    PRUNED = "pruned"
    DROPPED = "dropped"


@dataclass
class FanoutResult:
    message_id: str
    room_id: str
    state: FanoutState = FanoutState.RECEIVED
    attempted: int = 0
    delivered: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


class FanoutEngine:
    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: Transport,
        max_width: int = settings.FANOUT_MAX_WIDTH,
        delivery_timeout: float = settings.DELIVERY_TIMEOUT_SECONDS,
        max_attempts: int = settings.DELIVERY_MAX_ATTEMPTS,
        backoff: float = settings.DELIVERY_BACKOFF_SECONDS,
        backoff_max: float = settings.DELIVERY_BACKOFF_MAX_SECONDS,
    ):
        self.registry = registry
        self.transport = transport
        self.max_width = max(1, max_width)
        self.delivery_timeout = delivery_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._abandoned: Set[asyncio.Future] = set()

    async def process_batch(self, messages: List[ChatMessageResponse]) -> List[FanoutResult]:
        """
        Fan out a change-feed batch in feed order.

        Raises:
            StoreUnavailable: the connection set of some message could not be
                determined; the batch must be redelivered
        """
        results = []
        for message in messages:
            results.append(await self.fanout(message))
        return results

    async def fanout(self, message: ChatMessageResponse) -> FanoutResult:
        result = FanoutResult(message_id=message.id, room_id=message.room_id)

        try:
            connections = list(self.registry.get_by_room(message.room_id))
        except StoreUnavailable:
            logger.error(
                f"Connection lookup failed for message {message.id}",
                extra={"room_id": message.room_id, "message_id": message.id},
            )
            raise
        result.state = FanoutState.CONNECTIONS_RESOLVED

        if not connections:
            result.state = FanoutState.DONE
            logger.debug(f"No connections in room {message.room_id} for message {message.id}")
            return result

        payload = message.model_dump_json()
        result.state = FanoutState.DELIVERING
        result.attempted = len(connections)

        # Bounded pool: one slot per connection, capped at max_width
        slots = asyncio.Semaphore(min(len(connections), self.max_width))

        async def deliver(connection: ConnectionInfo) -> DeliveryOutcome:
            async with slots:
                return await self._deliver(connection, payload)

        outcomes = await asyncio.gather(*(deliver(c) for c in connections))

        for connection, outcome in zip(connections, outcomes):
            getattr(result, outcome.value).append(connection.connection_id)
        for outcome in DeliveryOutcome:
            record_delivery_outcome(outcome.value, len(getattr(result, outcome.value)))
        if result.pruned:
            record_connection_event("pruned", len(result.pruned))

        result.state = FanoutState.DONE
        logger.info(
            f"Fanout done for message {message.id}",
            extra={
                "message_id": message.id,
                "room_id": message.room_id,
                "attempted": result.attempted,
                "delivered": len(result.delivered),
                "pruned": len(result.pruned),
                "dropped": len(result.dropped),
            },
        )
        return result

    async def _deliver(self, connection: ConnectionInfo, payload: str) -> DeliveryOutcome:
        connection_id = connection.connection_id
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff, max=self.backoff_max),
                retry=retry_if_exception_type(TransientDeliveryError),
                reraise=True,
            ):
                with attempt:
                    await self._send_once(connection_id, payload)
            return DeliveryOutcome.DELIVERED

        except ConnectionGone as e:
            logger.info(f"Pruning gone connection {connection_id}: {e.detail}")
            try:
                self.registry.delete(connection_id)
            except StoreUnavailable:
                # Left for TTL reaping or the next gone signal
                logger.error(f"Failed to prune connection {connection_id}")
            return DeliveryOutcome.PRUNED

        except TransientDeliveryError as e:
            logger.warning(
                f"Dropping delivery to {connection_id} after {self.max_attempts} attempts: {e.detail}"
            )
            return DeliveryOutcome.DROPPED

    async def _send_once(self, connection_id: str, payload: str) -> None:
        send = asyncio.ensure_future(self.transport.send(connection_id, payload))
        try:
            # shield: a timed-out send is abandoned, never cancelled mid-frame
            await asyncio.wait_for(asyncio.shield(send), timeout=self.delivery_timeout)
        except asyncio.TimeoutError as e:
            self._abandon(send)
            raise TransientDeliveryError(connection_id, "delivery timed out") from e
        except (ConnectionGone, TransientDeliveryError):
            raise
        except Exception as e:
            raise TransientDeliveryError(connection_id, str(e)) from e

    def _abandon(self, send: asyncio.Future) -> None:
        self._abandoned.add(send)
        send.add_done_callback(self._forget)

    def _forget(self, send: asyncio.Future) -> None:
        self._abandoned.discard(send)
        if not send.cancelled() and send.exception() is not None:
            logger.debug(f"Abandoned delivery finished with error: {send.exception()}")

    @property
    def abandoned(self) -> int:
        """Timed-out sends still running in the background."""
        return len(self._abandoned)

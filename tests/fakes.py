"""Test doubles for the fanout pipeline."""

import asyncio
import json
from collections import Counter

from chatrelay.errors import ConnectionGone, TransientDeliveryError
from chatrelay.fanout import FanoutEngine


class FakeTransport:
    """Records deliveries; behavior per connection id is scripted."""

    def __init__(self, gone=(), transient=None, hang=(), delay: float = 0.0, hang_seconds: float = 0.3):
        self.gone = set(gone)
        self.transient = dict(transient or {})  # id -> failures before success
        self.hang = set(hang)
        self.delay = delay
        self.hang_seconds = hang_seconds
        self.cancelled = 0
        self.calls = Counter()
        self.sent = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, connection_id: str, payload: str) -> None:
        self.calls[connection_id] += 1
        if connection_id in self.gone:
            raise ConnectionGone(connection_id)
        if self.transient.get(connection_id, 0) > 0:
            self.transient[connection_id] -= 1
            raise TransientDeliveryError(connection_id, "throttled")
        if connection_id in self.hang:
            try:
                await asyncio.sleep(self.hang_seconds)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        self.sent.append((connection_id, json.loads(payload)))

    def recipients(self):
        return sorted(cid for cid, _ in self.sent)


def make_engine(registry, transport, **overrides) -> FanoutEngine:
    options = {
        "max_width": 16,
        "delivery_timeout": 0.2,
        "max_attempts": 3,
        "backoff": 0,
        "backoff_max": 0,
    }
    options.update(overrides)
    return FanoutEngine(registry=registry, transport=transport, **options)

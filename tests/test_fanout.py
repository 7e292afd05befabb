"""
Tests for the fanout engine.

Tests cover:
- Delivery to every live connection in the room
- Pruning connections that report gone
- Bounded retry of transient failures, then drop
- Timed-out sends are abandoned, not cancelled
- Empty rooms and registry lookup failures
- Bounded delivery concurrency
"""

import asyncio

import pytest

from chatrelay.errors import StoreUnavailable
from chatrelay.fanout import FanoutState
from chatrelay.registry import ConnectionRegistry
from chatrelay.schemas import ChatMessageResponse
from chatrelay.storage import append_message

from tests.fakes import FakeTransport, make_engine


class BrokenRegistry(ConnectionRegistry):
    def get_by_room(self, room_id, now=None):
        raise StoreUnavailable("registry.get_by_room failed")


@pytest.fixture
def message(db) -> ChatMessageResponse:
    stored, _ = append_message(db, "general", "u1", "alice", "hi")
    return ChatMessageResponse.model_validate(stored)


class TestFanoutDelivery:
    @pytest.mark.asyncio
    async def test_delivers_to_every_connection(self, registry, add_connection, message):
        for cid in ("c1", "c2", "c3"):
            add_connection(cid)
        transport = FakeTransport()

        result = await make_engine(registry, transport).fanout(message)

        assert result.state == FanoutState.DONE
        assert result.attempted == 3
        assert sorted(result.delivered) == ["c1", "c2", "c3"]
        assert transport.recipients() == ["c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_payload_is_message_json(self, registry, add_connection, message):
        add_connection("c1")
        transport = FakeTransport()

        await make_engine(registry, transport).fanout(message)

        assert transport.sent[0][1] == message.model_dump()

    @pytest.mark.asyncio
    async def test_other_rooms_not_delivered(self, registry, add_connection, message):
        add_connection("c1", room_id="general")
        add_connection("c2", room_id="random")
        transport = FakeTransport()

        await make_engine(registry, transport).fanout(message)

        assert transport.recipients() == ["c1"]

    @pytest.mark.asyncio
    async def test_empty_room(self, registry, message):
        """Test a room with no listeners succeeds without delivery attempts."""
        transport = FakeTransport()

        result = await make_engine(registry, transport).fanout(message)

        assert result.state == FanoutState.DONE
        assert result.attempted == 0
        assert sum(transport.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_batch_in_feed_order(self, db, registry, add_connection):
        add_connection("c1")
        batch = [
            ChatMessageResponse.model_validate(append_message(db, "general", "u1", "alice", text)[0])
            for text in ("one", "two", "three")
        ]
        transport = FakeTransport()

        results = await make_engine(registry, transport).process_batch(batch)

        assert [r.message_id for r in results] == [m.id for m in batch]
        assert [payload["message_text"] for _, payload in transport.sent] == ["one", "two", "three"]


class TestPruning:
    @pytest.mark.asyncio
    async def test_gone_connection_is_pruned(self, registry, add_connection, message):
        add_connection("c1")
        add_connection("c2")
        transport = FakeTransport(gone={"c2"})

        result = await make_engine(registry, transport).fanout(message)

        assert result.pruned == ["c2"]
        assert result.delivered == ["c1"]
        assert registry.get("c2") is None
        assert registry.get("c1") is not None

    @pytest.mark.asyncio
    async def test_gone_is_not_retried(self, registry, add_connection, message):
        add_connection("c1")
        transport = FakeTransport(gone={"c1"})

        await make_engine(registry, transport).fanout(message)

        assert transport.calls["c1"] == 1

    @pytest.mark.asyncio
    async def test_pruned_connection_gets_no_later_messages(self, db, registry, add_connection, message):
        add_connection("c1")
        add_connection("c2")
        transport = FakeTransport(gone={"c2"})
        engine = make_engine(registry, transport)
        await engine.fanout(message)

        later = ChatMessageResponse.model_validate(append_message(db, "general", "u1", "alice", "again")[0])
        result = await engine.fanout(later)

        assert result.attempted == 1
        assert transport.calls["c2"] == 1


class TestTransientFailures:
    @pytest.mark.asyncio
    async def test_retried_until_success(self, registry, add_connection, message):
        add_connection("c1")
        transport = FakeTransport(transient={"c1": 2})

        result = await make_engine(registry, transport).fanout(message)

        assert result.delivered == ["c1"]
        assert transport.calls["c1"] == 3

    @pytest.mark.asyncio
    async def test_dropped_after_max_attempts(self, registry, add_connection, message):
        """Test exhausted retries drop the delivery but keep the connection."""
        add_connection("c1")
        add_connection("c2")
        transport = FakeTransport(transient={"c1": 10})

        result = await make_engine(registry, transport).fanout(message)

        assert result.dropped == ["c1"]
        assert result.delivered == ["c2"]
        assert transport.calls["c1"] == 3
        assert registry.get("c1") is not None

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, registry, add_connection, message):
        add_connection("slow")
        add_connection("c1")
        transport = FakeTransport(hang={"slow"}, hang_seconds=0.1)

        result = await make_engine(registry, transport, delivery_timeout=0.05, max_attempts=2).fanout(message)

        assert result.dropped == ["slow"]
        assert result.delivered == ["c1"]
        assert transport.calls["slow"] == 2
        assert registry.get("slow") is not None
        await asyncio.sleep(0.15)

    @pytest.mark.asyncio
    async def test_timed_out_send_is_not_cancelled(self, registry, add_connection, message):
        """Test a send past its timeout keeps running in the background."""
        add_connection("slow")
        transport = FakeTransport(hang={"slow"}, hang_seconds=0.2)
        engine = make_engine(registry, transport, delivery_timeout=0.05, max_attempts=2)

        result = await engine.fanout(message)

        assert result.dropped == ["slow"]
        assert engine.abandoned == 2

        await asyncio.sleep(0.4)

        assert transport.cancelled == 0
        assert engine.abandoned == 0
        assert [cid for cid, _ in transport.sent] == ["slow", "slow"]


class TestLookupFailure:
    @pytest.mark.asyncio
    async def test_lookup_failure_fails_batch(self, db_schema, message):
        transport = FakeTransport()
        engine = make_engine(BrokenRegistry(), transport)

        with pytest.raises(StoreUnavailable):
            await engine.process_batch([message])
        assert sum(transport.calls.values()) == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_width_is_bounded(self, registry, add_connection, message):
        for i in range(6):
            add_connection(f"c{i}")
        transport = FakeTransport(delay=0.02)

        result = await make_engine(registry, transport, max_width=2).fanout(message)

        assert len(result.delivered) == 6
        assert transport.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_deliveries_run_concurrently(self, registry, add_connection, message):
        for i in range(4):
            add_connection(f"c{i}")
        transport = FakeTransport(delay=0.02)

        await make_engine(registry, transport).fanout(message)

        assert transport.max_in_flight > 1


class TestGeneralRoomScenario:
    @pytest.mark.asyncio
    async def test_alive_and_gone_with_replayed_ingestion(self, db, registry, add_connection):
        """
        c1 alive, c2 gone: the message reaches c1, c2 is pruned, and a retry
        with the same client_message_id returns the identical stored message.
        """
        add_connection("c1")
        add_connection("c2")
        transport = FakeTransport(gone={"c2"})
        engine = make_engine(registry, transport)

        stored, created = append_message(db, "general", "u1", "alice", "hi", client_message_id="tok-1")
        message = ChatMessageResponse.model_validate(stored)
        result = await engine.fanout(message)

        assert created is True
        assert result.delivered == ["c1"]
        assert result.pruned == ["c2"]
        assert registry.get("c2") is None
        assert registry.get("c1") is not None

        replayed, created_again = append_message(db, "general", "u1", "alice", "hi", client_message_id="tok-1")
        assert created_again is False
        assert ChatMessageResponse.model_validate(replayed) == message

        # A redelivered feed batch is delivered again (at-least-once)
        await engine.process_batch([message])
        assert [cid for cid, _ in transport.sent] == ["c1", "c1"]

"""
Tests for the connection registry.
"""

from datetime import timedelta

from chatrelay.utils import utc_now


class TestRegistryCrud:
    def test_put_and_get(self, registry, add_connection):
        added = add_connection("c1")

        assert registry.get("c1") == added

    def test_get_missing(self, registry):
        assert registry.get("missing") is None

    def test_put_replaces(self, registry, add_connection):
        add_connection("c1", room_id="general")
        add_connection("c1", room_id="random")

        assert registry.get("c1").room_id == "random"
        assert list(registry.get_by_room("general")) == []

    def test_delete_is_idempotent(self, registry, add_connection):
        add_connection("c1")

        assert registry.delete("c1") is True
        assert registry.delete("c1") is False
        assert registry.get("c1") is None


class TestGetByRoom:
    def test_only_room_members(self, registry, add_connection):
        add_connection("c1", room_id="general")
        add_connection("c2", room_id="random")

        ids = [c.connection_id for c in registry.get_by_room("general")]
        assert ids == ["c1"]

    def test_ordered_by_connected_at(self, registry, add_connection):
        add_connection("late", age_seconds=1)
        add_connection("early", age_seconds=30)
        add_connection("middle", age_seconds=10)

        ids = [c.connection_id for c in registry.get_by_room("general")]
        assert ids == ["early", "middle", "late"]

    def test_is_lazy(self, registry, add_connection):
        add_connection("c1")
        add_connection("c2")

        rows = registry.get_by_room("general")
        assert next(rows).connection_id in {"c1", "c2"}
        rows.close()

    def test_skips_expired(self, registry, add_connection):
        add_connection("fresh")
        add_connection("stale", ttl_seconds=60, age_seconds=120)

        ids = [c.connection_id for c in registry.get_by_room("general")]
        assert ids == ["fresh"]

    def test_empty_room(self, registry):
        assert list(registry.get_by_room("general")) == []

    def test_count_matches_get_by_room(self, registry, add_connection):
        add_connection("fresh")
        add_connection("stale", ttl_seconds=60, age_seconds=120)

        assert registry.count_by_room("general") == 1


class TestReapExpired:
    def test_reaps_only_expired(self, registry, add_connection):
        add_connection("fresh")
        add_connection("stale", ttl_seconds=60, age_seconds=120)

        assert registry.reap_expired() == 1
        assert registry.get("stale") is None
        assert registry.get("fresh") is not None

    def test_reap_with_future_clock(self, registry, add_connection):
        add_connection("c1", ttl_seconds=60)

        assert registry.reap_expired(now=utc_now() + timedelta(minutes=2)) == 1
        assert registry.count_by_room("general") == 0

"""Tests for the slave registry."""

import pytest

from tradecopier.core.slaves import SlaveRegistry, split_slave_key


@pytest.fixture
def registry(clock):
    return SlaveRegistry(clock=clock, inactive_after_ms=60_000)


class TestRegistry:

    def test_touch_registers_and_bumps(self, registry, clock):
        state = registry.touch("G1", "A")
        assert state.last_ack_id == 0
        assert state.last_seen_at == clock.now

        clock.advance(10)
        assert registry.touch("G1", "A").last_seen_at == clock.now
        assert registry.known_slaves("G1") == {"A"}

    def test_last_ack_id_never_decreases(self, registry):
        registry.record_ack("G1", "A", 10)
        assert registry.record_ack("G1", "A", 4).last_ack_id == 10
        assert registry.record_ack("G1", "A", 12).last_ack_id == 12

    def test_returned_state_is_a_copy(self, registry):
        state = registry.record_ack("G1", "A", 5)
        state.last_ack_id = 0
        assert registry.get("G1", "A").last_ack_id == 5

    def test_groups_are_isolated(self, registry):
        registry.touch("G1", "A")
        registry.touch("G2", "B")
        assert registry.known_slaves("G1") == {"A"}
        assert registry.count() == 2


class TestPruning:

    def test_prunes_only_idle_slaves(self, registry, clock):
        registry.touch("G1", "idle")
        clock.advance(50)
        registry.touch("G1", "busy")
        clock.advance(20)

        pruned = registry.prune_inactive("G1")

        assert pruned == [("G1", "idle")]
        assert registry.known_slaves("G1") == {"busy"}

    def test_zero_window_disables(self, clock):
        registry = SlaveRegistry(clock=clock, inactive_after_ms=0)
        registry.touch("G1", "A")
        clock.advance(10 ** 6)
        assert registry.prune_inactive() == []


class TestSnapshot:

    def test_round_trip_uses_group_pipe_keys(self, registry, clock):
        registry.record_ack("G1", "A", 3)
        record = registry.snapshot()
        assert record == {"slaves": {"G1|A": {"last_ack_id": 3, "last_seen_at": clock.now}}}

        fresh = SlaveRegistry(clock=clock)
        fresh.restore(record)
        assert fresh.get("G1", "A").last_ack_id == 3

    def test_restore_accepts_camel_case_records(self, clock):
        fresh = SlaveRegistry(clock=clock)
        fresh.restore({"slaves": {"G1|A": {"lastAckId": 9, "lastSeenAt": 1}, "broken": {}}})
        assert fresh.get("G1", "A").last_ack_id == 9
        assert fresh.count() == 1

    def test_split_key(self):
        assert split_slave_key("G1|acc|01") == ("G1", "acc|01")

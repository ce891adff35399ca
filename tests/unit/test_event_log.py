"""Tests for the append-only event log."""

import pytest

from tradecopier.core.event_log import EventLog
from tradecopier.core.models import EventType


@pytest.fixture
def log():
    return EventLog()


def _append(log, group="G1", key="pk", event_type=EventType.OPEN, ts=1, **attrs):
    attrs.setdefault("symbol", "EURUSD")
    return log.append(group, event_type, key, ts=ts, **attrs)


class TestAppend:

    def test_ids_strictly_increasing_per_group(self, log):
        ids = [_append(log, key=f"k{i}").id for i in range(3)]
        assert ids == [1, 2, 3]
        assert _append(log, group="G2").id == 1

    def test_ids_not_reused_after_removal(self, log):
        first = _append(log, key="a")
        _append(log, key="b")
        log.remove("G1", [first.id, 2])
        assert _append(log, key="c").id == 3
        assert log.max_event_id("G1") == 3

    def test_positive_equity_updates_last_known(self, log):
        _append(log, key="a", master_equity=2500.0)
        _append(log, key="b", master_equity=0.0)
        assert log.last_master_equity("G1") == 2500.0

    def test_new_event_has_empty_acks(self, log):
        assert _append(log).acks == {}


class TestQueries:

    def test_after_cursor(self, log):
        for i in range(5):
            _append(log, key=f"k{i}")
        assert [e.id for e in log.after("G1", 2)] == [3, 4, 5]
        assert list(log.after("G1", 5)) == []
        assert list(log.after("unknown", 0)) == []

    def test_after_skips_gaps(self, log):
        for i in range(5):
            _append(log, key=f"k{i}")
        log.remove("G1", [2, 3])
        assert [e.id for e in log.after("G1", 1)] == [4, 5]

    def test_get(self, log):
        event = _append(log)
        assert log.get("G1", event.id) is event
        assert log.get("G1", 99) is None
        assert log.get("G2", event.id) is None

    def test_counts(self, log):
        _append(log, key="a")
        _append(log, group="G2", key="a")
        assert log.count("G1") == 1
        assert log.count() == 2


class TestSnapshot:

    def test_restore_keeps_counter(self, log):
        _append(log, key="a", master_equity=1200.0)
        _append(log, key="b")
        log.remove("G1", [1, 2])
        record = log.snapshot("G1")

        restored = EventLog()
        restored.restore("G1", record)

        assert restored.count("G1") == 0
        assert _append(restored, key="c").id == 3
        assert restored.last_master_equity("G1") == 1200.0

    def test_restore_never_reissues_present_id(self, log):
        _append(log)
        record = log.snapshot("G1")
        record["next_id"] = 1  # stale counter

        restored = EventLog()
        restored.restore("G1", record)
        assert _append(restored, key="other").id == 2

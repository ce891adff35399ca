"""Tests for the push, poll and ack handlers working on one store."""

import pytest

from tradecopier.core.acks import AckHandler
from tradecopier.core.delivery import DeliveryHandler
from tradecopier.core.errors import PersistenceError, ValidationFailed
from tradecopier.core.ingress import IngressHandler, PushRequest, derive_position_key
from tradecopier.core.models import RejectReason
from tradecopier.core.store import CopierStore
from tradecopier.storage.memory import MemoryBackend


class TestPositionKey:

    def test_uid_preferred(self):
        assert derive_position_key("abc", 100, 5) == "uid:abc"

    def test_ticket_with_open_time(self):
        assert derive_position_key("", 100, 5) == "100@5"

    def test_bare_ticket_fallback(self):
        assert derive_position_key("", 100, 0) == "100"


class TestIngressValidation:

    @pytest.mark.parametrize("overrides", [
        {"group": ""},
        {"type": ""},
        {"type": "PARTIAL"},
        {"symbol": ""},
        {"ticket": 0},
        {"group": "a|b"},
    ])
    def test_invalid_push_rejected_without_side_effects(self, ingress, store, make_push, overrides):
        with pytest.raises(ValidationFailed):
            ingress.push(make_push(**overrides))
        assert store.log.count() == 0
        assert store.log.max_event_id("G1") == 0

    def test_uid_replaces_ticket(self, ingress, make_push):
        result = ingress.push(make_push(ticket=0, uid="pos-1"))
        assert result.id == 1

    def test_type_is_case_insensitive(self, ingress, make_push):
        assert ingress.push(make_push(type="open")).id == 1

    def test_restricted_types(self, store, make_push):
        ingress = IngressHandler(store, accepted_types=["OPEN", "CLOSE"])
        ingress.push(make_push())
        with pytest.raises(ValidationFailed):
            ingress.push(make_push(type="MODIFY"))


class TestIdempotentPush:

    def test_same_push_twice_returns_same_id(self, ingress, store, make_push):
        first = ingress.push(make_push())
        second = ingress.push(make_push())

        assert first.id == 1 and not first.duplicated
        assert second.id == 1
        assert second.duplicated
        assert second.reason is RejectReason.OPEN_ALREADY
        assert store.log.count("G1") == 1

    def test_close_without_open(self, ingress, store, make_push):
        result = ingress.push(make_push(type="CLOSE"))

        assert result.duplicated
        assert result.reason is RejectReason.CLOSE_WITHOUT_OPEN
        assert result.id is None
        assert store.log.count("G1") == 0

    def test_close_twice(self, ingress, make_push):
        ingress.push(make_push())
        close = ingress.push(make_push(type="CLOSE"))
        again = ingress.push(make_push(type="CLOSE"))

        assert again.duplicated
        assert again.reason is RejectReason.CLOSE_ALREADY
        assert again.id == close.id

    def test_rejection_consumes_no_id(self, ingress, make_push):
        ingress.push(make_push())
        ingress.push(make_push())
        assert ingress.push(make_push(ticket=101)).id == 2

    def test_retried_open_after_close_is_replay(self, ingress, store, make_push):
        opened = ingress.push(make_push())
        ingress.push(make_push(type="CLOSE"))

        retry = ingress.push(make_push())

        assert retry.id == opened.id
        assert retry.reason is RejectReason.IDEMPOTENT_REPLAY
        assert store.log.count("G1") == 2

    def test_modify_dedup_by_content(self, ingress, make_push):
        ingress.push(make_push())
        first = ingress.push(make_push(type="MODIFY", sl=1.05))
        retry = ingress.push(make_push(type="MODIFY", sl=1.05))
        moved = ingress.push(make_push(type="MODIFY", sl=1.07))

        assert retry.id == first.id and retry.duplicated
        assert moved.id == first.id + 1 and not moved.duplicated

    def test_modify_back_to_earlier_value_is_new(self, ingress, store, make_push):
        ingress.push(make_push())
        first = ingress.push(make_push(type="MODIFY", sl=1.10))
        ingress.push(make_push(type="MODIFY", sl=1.12))
        reverted = ingress.push(make_push(type="MODIFY", sl=1.10))

        assert not reverted.duplicated
        assert reverted.id == first.id + 2
        assert store.log.get("G1", reverted.id).sl == 1.10

        retry = ingress.push(make_push(type="MODIFY", sl=1.10))
        assert (retry.id, retry.reason) == (reverted.id, RejectReason.IDEMPOTENT_REPLAY)

    def test_new_open_time_is_a_new_position(self, ingress, make_push):
        ingress.push(make_push())
        ingress.push(make_push(type="CLOSE"))
        reused = ingress.push(make_push(open_time=1_700_000_500))
        assert not reused.duplicated


class TestEquityFallback:

    def test_missing_equity_uses_last_known(self, ingress, store, make_push):
        ingress.push(make_push(master_equity=5000.0))
        result = ingress.push(make_push(ticket=101, master_equity=0))

        assert store.log.get("G1", result.id).master_equity == 5000.0

    def test_fallback_is_per_group(self, ingress, store, make_push):
        ingress.push(make_push(master_equity=5000.0))
        result = ingress.push(make_push(group="G2", master_equity=0))
        assert store.log.get("G2", result.id).master_equity == 0.0


class TestDelivery:

    def test_poll_registers_slave(self, delivery, store, clock):
        result = delivery.poll("G1", "A")
        assert result.events == []
        assert store.slaves.get("G1", "A").last_seen_at == clock.now

    def test_cursor_and_ack_filtering(self, ingress, delivery, acks, make_push):
        for ticket in (100, 101, 102):
            ingress.push(make_push(ticket=ticket))
        acks.ack("G1", "A", 2, "DONE")

        # Stale cursor after a client restart: acked event 2 stays hidden
        assert [e.id for e in delivery.poll("G1", "A", since=0).events] == [1, 3]
        assert [e.id for e in delivery.poll("G1", "A", since=1).events] == [3]
        assert [e.id for e in delivery.poll("G1", "B", since=0).events] == [1, 2, 3]

    def test_limit_clamped(self, ingress, store, make_push):
        for ticket in range(100, 110):
            ingress.push(make_push(ticket=ticket))
        delivery = DeliveryHandler(store, default_limit=4, max_limit=6)

        assert len(delivery.poll("G1", "A").events) == 4
        assert len(delivery.poll("G1", "A", limit=100).events) == 6
        assert len(delivery.poll("G1", "A", limit=-3).events) == 1

    def test_poll_metadata(self, ingress, delivery, make_push, clock):
        ingress.push(make_push())
        result = delivery.poll("G1", "A", since=1)
        assert result.max_event_id == 1
        assert result.now == clock.now

    def test_missing_slave_id(self, delivery):
        with pytest.raises(ValidationFailed):
            delivery.poll("G1", "")


class TestAcks:

    def test_ack_records_and_raises_cursor(self, ingress, acks, store, make_push, clock):
        ingress.push(make_push())
        ingress.push(make_push(ticket=101))

        result = acks.ack("G1", "A", 2, "err", "no money")

        assert not result.gone
        assert result.last_ack_id == 2
        record = store.log.get("G1", 2).acks["A"]
        assert record.status.value == "ERR"
        assert record.err == "no money"
        assert record.ts == clock.now

    def test_smaller_ack_never_lowers_cursor(self, ingress, acks, make_push):
        ingress.push(make_push())
        ingress.push(make_push(ticket=101))
        ingress.push(make_push(ticket=102))
        acks.ack("G1", "B", 1, "DONE")

        acks.ack("G1", "A", 3, "DONE")
        assert acks.ack("G1", "A", 2, "DONE").last_ack_id == 3

    def test_ack_for_collected_event_is_gone(self, acks):
        result = acks.ack("G1", "A", 42, "DONE")
        assert result.gone
        assert result.last_ack_id == 42

    @pytest.mark.parametrize("args", [
        ("G1", "", 1, "DONE"),
        ("G1", "A", 0, "DONE"),
        ("G1", "A", 1, "MAYBE"),
        ("", "A", 1, "DONE"),
    ])
    def test_invalid_ack(self, acks, args):
        with pytest.raises(ValidationFailed):
            acks.ack(*args)



class TestEndToEnd:
    """Two slaves, one position: delivery and collection."""

    def test_scenario(self, ingress, delivery, acks, store, clock):
        push = PushRequest(group="G1", type="OPEN", master_ticket=100, symbol="EURUSD")

        assert ingress.push(push).id == 1
        again = ingress.push(push)
        assert (again.id, again.duplicated) == (1, True)

        assert [e.id for e in delivery.poll("G1", "A", since=0).events] == [1]
        acks.ack("G1", "A", 1, "DONE")

        # B was never seen before this poll
        assert [e.id for e in delivery.poll("G1", "B", since=0).events] == [1]
        assert store.sweep() == {}
        assert store.log.get("G1", 1) is not None

        result = acks.ack("G1", "B", 1, "DONE")
        assert result.removed == 0

        clock.advance(store.retention.ack_grace_ms / 1000 + 1)
        assert store.sweep() == {"G1": 1}
        assert store.log.get("G1", 1) is None
        assert acks.ack("G1", "A", 1, "DONE").gone

    def test_collection_forgets_idempotency_entry(self, ingress, acks, store, make_push, clock):
        ingress.push(make_push())
        acks.ack("G1", "A", 1, "DONE")
        clock.advance(store.retention.ack_grace_ms / 1000 + 1)
        store.sweep()

        assert store.log.count("G1") == 0
        # Ticket still open: a retried OPEN stays a duplicate with no live id
        retry = ingress.push(make_push())
        assert retry.duplicated and retry.id is None


class FlakyBackend(MemoryBackend):
    """Memory backend whose next group writes fail."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures

    def save_group_log(self, group, record):
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("disk full")
        super().save_group_log(group, record)


class TestPersistenceFailure:

    @pytest.fixture
    def flaky(self):
        return FlakyBackend()

    @pytest.fixture
    def flaky_store(self, flaky, clock):
        return CopierStore(flaky, clock=clock)

    def test_retried_push_is_persisted_before_duplicate_answer(self, flaky, flaky_store, make_push):
        ingress = IngressHandler(flaky_store)
        flaky.failures = 1

        with pytest.raises(PersistenceError):
            ingress.push(make_push())
        assert flaky.load_group_logs() == {}

        retry = ingress.push(make_push())

        assert (retry.id, retry.duplicated) == (1, True)
        assert [e["id"] for e in flaky.load_group_logs()["G1"]["events"]] == [1]
        assert flaky_store.health()["unpersisted_groups"] == []

    def test_nothing_succeeds_while_backend_fails(self, flaky, flaky_store, make_push):
        ingress = IngressHandler(flaky_store)
        delivery = DeliveryHandler(flaky_store)
        flaky.failures = 3

        with pytest.raises(PersistenceError):
            ingress.push(make_push())
        with pytest.raises(PersistenceError):
            ingress.push(make_push())
        with pytest.raises(PersistenceError):
            delivery.poll("G1", "A")

        assert [e.id for e in delivery.poll("G1", "A").events] == [1]
        assert flaky.load_group_logs()["G1"]["next_id"] == 2

    def test_retried_ack_is_persisted(self, flaky, flaky_store, make_push):
        IngressHandler(flaky_store).push(make_push())
        acks = AckHandler(flaky_store)
        flaky.failures = 1

        with pytest.raises(PersistenceError):
            acks.ack("G1", "A", 1, "DONE")

        result = acks.ack("G1", "A", 1, "DONE")

        assert not result.gone
        saved = flaky.load_group_logs()["G1"]["events"][0]
        assert saved["acks"]["A"]["status"] == "DONE"

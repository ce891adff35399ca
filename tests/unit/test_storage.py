"""Tests for storage backends and restart recovery."""

import json
from pathlib import Path

import pytest

from tradecopier.core.acks import AckHandler
from tradecopier.core.errors import PersistenceError
from tradecopier.core.ingress import IngressHandler
from tradecopier.core.models import RejectReason
from tradecopier.core.store import CopierStore
from tradecopier.core.tickets import TicketPhase
from tradecopier.infrastructure.config import StorageConfig
from tradecopier.storage import JsonFileBackend, MemoryBackend, create_backend


class TestBackendSelection:

    def test_memory_by_default(self):
        assert isinstance(create_backend(StorageConfig()), MemoryBackend)

    def test_file_backend(self, tmp_path):
        backend = create_backend(StorageConfig(backend="file", data_dir=str(tmp_path / "data")))
        assert isinstance(backend, JsonFileBackend)
        assert (tmp_path / "data").is_dir()


class TestJsonFileBackend:

    def test_write_leaves_no_temp_file(self, tmp_path):
        backend = JsonFileBackend(tmp_path)
        backend.save_slaves({"slaves": {"G1|A": {"last_ack_id": 3, "last_seen_at": 1}}})

        assert json.loads((tmp_path / "slaves.json").read_text())["slaves"]["G1|A"]["last_ack_id"] == 3
        assert list(tmp_path.glob("*.tmp")) == []

    def test_group_names_are_quoted(self, tmp_path):
        backend = JsonFileBackend(tmp_path)
        backend.save_group_log("gold/usd fx", {"group": "gold/usd fx", "next_id": 1, "events": []})

        path = backend.group_log_path("gold/usd fx")
        assert path.parent == tmp_path
        assert path.exists()
        assert list(backend.load_group_logs()) == ["gold/usd fx"]

    def test_missing_and_blank_files_load_empty(self, tmp_path):
        backend = JsonFileBackend(tmp_path)
        assert backend.load_slaves() == {}

        (tmp_path / "clients.json").write_text("  \n")
        assert backend.load_clients() == {}

    def test_corrupt_file_moved_aside(self, tmp_path):
        (tmp_path / "slaves.json").write_text("{not json")
        backend = JsonFileBackend(tmp_path)

        assert backend.load_slaves() == {}
        assert not (tmp_path / "slaves.json").exists()
        assert len(list(tmp_path.glob("slaves.json.backup.*"))) == 1

    def test_corrupt_file_that_cannot_move_raises(self, tmp_path, monkeypatch):
        (tmp_path / "slaves.json").write_text("{not json")
        backend = JsonFileBackend(tmp_path)

        def refuse(self, target):
            raise PermissionError("read-only volume")

        monkeypatch.setattr(Path, "rename", refuse)

        with pytest.raises(PersistenceError):
            backend.load_slaves()

    def test_non_object_record_treated_as_corrupt(self, tmp_path):
        (tmp_path / "clients.json").write_text("[1, 2]")
        assert JsonFileBackend(tmp_path).load_clients() == {}

    def test_write_failure_raises_persistence_error(self, tmp_path):
        backend = JsonFileBackend(tmp_path)
        # A directory where the temp file should go makes the open fail
        (tmp_path / "slaves.json.tmp").mkdir()

        with pytest.raises(PersistenceError):
            backend.save_slaves({"slaves": {}})


class TestRestartRecovery:

    @pytest.fixture(params=["memory", "file"])
    def durable_backend(self, request, tmp_path):
        if request.param == "file":
            return JsonFileBackend(tmp_path)
        return MemoryBackend()

    def test_ids_tickets_and_index_survive(self, durable_backend, clock, make_push):
        store = CopierStore(durable_backend, clock=clock)
        ingress = IngressHandler(store)
        ingress.push(make_push())
        ingress.push(make_push(ticket=101))
        ingress.push(make_push(type="CLOSE"))

        restarted = CopierStore(durable_backend, clock=clock)
        restarted.load()
        ingress = IngressHandler(restarted)

        assert restarted.log.max_event_id("G1") == 3
        assert restarted.tickets.phase("G1", "100@1699999000") is TicketPhase.CLOSED

        retry = ingress.push(make_push(type="CLOSE"))
        assert (retry.id, retry.reason) == (3, RejectReason.CLOSE_ALREADY)
        assert ingress.push(make_push(ticket=102)).id == 4

    def test_next_id_not_reused_after_collection(self, durable_backend, clock, make_push):
        store = CopierStore(durable_backend, clock=clock)
        IngressHandler(store).push(make_push())
        with store.lock("G1"):
            store.log.remove("G1", [1])
            store.persist_group("G1")

        restarted = CopierStore(durable_backend, clock=clock)
        restarted.load()

        assert IngressHandler(restarted).push(make_push(ticket=101)).id == 2

    def test_slaves_survive(self, durable_backend, clock):
        store = CopierStore(durable_backend, clock=clock)
        AckHandler(store).ack("G1", "A", 7, "DONE")

        restarted = CopierStore(durable_backend, clock=clock)
        restarted.load()

        assert restarted.slaves.get("G1", "A").last_ack_id == 7

    def test_tickets_rebuilt_when_missing(self, backend, clock, make_push):
        store = CopierStore(backend, clock=clock)
        IngressHandler(store).push(make_push())
        record = store.group_record("G1")
        del record["tickets"]
        backend.save_group_log("G1", record)

        restarted = CopierStore(backend, clock=clock)
        restarted.load()

        assert restarted.tickets.phase("G1", "100@1699999000") is TicketPhase.OPEN
        assert IngressHandler(restarted).push(make_push()).reason is RejectReason.OPEN_ALREADY

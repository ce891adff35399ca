"""
CopierStore: the relay's explicit state object.

Constructed once at process start and handed to every handler. Owns:
- the event log, ticket tracker and idempotency index
- the slave registry
- the storage backend and the retention policy
- one exclusive lock per group serializing all mutations of that group

A record whose write failed stays marked as unpersisted. Handlers call
``ensure_durable`` before answering, so no success response (not even a
duplicate) is given while an earlier change of the group exists only in
memory.
"""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

from tradecopier.core.errors import PersistenceError
from tradecopier.core.event_log import EventLog
from tradecopier.core.idempotency import IdempotencyIndex
from tradecopier.core.models import Clock, EventType, now_ms
from tradecopier.core.retention import RetentionPolicy, RetentionReport
from tradecopier.core.slaves import SlaveRegistry
from tradecopier.core.tickets import TicketStateTracker
from tradecopier.infrastructure.config import RetentionConfig
from tradecopier.infrastructure.logging import get_logger
from tradecopier.infrastructure.metrics import metrics
from tradecopier.storage.base import StorageBackend

logger = get_logger(__name__)


class CopierStore:
    """
    Shared relay state with per-group serialization.

    Usage:
        store = CopierStore.from_config(config.retention, backend)
        store.load()
        with store.lock("G1"):
            ...
            store.persist_group("G1")
    """

    def __init__(
        self,
        backend: StorageBackend,
        retention: RetentionPolicy | None = None,
        slaves: SlaveRegistry | None = None,
        clock: Clock = now_ms,
    ):
        self.backend = backend
        self.clock = clock
        self.log = EventLog()
        self.tickets = TicketStateTracker(clock=clock)
        self.index = IdempotencyIndex()
        self.slaves = slaves or SlaveRegistry(clock=clock)
        self.retention = retention or RetentionPolicy(clock=clock)

        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()

        # Records whose last write failed
        self._unpersisted_groups: set[str] = set()
        self._slaves_unpersisted = False
        self._slaves_write_lock = Lock()

    @classmethod
    def from_config(
        cls,
        config: RetentionConfig,
        backend: StorageBackend,
        clock: Clock = now_ms,
    ) -> "CopierStore":
        return cls(
            backend=backend,
            retention=RetentionPolicy(
                max_events=config.max_events_per_group,
                max_age_ms=config.max_event_age_seconds * 1000,
                cascade_on_close=config.cascade_on_close,
                ack_grace_ms=config.ack_grace_seconds * 1000,
                clock=clock,
            ),
            slaves=SlaveRegistry(
                clock=clock,
                inactive_after_ms=config.slave_inactive_seconds * 1000,
            ),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _group_lock(self, group: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(group)
            if lock is None:
                lock = Lock()
                self._locks[group] = lock
            return lock

    @contextmanager
    def lock(self, group: str) -> Iterator[None]:
        """Hold the exclusive lock of a group."""
        with self._group_lock(group):
            yield

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Restore every record from the backend."""
        for group, record in self.backend.load_group_logs().items():
            with self.lock(group):
                self.log.restore(group, record)
                tickets = record.get("tickets")
                if tickets is None:
                    self._rebuild_tickets(group)
                else:
                    self.tickets.restore(group, tickets)
                self.index.rebuild(group, self.log.events(group))

        self.slaves.restore(self.backend.load_slaves())
        logger.info(
            "Store loaded",
            backend=self.backend.name,
            groups=len(self.log.groups()),
            events=self.log.count(),
            slaves=self.slaves.count(),
        )

    def _rebuild_tickets(self, group: str) -> None:
        # Records written without ticket states: replay surviving lifecycle events
        for event in self.log.events(group):
            if event.type is not EventType.MODIFY:
                self.tickets.apply(group, event.position_key, event.type)

    def group_record(self, group: str) -> dict[str, Any]:
        record = self.log.snapshot(group)
        record["tickets"] = self.tickets.snapshot(group)
        return record

    def persist_group(self, group: str) -> None:
        """
        Durably write one group's record. Caller holds the group lock.

        Raises:
            PersistenceError: the group stays marked until a later write succeeds
        """
        try:
            self.backend.save_group_log(group, self.group_record(group))
        except PersistenceError:
            self._unpersisted_groups.add(group)
            raise
        self._unpersisted_groups.discard(group)
        logger.debug("Group record persisted", group=group)

    def persist_slaves(self) -> None:
        # Slave registry writes come from every group's lock
        with self._slaves_write_lock:
            try:
                self.backend.save_slaves(self.slaves.snapshot())
            except PersistenceError:
                self._slaves_unpersisted = True
                raise
            self._slaves_unpersisted = False
        logger.debug("Slave registry persisted")

    def ensure_durable(self, group: str) -> None:
        """
        Re-write records left behind by a failed write. Caller holds the group lock.

        Raises:
            PersistenceError: the backend still fails; the request must fail too
        """
        if self._slaves_unpersisted:
            self.persist_slaves()
            logger.info("Pending slave registry persisted")
        if group in self._unpersisted_groups:
            self.persist_group(group)
            logger.info("Pending group record persisted", group=group)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def run_retention(self, group: str) -> RetentionReport:
        """
        Prune inactive slaves, then collect and evict events of a group.

        Caller holds the group lock and persists the group when
        ``report.changed``.
        """
        if self.slaves.prune_inactive(group):
            self.persist_slaves()

        report = self.retention.run(group, self.log, self.tickets, self.slaves.known_slaves(group))
        if report.removed:
            self.index.forget(group, report.removed_ids)

        for cause, count in report.counts().items():
            metrics.record_removal(group, cause, count)
        if report.acked or report.cascade:
            logger.info(
                "Events collected",
                group=group,
                count=len(report.acked) + len(report.cascade),
                retired_tickets=len(report.retired_tickets),
            )
        if report.size or report.age:
            logger.warning(
                "Events evicted",
                group=group,
                count=len(report.size) + len(report.age),
                by_size=len(report.size),
                by_age=len(report.age),
            )

        metrics.update_sizes(group, self.log.count(group), self.slaves.count(group))
        return report

    def sweep(self) -> dict[str, int]:
        """
        Run retention over every group.

        Returns:
            Removed event count per group that changed
        """
        removed: dict[str, int] = {}
        for group in self.log.groups():
            with self.lock(group):
                report = self.run_retention(group)
                if report.changed or group in self._unpersisted_groups:
                    self.persist_group(group)
                if report.changed:
                    removed[group] = len(report.removed)
        return removed

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        groups = sorted(set(self.log.groups()) | set(self.slaves.groups()))
        return {
            "now": self.clock(),
            "backend": self.backend.name,
            "events_stored": self.log.count(),
            "slaves": self.slaves.count(),
            "groups": {
                group: {
                    "events": self.log.count(group),
                    "max_event_id": self.log.max_event_id(group),
                    "known_slaves": self.slaves.count(group),
                    "tracked_tickets": self.tickets.count(group),
                    "last_master_equity": self.log.last_master_equity(group),
                }
                for group in groups
            },
            "last_master_equity_by_group": {
                group: self.log.last_master_equity(group) for group in self.log.groups()
            },
            "idempotency": self.index.stats(),
            "unpersisted_groups": sorted(self._unpersisted_groups),
        }

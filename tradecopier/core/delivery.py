"""
Delivery (poll) handler.

Slaves pull batches of events above their cursor. The ack map, not the
cursor, is the source of truth for "already handled": a slave whose
remembered cursor was reset still never sees an event it acknowledged.
"""

from __future__ import annotations

from dataclasses import replace

from tradecopier.core.errors import ValidationFailed
from tradecopier.core.ingress import validate_group
from tradecopier.core.models import PollResult
from tradecopier.core.store import CopierStore
from tradecopier.infrastructure.logging import get_logger
from tradecopier.infrastructure.metrics import metrics

logger = get_logger(__name__)


class DeliveryHandler:
    """Serves slave polls from a store."""

    def __init__(self, store: CopierStore, default_limit: int = 200, max_limit: int = 500):
        self.store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    def clamp_limit(self, limit: int | None) -> int:
        if not limit:
            limit = self.default_limit
        return min(self.max_limit, max(1, int(limit)))

    def register(self, group: str, slave_id: str) -> None:
        """Pre-register a slave before its first poll."""
        group = validate_group(group)
        slave_id = (slave_id or "").strip()
        if not slave_id:
            raise ValidationFailed("missing group/slaveId")

        with self.store.lock(group):
            self.store.ensure_durable(group)
            self.store.slaves.touch(group, slave_id)
            self.store.persist_slaves()

    def poll(self, group: str, slave_id: str, since: int = 0, limit: int | None = None) -> PollResult:
        """
        Return up to ``limit`` events with id > since not yet acked by the slave.

        Registers the slave if unseen and bumps its last-seen time.
        """
        group = validate_group(group)
        slave_id = (slave_id or "").strip()
        if not slave_id:
            raise ValidationFailed("missing group/slaveId")
        limit = self.clamp_limit(limit)
        since = max(0, int(since or 0))

        store = self.store
        with store.lock(group):
            # Never deliver events that a restart could lose
            store.ensure_durable(group)
            store.slaves.touch(group, slave_id)
            store.persist_slaves()

            batch = []
            for event in store.log.after(group, since):
                if event.is_acked_by(slave_id):
                    continue
                # Copy so later acks cannot mutate a batch being serialized
                batch.append(replace(event, acks=dict(event.acks)))
                if len(batch) >= limit:
                    break

            result = PollResult(
                events=batch,
                now=store.clock(),
                max_event_id=store.log.max_event_id(group),
            )

        metrics.record_poll(group, len(batch))
        logger.debug(
            "Poll served",
            group=group,
            slave_id=slave_id,
            since=since,
            delivered=len(batch),
        )
        return result

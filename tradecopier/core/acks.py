"""Acknowledgment handler: records a slave's outcome for one event."""

from __future__ import annotations

from tradecopier.core.errors import ValidationFailed
from tradecopier.core.ingress import validate_group
from tradecopier.core.models import AckRecord, AckResult, AckStatus
from tradecopier.core.store import CopierStore
from tradecopier.infrastructure.logging import get_logger
from tradecopier.infrastructure.metrics import metrics

logger = get_logger(__name__)


class AckHandler:
    """Applies slave acknowledgments to a store and triggers retention."""

    def __init__(self, store: CopierStore):
        self.store = store

    def ack(
        self,
        group: str,
        slave_id: str,
        event_id: int,
        status: str | AckStatus,
        err: str = "",
    ) -> AckResult:
        """
        Record ``acks[slave_id]`` on the event and raise the slave's cursor.

        An ack for an event that no longer exists succeeds as ``gone``.
        """
        group = validate_group(group)
        slave_id = (slave_id or "").strip()
        if not slave_id:
            raise ValidationFailed("missing fields: slaveId")
        event_id = int(event_id or 0)
        if event_id <= 0:
            raise ValidationFailed("missing fields: event_id")
        if not isinstance(status, AckStatus):
            status = AckStatus.parse(status)

        store = self.store
        with store.lock(group):
            store.ensure_durable(group)
            slave = store.slaves.record_ack(group, slave_id, event_id)
            store.persist_slaves()

            event = store.log.get(group, event_id)
            gone = event is None
            if not gone:
                event.acks[slave_id] = AckRecord(status=status, err=err or "", ts=store.clock())

            report = store.run_retention(group)
            if not gone or report.changed:
                store.persist_group(group)

        metrics.record_ack(group, status.value, gone=gone)
        logger.info(
            "Ack recorded" if not gone else "Ack for collected event",
            group=group,
            slave_id=slave_id,
            event_id=event_id,
            status=status.value,
            err=err,
        )
        return AckResult(gone=gone, last_ack_id=slave.last_ack_id, removed=len(report.removed))

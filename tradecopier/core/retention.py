"""
Retention / garbage collection for the event log.

Two independent mechanisms, both run opportunistically on push and ack:

1. Ack-complete removal: an event goes once every currently-known slave of
   its group holds a terminal ack for it and the last of those acks is older
   than the ack grace period. The grace period lets a slave that has not
   polled yet become known and still receive the event. A group with no
   known slaves keeps everything. When a CLOSE goes, the earlier OPEN/MODIFY events of the same
   position go with it and the ticket is retired.
2. Bounded size/age eviction: a hard cap on events per group (oldest first)
   and a maximum age, regardless of acks.

Callers must hold the group lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tradecopier.core.event_log import EventLog
from tradecopier.core.models import Clock, CopierEvent, EventType, now_ms
from tradecopier.core.tickets import TicketPhase, TicketStateTracker
from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetentionReport:
    """Events removed by one retention pass, by cause."""
    acked: list[CopierEvent] = field(default_factory=list)
    cascade: list[CopierEvent] = field(default_factory=list)
    size: list[CopierEvent] = field(default_factory=list)
    age: list[CopierEvent] = field(default_factory=list)
    retired_tickets: list[str] = field(default_factory=list)

    @property
    def removed(self) -> list[CopierEvent]:
        return self.acked + self.cascade + self.size + self.age

    @property
    def removed_ids(self) -> list[int]:
        return [e.id for e in self.removed]

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.retired_tickets)

    def counts(self) -> dict[str, int]:
        return {
            "acked": len(self.acked),
            "cascade": len(self.cascade),
            "size": len(self.size),
            "age": len(self.age),
        }


class RetentionPolicy:
    """
    Applies both retention mechanisms to one group.

    Args:
        max_events: Hard cap on events per group
        max_age_ms: Maximum event age in milliseconds
        cascade_on_close: Also drop earlier OPEN/MODIFY rows of a collected CLOSE
        ack_grace_ms: How long an ack-complete event stays deliverable
    """

    def __init__(
        self,
        max_events: int = 50_000,
        max_age_ms: int = 3 * 24 * 3600 * 1000,
        cascade_on_close: bool = True,
        ack_grace_ms: int = 5 * 60 * 1000,
        clock: Clock = now_ms,
    ):
        self.max_events = max_events
        self.max_age_ms = max_age_ms
        self.cascade_on_close = cascade_on_close
        self.ack_grace_ms = ack_grace_ms
        self._clock = clock

    def run(
        self,
        group: str,
        log: EventLog,
        tickets: TicketStateTracker,
        known_slaves: set[str],
    ) -> RetentionReport:
        report = RetentionReport()
        self.collect_acked(group, log, tickets, known_slaves, report)
        self.evict_bounded(group, log, tickets, report)

        if report.changed:
            logger.debug("Retention pass", group=group, **report.counts())
        return report

    def collect_acked(
        self,
        group: str,
        log: EventLog,
        tickets: TicketStateTracker,
        known_slaves: set[str],
        report: RetentionReport,
    ) -> None:
        """Remove events every known slave acknowledged before the grace cutoff."""
        if not known_slaves:
            return

        settled_before = self._clock() - self.ack_grace_ms
        complete = [
            e for e in log.events(group)
            if e.is_ack_complete(known_slaves) and e.last_ack_at(known_slaves) <= settled_before
        ]
        if not complete:
            return
        report.acked.extend(log.remove(group, [e.id for e in complete]))

        if not self.cascade_on_close:
            return

        for close in (e for e in report.acked if e.type is EventType.CLOSE):
            earlier = [
                e.id for e in log.events(group)
                if e.position_key == close.position_key
                and e.id < close.id
                and e.type in (EventType.OPEN, EventType.MODIFY)
            ]
            report.cascade.extend(log.remove(group, earlier))
            self._retire_if_closed(group, close.position_key, tickets, report)

    def evict_bounded(
        self,
        group: str,
        log: EventLog,
        tickets: TicketStateTracker,
        report: RetentionReport,
    ) -> None:
        """Drop events past the age limit, then the oldest beyond the size cap."""
        cutoff = self._clock() - self.max_age_ms
        expired = [e.id for e in log.events(group) if e.ts < cutoff]
        if expired:
            report.age.extend(log.remove(group, expired))

        overflow = log.count(group) - self.max_events
        if overflow > 0:
            oldest = [e.id for e in log.events(group)[:overflow]]
            report.size.extend(log.remove(group, oldest))

        for close in (e for e in report.age + report.size if e.type is EventType.CLOSE):
            self._retire_if_closed(group, close.position_key, tickets, report)

    @staticmethod
    def _retire_if_closed(
        group: str,
        position_key: str,
        tickets: TicketStateTracker,
        report: RetentionReport,
    ) -> None:
        # A reopened position keeps its ticket
        if tickets.phase(group, position_key) is TicketPhase.CLOSED:
            if tickets.retire(group, position_key):
                report.retired_tickets.append(position_key)

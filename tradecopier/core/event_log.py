"""
Append-only event log, partitioned by group.

Each group keeps:
- events in ascending id order (ids strictly increasing, never reused)
- the next-id counter, which survives collection and restarts
- the last known master equity, used as a fallback for pushes without one

Callers must hold the group lock for every mutation.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from tradecopier.core.models import CopierEvent, EventType
from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GroupLog:
    """Events and counters of one group."""
    group: str
    next_id: int = 1
    events: list[CopierEvent] = field(default_factory=list)
    last_master_equity: float = 0.0
    _by_id: dict[int, CopierEvent] = field(default_factory=dict, repr=False)

    @property
    def max_event_id(self) -> int:
        return self.next_id - 1

    def reindex(self) -> None:
        self.events.sort(key=lambda e: e.id)
        self._by_id = {e.id: e for e in self.events}


class EventLog:
    """
    Holds every group's log.

    Usage:
        log = EventLog()
        event = log.append("G1", EventType.OPEN, "uid:7", ts=now, symbol="EURUSD")
        for ev in log.after("G1", since=0):
            ...
    """

    def __init__(self):
        self._groups: dict[str, GroupLog] = {}

    def group_log(self, group: str) -> GroupLog:
        log = self._groups.get(group)
        if log is None:
            log = GroupLog(group=group)
            self._groups[group] = log
        return log

    def groups(self) -> list[str]:
        return sorted(self._groups)

    def append(
        self,
        group: str,
        event_type: EventType,
        position_key: str,
        ts: int,
        **attrs: Any,
    ) -> CopierEvent:
        """Assign the next id of the group and append a new event."""
        log = self.group_log(group)
        event = CopierEvent(
            id=log.next_id,
            group=group,
            type=event_type,
            position_key=position_key,
            ts=ts,
            **attrs,
        )
        log.next_id += 1
        log.events.append(event)
        log._by_id[event.id] = event

        if event.master_equity > 0:
            log.last_master_equity = event.master_equity

        return event

    def get(self, group: str, event_id: int) -> CopierEvent | None:
        log = self._groups.get(group)
        if log is None:
            return None
        return log._by_id.get(event_id)

    def after(self, group: str, since: int) -> Iterator[CopierEvent]:
        """Events with id > since, ascending."""
        log = self._groups.get(group)
        if log is None:
            return iter(())
        start = bisect.bisect_right(log.events, since, key=lambda e: e.id)
        return iter(log.events[start:])

    def events(self, group: str) -> list[CopierEvent]:
        log = self._groups.get(group)
        return list(log.events) if log else []

    def remove(self, group: str, event_ids: Iterable[int]) -> list[CopierEvent]:
        """Drop events by id. Returns the removed events."""
        log = self._groups.get(group)
        if log is None:
            return []

        doomed = set(event_ids)
        if not doomed:
            return []

        removed = [e for e in log.events if e.id in doomed]
        if removed:
            log.events = [e for e in log.events if e.id not in doomed]
            for event in removed:
                log._by_id.pop(event.id, None)
        return removed

    def count(self, group: str | None = None) -> int:
        if group is not None:
            log = self._groups.get(group)
            return len(log.events) if log else 0
        return sum(len(log.events) for log in self._groups.values())

    def max_event_id(self, group: str) -> int:
        log = self._groups.get(group)
        return log.max_event_id if log else 0

    def last_master_equity(self, group: str) -> float:
        log = self._groups.get(group)
        return log.last_master_equity if log else 0.0

    def snapshot(self, group: str) -> dict[str, Any]:
        """JSON-ready record of a group log."""
        log = self.group_log(group)
        return {
            "group": group,
            "next_id": log.next_id,
            "last_master_equity": log.last_master_equity,
            "events": [e.to_dict() for e in log.events],
        }

    def restore(self, group: str, data: dict[str, Any]) -> GroupLog:
        """Replace a group log from a persisted record."""
        events = [CopierEvent.from_dict(e) for e in data.get("events", [])]
        max_seen = max((e.id for e in events), default=0)
        log = GroupLog(
            group=group,
            # Never hand out an id that is still present in the record
            next_id=max(int(data.get("next_id", 1)), max_seen + 1),
            events=events,
            last_master_equity=float(data.get("last_master_equity", 0.0)),
        )
        log.reindex()
        self._groups[group] = log
        logger.info("Group log restored", group=group, events=len(events), next_id=log.next_id)
        return log

"""
Slave Registry.

Tracks every known slave per group with its last-seen time and the highest
event id it has acknowledged. The set of known slaves of a group decides
when an event is ack-complete.
"""

from __future__ import annotations

from threading import Lock
from typing import Any

from tradecopier.core.models import Clock, SlaveState, now_ms
from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


def slave_key(group: str, slave_id: str) -> str:
    return f"{group}|{slave_id}"


def split_slave_key(key: str) -> tuple[str, str]:
    group, _, slave_id = key.partition("|")
    return group, slave_id


class SlaveRegistry:
    """
    Known slaves, partitioned by group.

    Thread-safe. ``inactive_after_ms`` of 0 disables pruning.
    """

    def __init__(self, clock: Clock = now_ms, inactive_after_ms: int = 0):
        self._clock = clock
        self.inactive_after_ms = inactive_after_ms
        self._slaves: dict[str, dict[str, SlaveState]] = {}
        self._lock = Lock()

    def touch(self, group: str, slave_id: str) -> SlaveState:
        """Register the slave if unseen and bump its last-seen time."""
        with self._lock:
            state = self._upsert(group, slave_id)
            state.last_seen_at = self._clock()
            return SlaveState(state.last_ack_id, state.last_seen_at)

    def record_ack(self, group: str, slave_id: str, event_id: int) -> SlaveState:
        """Bump last-seen time and raise last_ack_id, never lowering it."""
        with self._lock:
            state = self._upsert(group, slave_id)
            state.last_ack_id = max(state.last_ack_id, int(event_id))
            state.last_seen_at = self._clock()
            return SlaveState(state.last_ack_id, state.last_seen_at)

    def _upsert(self, group: str, slave_id: str) -> SlaveState:
        group_slaves = self._slaves.setdefault(group, {})
        state = group_slaves.get(slave_id)
        if state is None:
            state = SlaveState()
            group_slaves[slave_id] = state
            logger.info("Slave registered", group=group, slave_id=slave_id)
        return state

    def get(self, group: str, slave_id: str) -> SlaveState | None:
        with self._lock:
            state = self._slaves.get(group, {}).get(slave_id)
            return SlaveState(state.last_ack_id, state.last_seen_at) if state else None

    def known_slaves(self, group: str) -> set[str]:
        with self._lock:
            return set(self._slaves.get(group, {}))

    def prune_inactive(self, group: str | None = None) -> list[tuple[str, str]]:
        """
        Remove slaves idle for longer than the inactivity window.

        Returns:
            (group, slave_id) pairs that were pruned
        """
        if self.inactive_after_ms <= 0:
            return []

        cutoff = self._clock() - self.inactive_after_ms
        pruned: list[tuple[str, str]] = []
        with self._lock:
            groups = [group] if group is not None else list(self._slaves)
            for g in groups:
                group_slaves = self._slaves.get(g)
                if not group_slaves:
                    continue
                for sid in [s for s, st in group_slaves.items() if st.last_seen_at < cutoff]:
                    del group_slaves[sid]
                    pruned.append((g, sid))
                if not group_slaves:
                    del self._slaves[g]

        for g, sid in pruned:
            logger.info("Inactive slave pruned", group=g, slave_id=sid)
        return pruned

    def count(self, group: str | None = None) -> int:
        with self._lock:
            if group is not None:
                return len(self._slaves.get(group, {}))
            return sum(len(s) for s in self._slaves.values())

    def groups(self) -> list[str]:
        with self._lock:
            return sorted(self._slaves)

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready record keyed by ``group|slaveId``."""
        with self._lock:
            return {
                "slaves": {
                    slave_key(g, sid): state.to_dict()
                    for g, group_slaves in self._slaves.items()
                    for sid, state in group_slaves.items()
                }
            }

    def restore(self, data: dict[str, Any]) -> None:
        with self._lock:
            self._slaves = {}
            for key, record in (data.get("slaves") or {}).items():
                group, sid = split_slave_key(key)
                if not group or not sid:
                    logger.warning("Skipping malformed slave key", key=key)
                    continue
                self._slaves.setdefault(group, {})[sid] = SlaveState.from_dict(record)

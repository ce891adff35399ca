"""
Idempotency index for pushed events.

Protects against network-retry duplicates that the ticket state machine
cannot see (e.g. a retried OPEN arriving after its own CLOSE):
- Key format: {type}:{position_key}
- A MODIFY entry also stores a fingerprint of the modifiable fields and is
  replaced by every accepted MODIFY of the position, so only a retry of the
  latest modification dedupes. Going back to an earlier value is a new event.
- An accepted OPEN drops the MODIFY entry of its position
- Only active (not yet collected) events are indexed

Usage:
    index = IdempotencyIndex()
    key = index.key_for(EventType.OPEN, "uid:42")
    existing = index.lookup("G1", key)
    if existing is None:
        index.record_event(event)
"""

from __future__ import annotations
import hashlib
from threading import Lock
from typing import Dict, Iterable, Optional, Tuple

from tradecopier.core.models import CopierEvent, EventType
from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


def modify_fingerprint(sl: float, tp: float, price: float, lots: float) -> str:
    """Short stable digest of the fields a MODIFY can change."""
    raw = f"{float(sl)!r}|{float(tp)!r}|{float(price)!r}|{float(lots)!r}"
    return hashlib.md5(raw.encode()).hexdigest()[:12]


class IdempotencyIndex:
    """
    Maps idempotency keys to the id of the active event that claimed them.

    Thread-safe; partitioned by group.
    """

    def __init__(self):
        # key -> (event id, fingerprint); fingerprint is "" for OPEN/CLOSE
        self._by_key: Dict[str, Dict[str, Tuple[int, str]]] = {}
        self._by_id: Dict[str, Dict[int, str]] = {}
        self._lock = Lock()

    @staticmethod
    def key_for(event_type: EventType, position_key: str) -> str:
        """Build the idempotency key for a push."""
        return f"{event_type.value}:{position_key}"

    @staticmethod
    def fingerprint_for(
        event_type: EventType,
        sl: float = 0.0,
        tp: float = 0.0,
        price: float = 0.0,
        lots: float = 0.0,
    ) -> str:
        if event_type is not EventType.MODIFY:
            return ""
        return modify_fingerprint(sl, tp, price, lots)

    @classmethod
    def fingerprint_for_event(cls, event: CopierEvent) -> str:
        return cls.fingerprint_for(
            event.type, sl=event.sl, tp=event.tp, price=event.price, lots=event.lots,
        )

    def lookup(self, group: str, key: str, fingerprint: str = "") -> Optional[int]:
        """Id of the active event holding this key with the same fingerprint."""
        with self._lock:
            entry = self._by_key.get(group, {}).get(key)
        if entry is None or entry[1] != fingerprint:
            return None
        return entry[0]

    def record_event(self, event: CopierEvent) -> None:
        """Index an accepted event, replacing what its key held before."""
        with self._lock:
            self._claim_locked(event)

    def _claim_locked(self, event: CopierEvent) -> None:
        group = event.group
        if event.type is EventType.OPEN:
            # A new lifecycle: MODIFYs of the previous one are not retries
            self._drop_key_locked(group, self.key_for(EventType.MODIFY, event.position_key))
        self._record_locked(
            group,
            self.key_for(event.type, event.position_key),
            event.id,
            self.fingerprint_for_event(event),
        )

    def _record_locked(self, group: str, key: str, event_id: int, fingerprint: str) -> None:
        self._drop_key_locked(group, key)
        self._by_key.setdefault(group, {})[key] = (event_id, fingerprint)
        self._by_id.setdefault(group, {})[event_id] = key

    def _drop_key_locked(self, group: str, key: str) -> None:
        entry = self._by_key.get(group, {}).pop(key, None)
        if entry is not None:
            self._by_id.get(group, {}).pop(entry[0], None)

    def forget(self, group: str, event_ids: Iterable[int]) -> int:
        """Drop the entries of collected events. Returns how many were dropped."""
        dropped = 0
        with self._lock:
            by_key = self._by_key.get(group, {})
            by_id = self._by_id.get(group, {})
            for event_id in event_ids:
                key = by_id.pop(event_id, None)
                if key is None:
                    continue
                entry = by_key.get(key)
                if entry is not None and entry[0] == event_id:
                    del by_key[key]
                dropped += 1
        if dropped:
            logger.debug("Idempotency entries dropped", group=group, count=dropped)
        return dropped

    def rebuild(self, group: str, events: Iterable[CopierEvent]) -> None:
        """Re-index a group from its active events in id order (used after load)."""
        with self._lock:
            self._by_key[group] = {}
            self._by_id[group] = {}
            for event in events:
                self._claim_locked(event)

    def stats(self) -> Dict[str, int]:
        """Get index statistics."""
        with self._lock:
            return {
                "groups": len(self._by_key),
                "keys": sum(len(keys) for keys in self._by_key.values()),
            }

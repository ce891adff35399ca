"""
Ticket State Tracker.

Per (group, position key) state machine that decides whether an incoming
push is a legitimate lifecycle transition or a duplicate:

    NO_EVENT --OPEN-->   OPEN        accepted
    OPEN     --OPEN-->   OPEN        rejected OPEN_ALREADY
    OPEN     --MODIFY--> OPEN        accepted
    OPEN     --CLOSE-->  CLOSED      accepted
    NO_EVENT --CLOSE-->  NO_EVENT    rejected CLOSE_WITHOUT_OPEN
    CLOSED   --CLOSE-->  CLOSED      rejected CLOSE_ALREADY
    CLOSED   --OPEN-->   OPEN        accepted (new lifecycle)
    NO_EVENT/CLOSED --MODIFY-->      rejected MODIFY_WITHOUT_OPEN

Rejections are answers, not errors. Callers must hold the group lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from tradecopier.core.models import Clock, EventType, RejectReason, TicketState, now_ms
from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


class TicketPhase(Enum):
    """Lifecycle phase of a position key."""

    NO_EVENT = "no_event"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class TicketDecision:
    """Tracker verdict for one push."""
    accepted: bool
    reason: RejectReason | None = None


class TicketStateTracker:
    """
    Tracks the lifecycle of every position key, partitioned by group.
    """

    def __init__(self, clock: Clock = now_ms):
        self._clock = clock
        self._states: dict[str, dict[str, TicketState]] = {}

    def phase(self, group: str, position_key: str) -> TicketPhase:
        state = self._states.get(group, {}).get(position_key)
        if state is None:
            return TicketPhase.NO_EVENT
        return TicketPhase.OPEN if state.is_open else TicketPhase.CLOSED

    def get(self, group: str, position_key: str) -> TicketState | None:
        return self._states.get(group, {}).get(position_key)

    def check(self, group: str, position_key: str, event_type: EventType) -> TicketDecision:
        """Decide a transition without applying it."""
        phase = self.phase(group, position_key)

        if event_type is EventType.OPEN:
            if phase is TicketPhase.OPEN:
                return TicketDecision(False, RejectReason.OPEN_ALREADY)
            return TicketDecision(True)

        if event_type is EventType.CLOSE:
            if phase is TicketPhase.NO_EVENT:
                return TicketDecision(False, RejectReason.CLOSE_WITHOUT_OPEN)
            if phase is TicketPhase.CLOSED:
                return TicketDecision(False, RejectReason.CLOSE_ALREADY)
            return TicketDecision(True)

        # MODIFY
        if phase is not TicketPhase.OPEN:
            return TicketDecision(False, RejectReason.MODIFY_WITHOUT_OPEN)
        return TicketDecision(True)

    def apply(self, group: str, position_key: str, event_type: EventType) -> None:
        """Record an accepted transition."""
        ts = self._clock()
        states = self._states.setdefault(group, {})
        state = states.get(position_key)

        if event_type is EventType.MODIFY:
            # MODIFY keeps the position open; only the timestamp moves
            if state is not None:
                state.updated_at = ts
            return

        is_open = event_type is EventType.OPEN
        if state is None:
            states[position_key] = TicketState(is_open=is_open, last_type=event_type, updated_at=ts)
        else:
            state.is_open = is_open
            state.last_type = event_type
            state.updated_at = ts

    def accept(self, group: str, position_key: str, event_type: EventType) -> TicketDecision:
        """Decide and, when accepted, apply a transition."""
        decision = self.check(group, position_key, event_type)
        if decision.accepted:
            self.apply(group, position_key, event_type)
        else:
            logger.debug(
                "Ticket transition rejected",
                group=group,
                position_key=position_key,
                type=event_type.value,
                reason=decision.reason.value,
            )
        return decision

    def retire(self, group: str, position_key: str) -> bool:
        """Forget a position key. Returns True if it was tracked."""
        states = self._states.get(group)
        if not states or position_key not in states:
            return False
        del states[position_key]
        if not states:
            del self._states[group]
        return True

    def count(self, group: str) -> int:
        return len(self._states.get(group, {}))

    def snapshot(self, group: str) -> dict[str, dict[str, Any]]:
        return {key: state.to_dict() for key, state in self._states.get(group, {}).items()}

    def restore(self, group: str, states: dict[str, dict[str, Any]]) -> None:
        self._states[group] = {key: TicketState.from_dict(data) for key, data in states.items()}
        if not self._states[group]:
            del self._states[group]

"""
Domain types for the copier relay.

Contains:
- EventType / AckStatus / RejectReason enums
- CopierEvent: one accepted trade-lifecycle event plus its per-slave acks
- TicketState / SlaveState: tracker and registry records
- PushResult / PollResult / AckResult: handler outcomes
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from tradecopier.core.errors import ValidationFailed

# All timestamps are epoch milliseconds
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class EventType(Enum):
    """Trade lifecycle transitions pushed by the master."""

    OPEN = "OPEN"
    MODIFY = "MODIFY"
    CLOSE = "CLOSE"

    @classmethod
    def parse(cls, raw: Any) -> "EventType":
        value = str(raw or "").strip().upper()
        try:
            return cls(value)
        except ValueError:
            raise ValidationFailed(f"unknown event type: {raw!r}") from None


class AckStatus(Enum):
    """Outcome reported by a slave for one event."""

    DONE = "DONE"
    ERR = "ERR"
    SKIP = "SKIP"

    @property
    def is_terminal(self) -> bool:
        """Whether the ack counts towards ack-complete removal.

        Errors are surfaced through health, not retried by the server,
        so every status is terminal.
        """
        return self in (AckStatus.DONE, AckStatus.ERR, AckStatus.SKIP)

    @classmethod
    def parse(cls, raw: Any) -> "AckStatus":
        value = str(raw or "").strip().upper()
        try:
            return cls(value)
        except ValueError:
            raise ValidationFailed(f"unknown ack status: {raw!r}") from None


class RejectReason(str, Enum):
    """Why a push was answered as a duplicate."""

    OPEN_ALREADY = "OPEN_ALREADY"
    CLOSE_WITHOUT_OPEN = "CLOSE_WITHOUT_OPEN"
    CLOSE_ALREADY = "CLOSE_ALREADY"
    MODIFY_WITHOUT_OPEN = "MODIFY_WITHOUT_OPEN"
    IDEMPOTENT_REPLAY = "IDEMPOTENT_REPLAY"


@dataclass
class AckRecord:
    """One slave's acknowledgment of one event."""
    status: AckStatus
    err: str = ""
    ts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "err": self.err, "ts": self.ts}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AckRecord":
        return cls(
            status=AckStatus.parse(data.get("status")),
            err=str(data.get("err", "")),
            ts=int(data.get("ts", 0)),
        )


@dataclass
class CopierEvent:
    """
    An accepted trade event.

    Immutable after append except for ``acks``.
    """

    # Identity
    id: int
    group: str
    type: EventType
    position_key: str
    ts: int

    # Trade attributes
    symbol: str
    master_ticket: int = 0
    open_time: int = 0
    uid: str = ""
    cmd: int = 0
    lots: float = 0.0
    price: float = 0.0
    sl: float = 0.0
    tp: float = 0.0
    magic: int = 0
    comment: str = ""
    master_equity: float = 0.0

    acks: dict[str, AckRecord] = field(default_factory=dict)

    def is_acked_by(self, slave_id: str) -> bool:
        return slave_id in self.acks

    def is_ack_complete(self, slave_ids: set[str]) -> bool:
        """Whether every given slave holds a terminal ack for this event."""
        if not slave_ids:
            return False
        for sid in slave_ids:
            record = self.acks.get(sid)
            if record is None or not record.status.is_terminal:
                return False
        return True

    def last_ack_at(self, slave_ids: set[str]) -> int:
        """Time of the latest ack among the given slaves, 0 when none acked."""
        return max((self.acks[sid].ts for sid in slave_ids if sid in self.acks), default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group": self.group,
            "type": self.type.value,
            "position_key": self.position_key,
            "ts": self.ts,
            "symbol": self.symbol,
            "master_ticket": self.master_ticket,
            "open_time": self.open_time,
            "uid": self.uid,
            "cmd": self.cmd,
            "lots": self.lots,
            "price": self.price,
            "sl": self.sl,
            "tp": self.tp,
            "magic": self.magic,
            "comment": self.comment,
            "master_equity": self.master_equity,
            "acks": {sid: rec.to_dict() for sid, rec in self.acks.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CopierEvent":
        return cls(
            id=int(data["id"]),
            group=str(data["group"]),
            type=EventType.parse(data["type"]),
            position_key=str(data["position_key"]),
            ts=int(data.get("ts", 0)),
            symbol=str(data.get("symbol", "")),
            master_ticket=int(data.get("master_ticket", 0)),
            open_time=int(data.get("open_time", 0)),
            uid=str(data.get("uid", "")),
            cmd=int(data.get("cmd", 0)),
            lots=float(data.get("lots", 0.0)),
            price=float(data.get("price", 0.0)),
            sl=float(data.get("sl", 0.0)),
            tp=float(data.get("tp", 0.0)),
            magic=int(data.get("magic", 0)),
            comment=str(data.get("comment", "")),
            master_equity=float(data.get("master_equity", 0.0)),
            acks={
                sid: AckRecord.from_dict(rec)
                for sid, rec in (data.get("acks") or {}).items()
            },
        )


@dataclass
class TicketState:
    """Lifecycle state of one position key."""
    is_open: bool
    last_type: EventType
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "last_type": self.last_type.value,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TicketState":
        return cls(
            is_open=bool(data.get("is_open", False)),
            last_type=EventType.parse(data.get("last_type")),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class SlaveState:
    """Registry record for one (group, slave)."""
    last_ack_id: int = 0
    last_seen_at: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"last_ack_id": self.last_ack_id, "last_seen_at": self.last_seen_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SlaveState":
        return cls(
            last_ack_id=int(data.get("last_ack_id", data.get("lastAckId", 0)) or 0),
            last_seen_at=int(data.get("last_seen_at", data.get("lastSeenAt", 0)) or 0),
        )


@dataclass
class PushResult:
    """Outcome of an ingress call."""
    id: int | None
    duplicated: bool = False
    reason: RejectReason | None = None


@dataclass
class PollResult:
    """Outcome of a delivery call."""
    events: list[CopierEvent]
    now: int
    max_event_id: int


@dataclass
class AckResult:
    """Outcome of an acknowledgment call."""
    gone: bool
    last_ack_id: int
    removed: int = 0

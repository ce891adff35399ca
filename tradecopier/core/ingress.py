"""
Ingress (push) handler.

Validates a master push, derives its position key, asks the ticket tracker
and the idempotency index whether it is new, and appends it to the log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from tradecopier.core.errors import ValidationFailed
from tradecopier.core.models import EventType, PushResult, RejectReason
from tradecopier.core.store import CopierStore
from tradecopier.infrastructure.logging import get_logger
from tradecopier.infrastructure.metrics import metrics

logger = get_logger(__name__)


@dataclass
class PushRequest:
    """A master push after transport decoding, before validation."""
    group: str
    type: str
    symbol: str = ""
    uid: str = ""
    master_ticket: int = 0
    open_time: int = 0
    cmd: int = 0
    lots: float = 0.0
    price: float = 0.0
    sl: float = 0.0
    tp: float = 0.0
    magic: int = 0
    comment: str = ""
    master_equity: float = 0.0


def derive_position_key(uid: str, master_ticket: int, open_time: int) -> str:
    """
    Identity of the position a push belongs to.

    Preference: explicit uid, then ticket plus open time, then the bare
    ticket (brokers reuse ticket numbers, so this last form can collide).
    """
    if uid:
        return f"uid:{uid}"
    if master_ticket > 0 and open_time > 0:
        return f"{master_ticket}@{open_time}"
    return str(master_ticket)


def validate_group(group: str) -> str:
    group = (group or "").strip()
    if not group:
        raise ValidationFailed("missing group")
    if "|" in group:
        raise ValidationFailed("group must not contain '|'")
    return group


class IngressHandler:
    """
    Accepts master pushes into a store.

    Usage:
        ingress = IngressHandler(store)
        result = ingress.push(PushRequest(group="G1", type="OPEN", ...))
    """

    def __init__(self, store: CopierStore, accepted_types: Iterable[str] = ("OPEN", "MODIFY", "CLOSE")):
        self.store = store
        self.accepted_types = {EventType.parse(t) for t in accepted_types}

    def validate(self, req: PushRequest) -> tuple[str, EventType, str]:
        """
        Check required fields.

        Returns:
            (group, event type, position key)

        Raises:
            ValidationFailed: nothing is persisted and no id is assigned
        """
        group = validate_group(req.group)
        if not str(req.type or "").strip():
            raise ValidationFailed("missing group/type")
        event_type = EventType.parse(req.type)
        if event_type not in self.accepted_types:
            raise ValidationFailed(f"event type {event_type.value} not accepted")

        if not (req.symbol or "").strip():
            raise ValidationFailed("missing symbol")
        uid = (req.uid or "").strip()
        if not uid and req.master_ticket <= 0:
            raise ValidationFailed("missing master_ticket/uid")

        if req.master_ticket > 0 and req.open_time <= 0 and not uid:
            logger.warning(
                "Position key falls back to bare ticket",
                group=group,
                master_ticket=req.master_ticket,
            )

        return group, event_type, derive_position_key(uid, req.master_ticket, req.open_time)

    def push(self, req: PushRequest) -> PushResult:
        group, event_type, position_key = self.validate(req)
        store = self.store
        key = store.index.key_for(event_type, position_key)
        fingerprint = store.index.fingerprint_for(
            event_type, sl=req.sl, tp=req.tp, price=req.price, lots=req.lots,
        )

        with store.lock(group):
            # A duplicate answer claims the original is durable
            store.ensure_durable(group)

            decision = store.tickets.check(group, position_key, event_type)
            if not decision.accepted:
                existing = store.index.lookup(group, key, fingerprint)
                return self._duplicate(group, position_key, decision.reason, existing)

            existing = store.index.lookup(group, key, fingerprint)
            if existing is not None:
                return self._duplicate(group, position_key, RejectReason.IDEMPOTENT_REPLAY, existing)

            store.tickets.apply(group, position_key, event_type)

            master_equity = float(req.master_equity or 0.0)
            if master_equity <= 0:
                master_equity = store.log.last_master_equity(group)

            event = store.log.append(
                group,
                event_type,
                position_key,
                ts=store.clock(),
                **self._attributes(req, master_equity),
            )
            store.index.record_event(event)

            store.run_retention(group)
            store.persist_group(group)

        metrics.record_push(group, event_type.value, duplicated=False)
        logger.info(
            "Event accepted",
            group=group,
            event_id=event.id,
            type=event_type.value,
            symbol=event.symbol,
            position_key=position_key,
        )
        return PushResult(id=event.id)

    def _duplicate(
        self,
        group: str,
        position_key: str,
        reason: RejectReason,
        existing_id: int | None,
    ) -> PushResult:
        metrics.record_push(group, "", duplicated=True, reason=reason.value)
        logger.info(
            "Duplicate push",
            group=group,
            position_key=position_key,
            reason=reason.value,
            event_id=existing_id,
        )
        return PushResult(id=existing_id, duplicated=True, reason=reason)

    @staticmethod
    def _attributes(req: PushRequest, master_equity: float) -> dict[str, Any]:
        return {
            "symbol": req.symbol.strip(),
            "uid": (req.uid or "").strip(),
            "master_ticket": int(req.master_ticket),
            "open_time": int(req.open_time),
            "cmd": int(req.cmd),
            "lots": float(req.lots),
            "price": float(req.price),
            "sl": float(req.sl),
            "tp": float(req.tp),
            "magic": int(req.magic),
            "comment": req.comment or "",
            "master_equity": master_equity,
        }

"""
Core replication protocol for the copier relay.

Contains:
- tickets: per-position lifecycle state machine
- event_log: append-only per-group event log
- idempotency: retry-duplicate index
- slaves: slave registry
- retention: ack-complete collection and bounded eviction
- store: explicit state object with per-group locks
- ingress / delivery / acks: push, poll and ack handlers
"""

from tradecopier.core.errors import (
    CopierError,
    ValidationFailed,
    AuthorizationFailed,
    PersistenceError,
)

from tradecopier.core.models import (
    AckStatus,
    CopierEvent,
    EventType,
    RejectReason,
)

from tradecopier.core.store import CopierStore
from tradecopier.core.ingress import IngressHandler, PushRequest
from tradecopier.core.delivery import DeliveryHandler
from tradecopier.core.acks import AckHandler

__all__ = [
    # Errors
    "CopierError",
    "ValidationFailed",
    "AuthorizationFailed",
    "PersistenceError",
    # Models
    "AckStatus",
    "CopierEvent",
    "EventType",
    "RejectReason",
    # Handlers
    "CopierStore",
    "IngressHandler",
    "PushRequest",
    "DeliveryHandler",
    "AckHandler",
]

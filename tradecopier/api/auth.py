"""
Transport-level credential checks run before the core handlers.

- Master pushes require ``x-master-key`` when MASTER_KEY is configured.
- Slave endpoints accept an optional ``x-api-key``; when present it must map
  to an active client of the request's group, and the client is bound to a
  single slave id.
"""

import hmac

from fastapi import Request

from tradecopier.core.clients import Client, ClientRegistry
from tradecopier.core.errors import AuthorizationFailed


def require_master(request: Request, master_key: str) -> None:
    """Reject pushes without the master credential (no-op when unset)."""
    if not master_key:
        return
    supplied = request.headers.get("x-master-key", "")
    if not hmac.compare_digest(supplied.encode(), master_key.encode()):
        raise AuthorizationFailed("unauthorized master", status_code=401)


def optional_client(request: Request, clients: ClientRegistry, group: str) -> Client | None:
    """Resolve the client behind ``x-api-key``, or None when no key is sent."""
    api_key = request.headers.get("x-api-key", "").strip()
    if not api_key:
        return None
    return clients.resolve(api_key, group)

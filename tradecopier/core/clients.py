"""
Client registry: credential → subscription lookup and slave binding.

Clients are provisioned outside the relay (the registry record is written
by the subscription tooling). The relay only reads them and binds each
client's credential to the first slave id that uses it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any

from tradecopier.core.errors import AuthorizationFailed
from tradecopier.core.models import Clock, now_ms
from tradecopier.infrastructure.logging import get_logger
from tradecopier.storage.base import StorageBackend

logger = get_logger(__name__)


@dataclass
class Client:
    """A subscriber holding one API key for one group."""
    client_id: str
    group_id: str
    api_key: str
    full_name: str = ""
    enabled: bool = True
    created_at: int = 0
    expires_at: int = 0
    bound_slave_id: str = ""

    def is_active(self, now: int) -> bool:
        return self.enabled and self.expires_at > now

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Client":
        return cls(
            client_id=str(data.get("client_id", data.get("clientId", ""))),
            group_id=str(data.get("group_id", data.get("groupId", ""))),
            api_key=str(data.get("api_key", data.get("apiKey", ""))),
            full_name=str(data.get("full_name", data.get("fullName", ""))),
            enabled=bool(data.get("enabled", True)),
            created_at=int(data.get("created_at", data.get("createdAt", 0)) or 0),
            expires_at=int(data.get("expires_at", data.get("expiresAt", 0)) or 0),
            bound_slave_id=str(data.get("bound_slave_id", data.get("boundSlaveId", "")) or ""),
        )


class ClientRegistry:
    """
    Read-mostly view of the client registry record.

    The only write is binding a client to a slave id.
    """

    def __init__(self, backend: StorageBackend, clock: Clock = now_ms):
        self._backend = backend
        self._clock = clock
        self._lock = Lock()
        self._clients: dict[str, Client] = {}
        self.reload()

    def reload(self) -> None:
        record = self._backend.load_clients()
        clients = [Client.from_dict(c) for c in record.get("clients", [])]
        with self._lock:
            self._clients = {c.api_key: c for c in clients if c.api_key}
        logger.info("Client registry loaded", clients=len(self._clients))

    def count(self) -> int:
        with self._lock:
            return len(self._clients)

    def resolve(self, api_key: str, group: str) -> Client:
        """
        Look up an active client for a credential and group.

        Raises:
            AuthorizationFailed: unknown key (401), disabled/expired client or
                group mismatch (403)
        """
        with self._lock:
            client = self._clients.get(api_key)
        if client is None:
            raise AuthorizationFailed("invalid api key", status_code=401)
        if not client.is_active(self._clock()):
            raise AuthorizationFailed("expired/disabled", status_code=403)
        if group and client.group_id != group:
            raise AuthorizationFailed("group mismatch", status_code=403)
        return client

    def bind(self, client: Client, slave_id: str) -> str:
        """
        Bind an unbound client to ``slave_id``; reject a different slave.

        Returns:
            The bound slave id
        """
        with self._lock:
            if not client.bound_slave_id:
                client.bound_slave_id = slave_id
                self._save_locked()
                logger.info("Client bound to slave", client_id=client.client_id, slave_id=slave_id)
            elif client.bound_slave_id != slave_id:
                raise AuthorizationFailed(
                    "this api key is already bound to another slaveId", status_code=403
                )
            return client.bound_slave_id

    def check_binding(self, client: Client, slave_id: str) -> None:
        """Reject a bound client used with another slave id; never binds."""
        if client.bound_slave_id and client.bound_slave_id != slave_id:
            raise AuthorizationFailed("boundSlaveId mismatch", status_code=403)

    def _save_locked(self) -> None:
        self._backend.save_clients({"clients": [asdict(c) for c in self._clients.values()]})

"""Storage interface shared by the volatile and durable backends."""

from abc import ABC, abstractmethod
from typing import Any


class StorageBackend(ABC):
    """
    Persists the relay's independent records.

    Records:
    - one group log per group (events, next-id counter, last master equity, tickets)
    - the slave registry
    - the client registry

    Every save must be complete before it returns. There is no transaction
    spanning two records.
    """

    name: str = "abstract"

    @abstractmethod
    def load_group_logs(self) -> dict[str, dict[str, Any]]:
        """Return every persisted group log keyed by group."""

    @abstractmethod
    def save_group_log(self, group: str, record: dict[str, Any]) -> None:
        """Durably replace one group's log record."""

    @abstractmethod
    def load_slaves(self) -> dict[str, Any]:
        """Return the slave registry record."""

    @abstractmethod
    def save_slaves(self, record: dict[str, Any]) -> None:
        """Durably replace the slave registry record."""

    @abstractmethod
    def load_clients(self) -> dict[str, Any]:
        """Return the client registry record."""

    @abstractmethod
    def save_clients(self, record: dict[str, Any]) -> None:
        """Durably replace the client registry record."""

"""Volatile backend: records live only as long as the process."""

import copy
from typing import Any

from tradecopier.storage.base import StorageBackend


class MemoryBackend(StorageBackend):
    """
    Keeps deep copies of saved records in memory.

    Handing the same instance to a fresh store replays what was saved,
    which is how tests simulate a restart without touching disk.
    """

    name = "memory"

    def __init__(self):
        self._group_logs: dict[str, dict[str, Any]] = {}
        self._slaves: dict[str, Any] = {}
        self._clients: dict[str, Any] = {}

    def load_group_logs(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._group_logs)

    def save_group_log(self, group: str, record: dict[str, Any]) -> None:
        self._group_logs[group] = copy.deepcopy(record)

    def load_slaves(self) -> dict[str, Any]:
        return copy.deepcopy(self._slaves)

    def save_slaves(self, record: dict[str, Any]) -> None:
        self._slaves = copy.deepcopy(record)

    def load_clients(self) -> dict[str, Any]:
        return copy.deepcopy(self._clients)

    def save_clients(self, record: dict[str, Any]) -> None:
        self._clients = copy.deepcopy(record)

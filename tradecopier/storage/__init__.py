"""
Storage backends for the copier relay.

Contains:
- base: StorageBackend interface
- memory: volatile in-process backend
- file: durable atomic-file backend
"""

from tradecopier.infrastructure.config import StorageConfig
from tradecopier.storage.base import StorageBackend
from tradecopier.storage.file import JsonFileBackend
from tradecopier.storage.memory import MemoryBackend


def create_backend(config: StorageConfig) -> StorageBackend:
    """Build the backend selected by configuration."""
    if config.backend == "file":
        return JsonFileBackend(config.data_dir)
    return MemoryBackend()


__all__ = [
    "StorageBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "create_backend",
]

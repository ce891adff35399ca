"""Durable backend: one JSON file per record, replaced atomically."""

import json
import os
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from tradecopier.core.errors import PersistenceError
from tradecopier.infrastructure.logging import get_logger
from tradecopier.storage.base import StorageBackend

logger = get_logger(__name__)

EVENTS_PREFIX = "events_"


class JsonFileBackend(StorageBackend):
    """
    Persists records as JSON under ``data_dir``.

    Layout:
        events_<quoted group>.json   one per group log
        slaves.json                  slave registry
        clients.json                 client registry

    Writes go to a temp file that is flushed, fsynced and then renamed over
    the target, so a crash leaves either the old or the new record.
    """

    name = "file"

    def __init__(self, data_dir: Path | str):
        """
        Initialize the file backend.

        Args:
            data_dir: Directory holding the record files
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.slaves_path = self.data_dir / "slaves.json"
        self.clients_path = self.data_dir / "clients.json"

    def group_log_path(self, group: str) -> Path:
        return self.data_dir / f"{EVENTS_PREFIX}{quote(group, safe='')}.json"

    def load_group_logs(self) -> dict[str, dict[str, Any]]:
        logs: dict[str, dict[str, Any]] = {}
        for path in sorted(self.data_dir.glob(f"{EVENTS_PREFIX}*.json")):
            record = self._read(path)
            if not record:
                continue
            group = str(record.get("group") or unquote(path.stem[len(EVENTS_PREFIX):]))
            logs[group] = record
        return logs

    def save_group_log(self, group: str, record: dict[str, Any]) -> None:
        self._write_atomic(self.group_log_path(group), record)

    def load_slaves(self) -> dict[str, Any]:
        return self._read(self.slaves_path)

    def save_slaves(self, record: dict[str, Any]) -> None:
        self._write_atomic(self.slaves_path, record)

    def load_clients(self) -> dict[str, Any]:
        return self._read(self.clients_path)

    def save_clients(self, record: dict[str, Any]) -> None:
        self._write_atomic(self.clients_path, record)

    def _write_atomic(self, path: Path, record: dict[str, Any]) -> None:
        """
        Write a record with temp-file-then-rename.

        Raises:
            PersistenceError: the write or the rename failed
        """
        temp_path = path.with_name(path.name + ".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename (POSIX guaranteed atomic)
            temp_path.replace(path)
        except OSError as e:
            logger.error("Failed to persist record", path=str(path), error=str(e))
            raise PersistenceError(f"failed to persist {path.name}: {e}") from e

        logger.debug("Record persisted", path=str(path))

    def _read(self, path: Path) -> dict[str, Any]:
        """
        Load a record, moving a corrupt file aside.

        Returns:
            The record, or an empty dict when missing, blank or corrupt

        Raises:
            PersistenceError: a corrupt file could not be moved aside
        """
        if not path.exists():
            return {}

        try:
            text = path.read_text(encoding="utf-8")
            if not text.strip():
                return {}
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return data
        except (json.JSONDecodeError, ValueError) as e:
            logger.error("Corrupted persistence file", path=str(path), error=str(e))
            backup_path = path.with_name(f"{path.name}.backup.{int(time.time())}")
            try:
                path.rename(backup_path)
            except OSError as rename_error:
                logger.error("Failed to move corrupted file aside", path=str(path), error=str(rename_error))
                raise PersistenceError(f"corrupted {path.name} could not be backed up: {rename_error}") from rename_error
            logger.warning("Backed up corrupted file", backup_path=str(backup_path))
            return {}

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import List

from ce_browser.core.exceptions import PersistenceError
from ce_browser.metadata_io.session_record import CellStoreSnapshot, generate_backup_id
from ce_browser.services.storage import StorageBackend
from ce_browser.validation.errors import ValidationError
from ce_browser.validation.session_validation import validate_session_record

logger = logging.getLogger(__name__)

RECORD_NAME = "cell_metrics.json"
BACKUP_DIR = "backups"


class PersistenceGateway(ABC):
    """
    Boundary to wherever session records are kept.

    Implementations raise PersistenceError for any IO or decoding failure.
    """

    @abstractmethod
    def load(self, ref: str) -> CellStoreSnapshot:
        pass

    @abstractmethod
    def save(self, ref: str, snapshot: CellStoreSnapshot) -> None:
        pass

    @abstractmethod
    def backup(self, ref: str, snapshot: CellStoreSnapshot) -> str:
        """Store ``snapshot`` as a backup of ``ref`` and return the backup id."""
        pass

    @abstractmethod
    def list_backups(self, ref: str) -> List[str]:
        """Backup ids of ``ref``, oldest first."""
        pass

    @abstractmethod
    def load_backup(self, ref: str, backup_id: str) -> CellStoreSnapshot:
        pass


class JsonSessionGateway(PersistenceGateway):
    """
    One JSON record per session on a StorageBackend:

        <ref>/cell_metrics.json
        <ref>/backups/<backup_id>.json
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def _record_path(self, ref: str) -> str:
        return f"{ref}/{RECORD_NAME}"

    def _backup_path(self, ref: str, backup_id: str) -> str:
        return f"{ref}/{BACKUP_DIR}/{backup_id}.json"

    def _write(self, path: str, snapshot: CellStoreSnapshot) -> None:
        try:
            data = json.dumps(snapshot.to_dict(), indent=2).encode("utf-8")
            self.storage.write_bytes(path, data)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def _read(self, path: str) -> CellStoreSnapshot:
        try:
            raw = json.loads(self.storage.read_bytes(path))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

        try:
            validate_session_record(raw)
        except ValidationError as e:
            raise PersistenceError(f"Invalid session record {path}: {e}") from e

        return CellStoreSnapshot.from_dict(raw)

    def load(self, ref: str) -> CellStoreSnapshot:
        logger.info("Loading session record", extra={"ref": ref})
        return self._read(self._record_path(ref))

    def save(self, ref: str, snapshot: CellStoreSnapshot) -> None:
        self._write(self._record_path(ref), snapshot)
        logger.info("Session record written", extra={"ref": ref, "n_cells": len(snapshot.cells)})

    def backup(self, ref: str, snapshot: CellStoreSnapshot) -> str:
        backup_id = generate_backup_id()
        self._write(self._backup_path(ref, backup_id), snapshot)
        logger.info("Session backup written", extra={"ref": ref, "backup_id": backup_id})
        return backup_id

    def list_backups(self, ref: str) -> List[str]:
        try:
            files = self.storage.list_files(f"{ref}/{BACKUP_DIR}", suffix=".json")
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to list backups of {ref}: {e}") from e
        return sorted(f.rsplit("/", 1)[-1][: -len(".json")] for f in files)

    def load_backup(self, ref: str, backup_id: str) -> CellStoreSnapshot:
        path = self._backup_path(ref, backup_id)
        try:
            exists = self.storage.exists(path)
        except ValueError as e:
            raise PersistenceError(str(e)) from e
        if not exists:
            raise PersistenceError(f"No backup '{backup_id}' for session {ref}")
        return self._read(path)

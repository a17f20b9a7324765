from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ce_browser.core.exceptions import PersistenceError
from ce_browser.metadata_io.session_record import now_iso
from ce_browser.services.storage import StorageBackend

if TYPE_CHECKING:
    from ce_browser.core.cell_store import CellStore

logger = logging.getLogger(__name__)


class AutosaveSink(ABC):
    """
    Receives the periodic autosave export. Independent of session saves:
    nothing is backed up and the touched set is not cleared.
    """

    @abstractmethod
    def export(self, store: "CellStore", *, step: int) -> None:
        pass


class StorageAutosaveSink(AutosaveSink):
    """
    Writes the whole batch as one JSON document, ``autosave/<var_name>.json``,
    overwritten on every autosave.
    """

    def __init__(self, storage: StorageBackend, var_name: str = "cell_metrics"):
        self.storage = storage
        self.var_name = var_name

    @property
    def path(self) -> str:
        return f"autosave/{self.var_name}.json"

    def export(self, store: "CellStore", *, step: int) -> None:
        payload = {
            "var_name": self.var_name,
            "step": step,
            "exported_at": now_iso(),
            "sessions": [store.session_snapshot(b).to_dict() for b in store.batch_ids],
        }
        try:
            self.storage.write_bytes(self.path, json.dumps(payload, indent=2).encode("utf-8"))
        except OSError as e:
            raise PersistenceError(f"Autosave to {self.path} failed: {e}") from e
        logger.info("Autosave written", extra={"path": self.path, "step": step})

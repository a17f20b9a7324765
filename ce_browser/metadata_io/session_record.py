from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ce_browser.core.fields import SET_FIELDS, UID

SCHEMA_VERSION = 1

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------

def generate_backup_id() -> str:
    """
    Generate a sortable, unique id for a session backup
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"backup-{stamp}-{uuid.uuid4().hex[:6]}"


def now_iso() -> str:
    """
    Return a current UTC timestamp in ISO-8601 format.
    """
    return datetime.now(timezone.utc).isoformat()


def _to_json_value(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


# -------------------------------------------------------------------------
# Provenance log entry
# -------------------------------------------------------------------------

@dataclass(frozen=True)
class ProvenanceEntry:
    """
    One line of a session's append-only classification log.

    - action: "assign" or "undo"
    - field: name of the classification field that changed
    - uids: session-local unit ids touched by the change
    - old_values / new_values: values before and after, aligned with uids
    - created_at: ISO8601 timestamp (UTC)
    """

    action: str
    field: str
    uids: Tuple[int, ...]
    old_values: Tuple[Any, ...]
    new_values: Tuple[Any, ...]
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "field": self.field,
            "uids": list(self.uids),
            "old_values": [_to_json_value(v) for v in self.old_values],
            "new_values": [_to_json_value(v) for v in self.new_values],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProvenanceEntry:
        set_valued = data["field"] in SET_FIELDS

        def restore(values: List[Any]) -> Tuple[Any, ...]:
            if set_valued:
                return tuple(frozenset(v or []) for v in values)
            return tuple(values)

        return cls(
            action=data["action"],
            field=data["field"],
            uids=tuple(int(u) for u in data.get("uids", [])),
            old_values=restore(data.get("old_values", [])),
            new_values=restore(data.get("new_values", [])),
            created_at=data.get("created_at", now_iso()),
        )


# -------------------------------------------------------------------------
# Session-level record
# -------------------------------------------------------------------------

@dataclass
class CellStoreSnapshot:
    """
    Everything persisted for one recording session.

    - ref: gateway reference of the session
    - batch_id: id of the session within the loaded batch
    - metadata: session scoped pass-through data (channel layout, binning, ...)
    - cells: one row per unit; uid, classification fields and metrics
    - provenance: append-only log of classification changes
    - connections: putative monosynaptic connections inside the session as
      (pre uid, post uid) pairs, keyed by polarity
    - saved_at: when this snapshot was last written
    """

    ref: str
    batch_id: int
    metadata: Dict[str, Any]
    cells: pd.DataFrame
    provenance: List[ProvenanceEntry] = field(default_factory=list)
    connections: Dict[str, List[Tuple[int, int]]] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION
    saved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        records = []
        for row in self.cells.to_dict(orient="records"):
            records.append({str(k): _to_json_value(v) for k, v in row.items()})

        return {
            "schema_version": self.schema_version,
            "ref": self.ref,
            "batch_id": int(self.batch_id),
            "metadata": self.metadata or {},
            "saved_at": self.saved_at or now_iso(),
            "cells": records,
            "provenance": [p.to_dict() for p in self.provenance],
            "connections": {
                pol: [[int(pre), int(post)] for pre, post in rows] for pol, rows in self.connections.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CellStoreSnapshot:
        cells = pd.DataFrame.from_records(data.get("cells", []))
        if UID not in cells.columns:
            cells[UID] = pd.Series(dtype=int)

        for col in SET_FIELDS:
            if col in cells.columns:
                cells[col] = [frozenset(v) if isinstance(v, (list, tuple)) else frozenset() for v in cells[col]]

        return cls(
            ref=data["ref"],
            batch_id=int(data["batch_id"]),
            metadata=data.get("metadata") or {},
            cells=cells,
            provenance=[ProvenanceEntry.from_dict(p) for p in data.get("provenance", [])],
            connections={
                pol: [(int(pre), int(post)) for pre, post in rows]
                for pol, rows in (data.get("connections") or {}).items()
            },
            schema_version=data.get("schema_version", SCHEMA_VERSION),
            saved_at=data.get("saved_at"),
        )

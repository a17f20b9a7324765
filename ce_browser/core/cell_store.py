from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, TYPE_CHECKING

import numpy as np
import pandas as pd

from ce_browser.core.exceptions import CellIndexError
from ce_browser.core.fields import (
    BATCH_ID,
    BRAIN_REGION,
    CELL_TYPE,
    CLASSIFICATION_FIELDS,
    DEEP_SUPERFICIAL,
    GROUND_TRUTH,
    IDENTITY_FIELDS,
    LABEL,
    SET_FIELDS,
    TAGS,
    UID,
)
from ce_browser.validation.errors import ValidationError, ValidationIssue

if TYPE_CHECKING:
    from ce_browser.metadata_io.session_record import CellStoreSnapshot

logger = logging.getLogger(__name__)

_MISSING = object()

_TEXT_DEFAULTS = {
    CELL_TYPE: "Unknown",
    BRAIN_REGION: "Unknown",
    LABEL: "",
    DEEP_SUPERFICIAL: "Unknown",
}


@dataclass(frozen=True)
class Session:
    """
    One recording session (batch) of the loaded dataset.

    - batch_id: identifier of the session inside this dataset
    - ref: reference handed to the PersistenceGateway (path stem, DB id, ...)
    - metadata: session scoped, read-only data (channel layout, binning, ...)
      passed through untouched
    """

    batch_id: int
    ref: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CellView:
    """
    Immutable snapshot of a single cell.
    """

    index: int
    batch_id: int
    uid: int
    cell_type: str
    tags: FrozenSet[str]
    brain_region: str
    label: str
    deep_superficial: str
    ground_truth: FrozenSet[str]
    metrics: Mapping[str, Any]

    def value(self, field_name: str) -> Any:
        if field_name in CLASSIFICATION_FIELDS or field_name in IDENTITY_FIELDS:
            return getattr(self, field_name)
        return self.metrics[field_name]


class CellStore:
    """
    Canonical per-cell attributes of a dataset spanning one or more sessions.

    Cells are rows of a DataFrame indexed by the global cell index 1..N.
    Identity columns (batch_id, uid) and metric columns are read-only;
    the classification columns are only written through ``_set_field``,
    which is reserved for ClassificationState.
    """

    def __init__(self, cells: pd.DataFrame, sessions: Sequence[Session]) -> None:
        self._sessions: Dict[int, Session] = {}
        for s in sessions:
            if s.batch_id in self._sessions:
                raise ValidationError.single("STORE_DUPLICATE_BATCH", f"Duplicate batch_id {s.batch_id}")
            self._sessions[s.batch_id] = s

        self._df = self._normalise_frame(cells)

        unknown_batches = set(self._df[BATCH_ID].unique()) - set(self._sessions)
        if unknown_batches:
            raise ValidationError.single(
                "STORE_UNKNOWN_BATCH",
                f"Cells reference unknown batch ids: {sorted(int(b) for b in unknown_batches)}",
            )

        self._metric_columns: List[str] = [
            c for c in self._df.columns if c not in CLASSIFICATION_FIELDS and c not in IDENTITY_FIELDS
        ]

        logger.info(
            "Cell store initialised",
            extra={"n_cells": self.cell_count, "batch_ids": self.batch_ids},
        )

    # -------------------------------------------------------------------------
    # Internal: normalise the input frame
    # -------------------------------------------------------------------------
    def _normalise_frame(self, cells: pd.DataFrame) -> pd.DataFrame:
        issues: list[ValidationIssue] = []

        for col in IDENTITY_FIELDS:
            if col not in cells.columns:
                issues.append(ValidationIssue("STORE_MISSING_COLUMN", f"Missing required column '{col}'"))

        n = len(cells)
        expected = pd.RangeIndex(1, n + 1)
        if not cells.index.equals(expected):
            issues.append(ValidationIssue("STORE_INDEX", "Cell index must be the contiguous range 1..N"))

        if issues:
            raise ValidationError(issues)

        df = cells.copy()
        df.index = expected
        df.index.name = "cell"

        df[BATCH_ID] = df[BATCH_ID].astype(int)
        df[UID] = df[UID].astype(int)

        # Fill in classification columns that were not supplied
        for col, default in _TEXT_DEFAULTS.items():
            if col not in df.columns:
                df[col] = default
            df[col] = df[col].fillna(default).astype(str).astype(object)

        for col in SET_FIELDS:
            raw = df[col] if col in df.columns else [None] * n
            df[col] = _object_series([_as_frozenset(v) for v in raw], df.index)

        return df

    # -------------------------------------------------------------------------
    # Bounds checking
    # -------------------------------------------------------------------------
    def check_indices(self, indices: Iterable[int]) -> List[int]:
        """
        Return the indices as a sorted list of ints, raising CellIndexError
        if any of them is outside 1..N.
        """
        out = sorted({int(i) for i in indices})
        bad = [i for i in out if i < 1 or i > self.cell_count]
        if bad:
            raise CellIndexError(f"Cell indices out of range 1..{self.cell_count}: {bad}")
        return out

    # -------------------------------------------------------------------------
    # Read accessors
    # -------------------------------------------------------------------------
    @property
    def cell_count(self) -> int:
        return len(self._df)

    @property
    def indices(self) -> pd.Index:
        return self._df.index

    @property
    def batch_ids(self) -> List[int]:
        return sorted(self._sessions)

    @property
    def metric_columns(self) -> List[str]:
        return list(self._metric_columns)

    def get(self, index: int) -> CellView:
        (idx,) = self.check_indices([index])
        row = self._df.loc[idx]
        metrics = {c: row[c] for c in self._metric_columns}
        return CellView(
            index=idx,
            batch_id=int(row[BATCH_ID]),
            uid=int(row[UID]),
            cell_type=row[CELL_TYPE],
            tags=row[TAGS],
            brain_region=row[BRAIN_REGION],
            label=row[LABEL],
            deep_superficial=row[DEEP_SUPERFICIAL],
            ground_truth=row[GROUND_TRUTH],
            metrics=MappingProxyType(metrics),
        )

    def get_many(self, indices: Iterable[int]) -> List[CellView]:
        return [self.get(i) for i in self.check_indices(indices)]

    def values(self, indices: Iterable[int], field_name: str) -> Dict[int, Any]:
        """Current value of one field for each of the given cells."""
        idx = self.check_indices(indices)
        col = self._df[field_name]
        return {i: col.at[i] for i in idx}

    def column(self, name: str) -> pd.Series:
        """Return a copy of one column, indexed by cell index."""
        return self._df[name].copy()

    def has_column(self, name: str) -> bool:
        return name in self._df.columns

    def frame(self) -> pd.DataFrame:
        """Read-only copy of the whole table."""
        return self._df.copy()

    def numeric_fields(self) -> List[str]:
        return [c for c in self._metric_columns if pd.api.types.is_numeric_dtype(self._df[c])]

    def string_fields(self) -> List[str]:
        """
        Columns holding plain text values, classification fields included and
        set-valued fields excluded.
        """
        out = [c for c in (CELL_TYPE, BRAIN_REGION, LABEL, DEEP_SUPERFICIAL)]
        for c in self._metric_columns:
            s = self._df[c]
            if pd.api.types.is_string_dtype(s) or (
                s.dtype == object and s.map(lambda v: isinstance(v, str) or v is None).all()
            ):
                out.append(c)
        return out

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    def session(self, batch_id: int) -> Session:
        try:
            return self._sessions[batch_id]
        except KeyError:
            raise KeyError(f"Unknown batch_id {batch_id}")

    def session_metadata(self, batch_id: int) -> Mapping[str, Any]:
        return self.session(batch_id).metadata

    def sessions(self) -> List[Session]:
        return [self._sessions[b] for b in self.batch_ids]

    def indices_for_batch(self, batch_id: int) -> Set[int]:
        self.session(batch_id)
        mask = self._df[BATCH_ID].to_numpy() == batch_id
        return set(int(i) for i in self._df.index[mask])

    def batch_of(self, indices: Iterable[int]) -> Set[int]:
        idx = self.check_indices(indices)
        return set(int(b) for b in self._df.loc[idx, BATCH_ID].unique())

    def batch_array(self) -> np.ndarray:
        """batch_id per cell, positionally aligned with index 1..N."""
        return self._df[BATCH_ID].to_numpy()

    def index_for_uid(self, batch_id: int, uid: int) -> Optional[int]:
        df = self._df
        hits = df.index[(df[BATCH_ID] == batch_id) & (df[UID] == uid)]
        return int(hits[0]) if len(hits) else None

    # -------------------------------------------------------------------------
    # Mutation (ClassificationState only)
    # -------------------------------------------------------------------------
    def _set_field(self, indices: Iterable[int], field_name: str, value: Any) -> None:
        """
        Write one classification field for the given cells.

        ``value`` is either broadcast to every index or, if it is a Mapping,
        looked up per index. All indices are bounds-checked before any write.
        """
        idx = self.check_indices(indices)
        if field_name not in CLASSIFICATION_FIELDS:
            raise KeyError(f"'{field_name}' is not a writable cell field")

        if isinstance(value, Mapping):
            missing = [i for i in idx if value.get(i, _MISSING) is _MISSING]
            if missing:
                raise KeyError(f"No value supplied for cells {missing}")
            per_cell = {i: value[i] for i in idx}
        else:
            per_cell = {i: value for i in idx}

        # Rebuild the column positionally (index i lives at position i - 1)
        values = list(self._df[field_name])
        for i, v in per_cell.items():
            values[i - 1] = v
        self._df[field_name] = _object_series(values, self._df.index)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------
    def session_snapshot(
        self,
        batch_id: int,
        provenance: Sequence[Any] = (),
        connections: Optional[Mapping[str, Sequence[Any]]] = None,
    ) -> "CellStoreSnapshot":
        """
        Serialisable copy of one session's cells (classification fields and
        metrics) keyed by session-local uid.
        """
        from ce_browser.metadata_io.session_record import CellStoreSnapshot

        session = self.session(batch_id)
        rows = self._df[self._df[BATCH_ID] == batch_id].drop(columns=[BATCH_ID])
        return CellStoreSnapshot(
            ref=session.ref,
            batch_id=batch_id,
            metadata=dict(session.metadata),
            cells=rows.reset_index(drop=True),
            provenance=list(provenance),
            connections={k: list(v) for k, v in (connections or {}).items()},
        )

    @classmethod
    def from_snapshots(cls, snapshots: Sequence["CellStoreSnapshot"]) -> CellStore:
        """
        Assemble a batch from per-session snapshots. Global indices are
        assigned in snapshot order, then by row order within each snapshot.
        """
        frames = []
        sessions = []
        for snap in snapshots:
            df = snap.cells.copy()
            df[BATCH_ID] = snap.batch_id
            frames.append(df)
            sessions.append(Session(batch_id=snap.batch_id, ref=snap.ref, metadata=dict(snap.metadata)))

        if frames:
            cells = pd.concat(frames, ignore_index=True, sort=False)
        else:
            cells = pd.DataFrame(columns=[BATCH_ID, UID])
        cells.index = pd.RangeIndex(1, len(cells) + 1)
        return cls(cells, sessions)


def _as_frozenset(value: Any) -> FrozenSet[str]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return frozenset()
    if isinstance(value, str):
        return frozenset([value]) if value else frozenset()
    return frozenset(str(v) for v in value)


def _object_series(values: Sequence[Any], index: pd.Index) -> pd.Series:
    # Element-wise fill keeps frozensets as scalars instead of list-likes
    arr = np.empty(len(values), dtype=object)
    for k, v in enumerate(values):
        arr[k] = v
    return pd.Series(arr, index=index, dtype=object)

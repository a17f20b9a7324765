from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from ce_browser.core.cell_store import CellStore
from ce_browser.core.exceptions import PersistenceError
from ce_browser.core.fields import FieldRegistry
from ce_browser.core.history import ClassificationEvent, HistoryStack
from ce_browser.metadata_io.session_record import CellStoreSnapshot, ProvenanceEntry, now_iso
from ce_browser.validation.errors import ValidationError

if TYPE_CHECKING:
    from ce_browser.services.autosave import AutosaveSink
    from ce_browser.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


class SaveMode(str, Enum):
    TOUCHED_ONLY = "touched"
    ALL = "all"


@dataclass(frozen=True)
class UndoResult:
    """
    Outcome of an undo. ``no_op`` is set when only the baseline was left.
    """

    restored_indices: Tuple[int, ...]
    field: Optional[str]
    no_op: bool = False

    @classmethod
    def noop(cls) -> UndoResult:
        return cls(restored_indices=(), field=None, no_op=True)


@dataclass(frozen=True)
class SessionSaveOutcome:
    batch_id: int
    ref: str
    ok: bool
    backup_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SaveReport:
    """
    Per-session results of a save. A failed session does not stop the others.
    """

    mode: SaveMode
    outcomes: Dict[int, SessionSaveOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[int]:
        return [b for b, o in self.outcomes.items() if o.ok]

    @property
    def failed(self) -> List[int]:
        return [b for b, o in self.outcomes.items() if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


class ClassificationState:
    """
    The only writer of the CellStore.

    Every change is captured as a ClassificationEvent before it is applied,
    so ``undo`` restores exactly the previous values. Tracks which sessions
    changed since their last successful save, keeps a per-session
    provenance log and drives the periodic autosave export.
    """

    def __init__(
        self,
        store: CellStore,
        registry: FieldRegistry,
        *,
        autosave_frequency: int = 6,
        autosave_sink: Optional["AutosaveSink"] = None,
        history_limit: Optional[int] = None,
        provenance: Optional[Mapping[int, Iterable[ProvenanceEntry]]] = None,
        session_connections: Optional[Callable[[int], Mapping[str, Sequence[Any]]]] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._history = HistoryStack()
        self._touched: Set[int] = set()

        self._autosave_frequency = max(0, int(autosave_frequency))
        self._autosave_sink = autosave_sink
        self._history_limit = history_limit
        self._steps = 0
        self._session_connections = session_connections

        self._provenance: Dict[int, List[ProvenanceEntry]] = {b: [] for b in store.batch_ids}
        for batch_id, entries in (provenance or {}).items():
            self._provenance.setdefault(batch_id, []).extend(entries)

        # Last persisted state per session; backed up before it is overwritten
        self._persisted: Dict[int, CellStoreSnapshot] = {
            b: self._snapshot(b) for b in store.batch_ids
        }

    # -------------------------------------------------------------------------
    # Read accessors
    # -------------------------------------------------------------------------
    @property
    def store(self) -> CellStore:
        return self._store

    @property
    def registry(self) -> FieldRegistry:
        return self._registry

    @property
    def history_depth(self) -> int:
        """Number of entries on the undo stack, baseline included."""
        return len(self._history)

    @property
    def history(self) -> Tuple[ClassificationEvent, ...]:
        return self._history.events()

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    def provenance(self, batch_id: int) -> List[ProvenanceEntry]:
        return list(self._provenance.get(batch_id, []))

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------
    def assign(self, indices: Iterable[int], field_name: str, value: Any) -> Optional[ClassificationEvent]:
        """
        Set ``field_name`` to ``value`` for the given cells.

        ``value`` is broadcast to all cells, or looked up per cell if it is a
        Mapping of cell index -> value. Everything is validated before the
        store is touched. Cells already holding the new value are left out of
        the event; if none change, nothing is recorded and None is returned.

        Raises:
            ValidationError: unknown/read-only field or invalid value
            CellIndexError: an index is outside 1..N
        """
        spec = self._registry.require_mutable(field_name)
        idx = self._store.check_indices(indices)
        if not idx:
            return None

        if isinstance(value, Mapping):
            missing = [i for i in idx if i not in value]
            if missing:
                raise ValidationError.single("ASSIGN_VALUE_MISSING", f"No {field_name} value for cells {missing}")
            new_values = {i: spec.normalise(value[i]) for i in idx}
        else:
            normalised = spec.normalise(value)
            new_values = {i: normalised for i in idx}

        # Capture strictly before applying
        current = self._store.values(idx, field_name)
        changed = [i for i in idx if current[i] != new_values[i]]
        if not changed:
            logger.debug("Assign left cells unchanged", extra={"field": field_name, "n_cells": len(idx)})
            return None

        event = ClassificationEvent(
            cell_indices=tuple(changed),
            field=field_name,
            old_values=tuple(current[i] for i in changed),
            new_values=tuple(new_values[i] for i in changed),
        )

        self._history.push(event)
        try:
            self._store._set_field(changed, field_name, {i: new_values[i] for i in changed})
        except Exception:
            self._history.pop()
            raise

        self.mark_touched(changed)
        self._log_provenance("assign", event.field, event.cell_indices, event.old_values, event.new_values)

        logger.info(
            "Classification assigned",
            extra={"field": field_name, "n_cells": len(changed), "history_depth": self.history_depth},
        )

        self.autosave_tick()
        return event

    def undo(self) -> UndoResult:
        """
        Revert the newest event. Returns a no-op result if only the
        baseline remains.
        """
        event = self._history.pop()
        if event is None:
            logger.info("Nothing to undo")
            return UndoResult.noop()

        self._store._set_field(event.cell_indices, event.field, event.old_by_index())

        self.mark_touched(event.cell_indices)
        self._log_provenance("undo", event.field, event.cell_indices, event.new_values, event.old_values)

        logger.info(
            "Classification undone",
            extra={"field": event.field, "n_cells": len(event.cell_indices), "history_depth": self.history_depth},
        )

        self.autosave_tick()
        return UndoResult(restored_indices=event.cell_indices, field=event.field)

    # -------------------------------------------------------------------------
    # Dirty tracking
    # -------------------------------------------------------------------------
    def mark_touched(self, indices: Iterable[int]) -> None:
        self._touched |= self._store.batch_of(indices)

    def touched_batch_ids(self) -> Set[int]:
        return set(self._touched)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def save(self, mode: SaveMode, gateway: "PersistenceGateway") -> SaveReport:
        """
        Persist sessions one after another: the previously persisted state is
        backed up, then the current state is written. A failing session stays
        touched (so it is retried next time) while the others proceed; the
        in-memory classification is never rolled back.
        """
        mode = SaveMode(mode)
        if mode is SaveMode.TOUCHED_ONLY:
            scope = sorted(self._touched)
        else:
            scope = self._store.batch_ids

        report = SaveReport(mode=mode)
        for batch_id in scope:
            session = self._store.session(batch_id)
            snapshot = self._snapshot(batch_id)
            snapshot.saved_at = now_iso()

            try:
                backup_id = gateway.backup(session.ref, self._persisted[batch_id])
                gateway.save(session.ref, snapshot)
            except (PersistenceError, OSError) as e:
                logger.error(
                    "Failed to save session",
                    extra={"batch_id": batch_id, "ref": session.ref, "error": str(e)},
                )
                report.outcomes[batch_id] = SessionSaveOutcome(
                    batch_id=batch_id, ref=session.ref, ok=False, error=str(e)
                )
                continue

            self._persisted[batch_id] = snapshot
            self._touched.discard(batch_id)
            report.outcomes[batch_id] = SessionSaveOutcome(
                batch_id=batch_id, ref=session.ref, ok=True, backup_id=backup_id
            )
            logger.info("Session saved", extra={"batch_id": batch_id, "ref": session.ref, "backup_id": backup_id})

        return report

    def autosave_tick(self) -> bool:
        """
        Count one classification step; every Nth step export the store to the
        autosave sink and compact the history if a limit is configured.
        Returns True if this tick triggered an autosave.
        """
        self._steps += 1
        if self._autosave_frequency == 0 or self._steps % self._autosave_frequency != 0:
            return False

        if self._autosave_sink is not None:
            try:
                self._autosave_sink.export(self._store, step=self._steps)
            except (PersistenceError, OSError):
                logger.exception("Autosave export failed", extra={"step": self._steps})

        if self._history_limit is not None:
            dropped = self._history.compact(self._history_limit)
            if dropped:
                logger.info("History compacted", extra={"dropped": dropped, "history_depth": self.history_depth})

        return True

    # -------------------------------------------------------------------------
    # Internal: snapshots
    # -------------------------------------------------------------------------
    def _snapshot(self, batch_id: int) -> CellStoreSnapshot:
        connections = self._session_connections(batch_id) if self._session_connections else None
        return self._store.session_snapshot(
            batch_id,
            provenance=self._provenance.get(batch_id, []),
            connections=connections,
        )

    # -------------------------------------------------------------------------
    # Internal: provenance
    # -------------------------------------------------------------------------
    def _log_provenance(
        self,
        action: str,
        field_name: str,
        indices: Tuple[int, ...],
        old_values: Tuple[Any, ...],
        new_values: Tuple[Any, ...],
    ) -> None:
        by_batch: Dict[int, List[Tuple[int, Any, Any]]] = {}
        for i, old, new in zip(indices, old_values, new_values):
            cell = self._store.get(i)
            by_batch.setdefault(cell.batch_id, []).append((cell.uid, old, new))

        for batch_id, rows in by_batch.items():
            self._provenance.setdefault(batch_id, []).append(
                ProvenanceEntry(
                    action=action,
                    field=field_name,
                    uids=tuple(r[0] for r in rows),
                    old_values=tuple(r[1] for r in rows),
                    new_values=tuple(r[2] for r in rows),
                )
            )

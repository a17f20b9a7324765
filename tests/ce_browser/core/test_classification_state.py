from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pandas as pd
import pytest

from ce_browser.config.model import ExplorerSettings
from ce_browser.core.cell_store import CellStore, Session
from ce_browser.core.classification import ClassificationState, SaveMode
from ce_browser.core.exceptions import CellIndexError, PersistenceError
from ce_browser.core.fields import default_registry
from ce_browser.metadata_io.session_record import CellStoreSnapshot
from ce_browser.services.autosave import AutosaveSink
from ce_browser.services.persistence import PersistenceGateway
from ce_browser.validation.errors import ValidationError


def _make_store(n_per_batch: Tuple[int, ...] = (3, 3, 3), cell_types: Optional[List[str]] = None) -> CellStore:
    batch_ids: List[int] = []
    uids: List[int] = []
    for b, n in enumerate(n_per_batch, start=1):
        batch_ids += [b] * n
        uids += list(range(1, n + 1))

    n_cells = len(batch_ids)
    cells = pd.DataFrame(
        {
            "batch_id": batch_ids,
            "uid": uids,
            "cell_type": cell_types or ["A"] * n_cells,
            "firing_rate": [float(i) for i in range(n_cells)],
        },
        index=pd.RangeIndex(1, n_cells + 1),
    )
    sessions = [Session(batch_id=b, ref=f"session{b}") for b in range(1, len(n_per_batch) + 1)]
    return CellStore(cells, sessions)


def _make_state(store: CellStore, **kwargs) -> ClassificationState:
    registry = default_registry(ExplorerSettings(cell_types=["A", "B", "C"]))
    return ClassificationState(store, registry, **kwargs)


class FakeGateway(PersistenceGateway):
    """In-memory gateway recording every call; refs in ``fail_refs`` raise."""

    def __init__(self, fail_refs: Tuple[str, ...] = ()):
        self.fail_refs = set(fail_refs)
        self.saved: Dict[str, List[CellStoreSnapshot]] = {}
        self.backups: Dict[str, Dict[str, CellStoreSnapshot]] = {}

    def load(self, ref: str) -> CellStoreSnapshot:
        return self.saved[ref][-1]

    def save(self, ref: str, snapshot: CellStoreSnapshot) -> None:
        if ref in self.fail_refs:
            raise PersistenceError(f"disk full: {ref}")
        self.saved.setdefault(ref, []).append(snapshot)

    def backup(self, ref: str, snapshot: CellStoreSnapshot) -> str:
        backups = self.backups.setdefault(ref, {})
        backup_id = f"b{len(backups) + 1}"
        backups[backup_id] = snapshot
        return backup_id

    def list_backups(self, ref: str) -> List[str]:
        return sorted(self.backups.get(ref, {}))

    def load_backup(self, ref: str, backup_id: str) -> CellStoreSnapshot:
        return self.backups[ref][backup_id]


class RecordingSink(AutosaveSink):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.steps: List[int] = []

    def export(self, store, *, step: int) -> None:
        if self.fail:
            raise PersistenceError("sink offline")
        self.steps.append(step)


# -------------------------------------------------------------------------
# assign / undo
# -------------------------------------------------------------------------

def test_assign_then_undo_restores_previous_values():
    store = _make_store()
    state = _make_state(store)

    event = state.assign({1, 2}, "cell_type", "B")

    assert event is not None
    assert event.cell_indices == (1, 2)
    assert event.old_values == ("A", "A")


def test_events_carry_utc_timestamps():
    store = _make_store()
    state = _make_state(store)

    event = state.assign([1], "cell_type", "B")

    assert datetime.fromisoformat(event.created_at).utcoffset() == timedelta(0)
    assert store.get(1).cell_type == "B"
    assert state.history_depth == 2

    result = state.undo()

    assert result.no_op is False
    assert result.restored_indices == (1, 2)
    assert result.field == "cell_type"
    assert store.get(1).cell_type == "A"
    assert store.get(2).cell_type == "A"
    assert state.history_depth == 1


def test_assign_undo_on_mixed_types_keeps_history_at_baseline():
    store = _make_store((10,), cell_types=["A", "A", "B", "B", "A", "A", "A", "A", "A", "A"])
    state = _make_state(store)

    state.assign([1], "cell_type", "B")
    state.undo()

    assert store.get(1).cell_type == "A"
    assert state.history_depth == 1


def test_only_changed_cells_are_captured():
    store = _make_store()
    state = _make_state(store)
    state.assign([2], "cell_type", "B")

    event = state.assign([1, 2, 3], "cell_type", "B")

    assert event.cell_indices == (1, 3)
    assert event.old_values == ("A", "A")


def test_assign_without_change_records_nothing():
    store = _make_store()
    state = _make_state(store)

    assert state.assign([1, 2], "cell_type", "A") is None
    assert state.history_depth == 1
    assert state.touched_batch_ids() == set()


def test_undo_sequence_walks_back_through_history():
    store = _make_store((5,))
    state = _make_state(store)

    state.assign([3, 4], "cell_type", "B")
    state.assign([1], "cell_type", "C")
    state.assign([4, 5], "cell_type", "C")
    assert [store.get(i).cell_type for i in range(1, 6)] == ["C", "A", "B", "C", "C"]

    state.undo()
    assert [store.get(i).cell_type for i in range(1, 6)] == ["C", "A", "B", "B", "A"]
    state.undo()
    assert [store.get(i).cell_type for i in range(1, 6)] == ["A", "A", "B", "B", "A"]
    state.undo()
    assert [store.get(i).cell_type for i in range(1, 6)] == ["A"] * 5

    assert state.history_depth == 1


def test_undo_at_baseline_is_a_noop():
    store = _make_store()
    state = _make_state(store)

    result = state.undo()

    assert result.no_op is True
    assert result.restored_indices == ()
    assert state.history_depth == 1


def test_invalid_assign_leaves_store_and_history_unchanged():
    store = _make_store()
    state = _make_state(store)

    with pytest.raises(ValidationError):
        state.assign([1], "cell_type", "NotAClass")
    with pytest.raises(ValidationError):
        state.assign([1], "uid", 5)
    with pytest.raises(ValidationError):
        state.assign([1], "no_such_field", "x")
    with pytest.raises(CellIndexError):
        state.assign([1, 100], "cell_type", "B")

    assert store.get(1).cell_type == "A"
    assert state.history_depth == 1
    assert state.touched_batch_ids() == set()


def test_per_cell_values_and_set_fields():
    store = _make_store()
    state = _make_state(store)

    state.assign([1, 2], "tags", {1: ["Good"], 2: ["Bad", "Noise"]})
    assert store.get(1).tags == frozenset({"Good"})
    assert store.get(2).tags == frozenset({"Bad", "Noise"})

    with pytest.raises(ValidationError) as exc:
        state.assign([1, 2], "tags", {1: ["Good"]})
    assert exc.value.issues[0].code == "ASSIGN_VALUE_MISSING"

    state.undo()
    assert store.get(2).tags == frozenset()


# -------------------------------------------------------------------------
# Dirty tracking / save
# -------------------------------------------------------------------------

def test_touched_only_save_writes_only_changed_sessions():
    store = _make_store((3, 3, 3))
    state = _make_state(store)
    gateway = FakeGateway()

    state.assign([5], "cell_type", "B")
    assert state.touched_batch_ids() == {2}

    report = state.save(SaveMode.TOUCHED_ONLY, gateway)

    assert report.ok
    assert list(gateway.saved) == ["session2"]
    assert len(gateway.saved["session2"]) == 1
    assert state.touched_batch_ids() == set()

    saved = gateway.saved["session2"][0]
    assert saved.cells.loc[saved.cells["uid"] == 2, "cell_type"].item() == "B"
    assert [p.action for p in saved.provenance] == ["assign"]


def test_save_backs_up_previously_persisted_state():
    store = _make_store((3,))
    state = _make_state(store)
    gateway = FakeGateway()

    state.assign([1], "cell_type", "B")
    first = state.save(SaveMode.TOUCHED_ONLY, gateway)
    state.assign([1], "cell_type", "C")
    second = state.save(SaveMode.TOUCHED_ONLY, gateway)

    first_backup = gateway.backups["session1"][first.outcomes[1].backup_id]
    second_backup = gateway.backups["session1"][second.outcomes[1].backup_id]
    assert first_backup.cells["cell_type"].iloc[0] == "A"
    assert second_backup.cells["cell_type"].iloc[0] == "B"


def test_failed_session_stays_touched_and_others_proceed():
    store = _make_store((3, 3, 3))
    state = _make_state(store)
    gateway = FakeGateway(fail_refs=("session1",))

    state.assign([1, 4, 7], "cell_type", "B")
    report = state.save(SaveMode.TOUCHED_ONLY, gateway)

    assert report.failed == [1]
    assert sorted(report.succeeded) == [2, 3]
    assert "disk full" in report.outcomes[1].error
    assert state.touched_batch_ids() == {1}

    # in-memory classification is kept
    assert store.get(1).cell_type == "B"

    gateway.fail_refs.clear()
    retry = state.save(SaveMode.TOUCHED_ONLY, gateway)
    assert retry.succeeded == [1]
    assert state.touched_batch_ids() == set()


def test_save_all_writes_every_session():
    store = _make_store((2, 2))
    state = _make_state(store)
    gateway = FakeGateway()

    report = state.save(SaveMode.ALL, gateway)

    assert sorted(report.succeeded) == [1, 2]
    assert sorted(gateway.saved) == ["session1", "session2"]


def test_undo_marks_session_touched_again():
    store = _make_store((3, 3))
    state = _make_state(store)
    gateway = FakeGateway()

    state.assign([4], "label", "x")
    state.save(SaveMode.TOUCHED_ONLY, gateway)
    state.undo()

    assert state.touched_batch_ids() == {2}
    assert [p.action for p in state.provenance(2)] == ["assign", "undo"]


# -------------------------------------------------------------------------
# Autosave
# -------------------------------------------------------------------------

def test_autosave_every_nth_step():
    store = _make_store()
    sink = RecordingSink()
    state = _make_state(store, autosave_frequency=3, autosave_sink=sink)

    for label in ["a", "b", "c", "d", "e", "f", "g"]:
        state.assign([1], "label", label)

    assert sink.steps == [3, 6]


def test_autosave_disabled_with_zero_frequency():
    store = _make_store()
    sink = RecordingSink()
    state = _make_state(store, autosave_frequency=0, autosave_sink=sink)

    for label in ["a", "b", "c"]:
        state.assign([1], "label", label)
    assert sink.steps == []
    assert state.autosave_tick() is False


def test_autosave_failure_does_not_interrupt_assign(caplog):
    store = _make_store()
    state = _make_state(store, autosave_frequency=1, autosave_sink=RecordingSink(fail=True))

    with caplog.at_level("ERROR"):
        event = state.assign([1], "label", "x")

    assert event is not None
    assert store.get(1).label == "x"
    assert "Autosave export failed" in caplog.text


def test_history_compacted_at_autosave():
    store = _make_store()
    state = _make_state(store, autosave_frequency=4, history_limit=2)

    for label in ["a", "b", "c"]:
        state.assign([1], "label", label)
    assert state.history_depth == 4

    state.assign([1], "label", "d")
    assert state.history_depth == 3

    state.undo()
    state.undo()
    assert store.get(1).label == "b"
    assert state.undo().no_op is True

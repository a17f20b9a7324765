from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from ce_browser.config.model import ExplorerSettings
from ce_browser.core.cell_store import CellStore, Session
from ce_browser.core.classification import SaveMode
from ce_browser.core.connectivity import DisplayMode, Polarity
from ce_browser.core.context import build_context, load_context
from ce_browser.core.exceptions import CellIndexError, StateError
from ce_browser.services.explorer_service import ExplorerService, SetAction
from ce_browser.services.persistence import JsonSessionGateway
from ce_browser.services.storage import LocalFileSystemStorage
from ce_browser.validation.errors import ValidationError


def _make_store(deep_superficial=None) -> CellStore:
    """
    Two sessions of three cells:
    - batch 1 (s1): cells 1-3
    - batch 2 (s2): cells 4-6
    """
    cells = pd.DataFrame(
        {
            "batch_id": [1, 1, 1, 2, 2, 2],
            "uid": [1, 2, 3, 1, 2, 3],
            "cell_type": ["Pyr", "Pyr", "Int", "Int", "Pyr", "Int"],
            "brain_region": ["CA1", "CA1", "CA3", "CA1", "CA3", "CA3"],
            "firing_rate": [2.0, 4.0, 30.0, 25.0, 3.0, 40.0],
            "trough_to_peak": [0.6, 0.7, 0.3, 0.25, 0.8, 0.2],
        },
        index=pd.RangeIndex(1, 7),
    )
    if deep_superficial is not None:
        cells["deep_superficial"] = deep_superficial
    return CellStore(cells, [Session(1, "s1"), Session(2, "s2")])


def _make_service(tmp_path: Path = None, **settings) -> ExplorerService:
    ctx = build_context(
        _make_store(),
        excitatory=[(1, 2), (2, 3), (4, 5)],
        inhibitory=[(3, 1), (6, 4)],
        settings=ExplorerSettings(**settings),
    )
    gateway = JsonSessionGateway(LocalFileSystemStorage(tmp_path)) if tmp_path is not None else None
    return ExplorerService(ctx, gateway)


def test_build_context_wiring():
    service = _make_service(mono_syn_display="Downstream")
    ctx = service.context

    assert ctx.display_mode is DisplayMode.DOWNSTREAM
    # classes found in the data are accepted even if not in the preferences
    assert "Pyr" in ctx.registry.get("cell_type").choices
    assert ctx.graph.derived_attributes().loc[1, "excitatory_out"] == 1


def test_filters_return_active_subset():
    service = _make_service()

    assert service.set_class_filter(["Pyr"]) == {1, 2, 5}
    assert service.set_text_filter(".firing_rate > 2") == {2, 5}
    assert service.set_group_filter("brain_region", ["CA3"]) == {5}
    assert service.set_group_filter(None) == {2, 5}
    assert service.set_text_filter("") == {1, 2, 5}


def test_connections_follow_the_active_subset():
    service = _make_service()

    view = service.set_focus(2)
    assert view.cells == frozenset({1, 3})

    service.set_class_filter(["Pyr"])
    assert service.connections().cells == frozenset({1})

    view = service.set_connectivity_mode("Downstream")
    assert view.cells == frozenset()


def test_polarity_selection():
    service = _make_service()
    service.set_focus(1)

    view = service.set_polarities([Polarity.EXCITATORY])
    assert view.cells == frozenset({2})

    view = service.set_polarities(["inhibitory"])
    assert view.cells == frozenset({3})


def test_set_focus_checks_bounds():
    service = _make_service()

    with pytest.raises(CellIndexError):
        service.set_focus(7)
    assert service.set_focus(None).cells == frozenset()


def test_assign_and_undo_refocuses():
    service = _make_service()

    service.assign_cell_type([3, 6], "Pyr")
    assert service.context.store.get(6).cell_type == "Pyr"

    result = service.undo()
    assert result.restored_indices == (3, 6)
    assert service.context.focus == 3
    assert service.context.store.get(6).cell_type == "Int"


def test_new_cell_type_needs_create():
    service = _make_service()

    with pytest.raises(ValidationError):
        service.assign_cell_type([1], "Chandelier")

    service.assign_cell_type([1], "Chandelier", create=True)
    assert service.context.store.get(1).cell_type == "Chandelier"


def test_tags_are_added_and_removed_per_cell():
    service = _make_service()

    service.assign_tag([1, 2], "Good")
    service.assign_tag([2], "Noise")
    service.assign_tag([1, 2], "Good", SetAction.REMOVE)

    store = service.context.store
    assert store.get(1).tags == frozenset()
    assert store.get(2).tags == frozenset({"Noise"})

    # every step is undoable
    service.undo()
    assert store.get(1).tags == frozenset({"Good"})
    assert store.get(2).tags == frozenset({"Good", "Noise"})


def test_other_classification_fields():
    service = _make_service()
    store = service.context.store

    service.assign_ground_truth([4], "PV+")
    service.assign_label([4], "nice burst")
    service.assign_brain_region([4], "DG")
    service.assign_deep_superficial([4], "Deep")

    cell = store.get(4)
    assert cell.ground_truth == frozenset({"PV+"})
    assert cell.label == "nice burst"
    assert cell.brain_region == "DG"
    assert cell.deep_superficial == "Deep"

    with pytest.raises(ValidationError):
        service.assign_deep_superficial([4], "Middle")


def test_save_requires_gateway():
    service = _make_service()
    with pytest.raises(StateError):
        service.save()


def test_save_and_load_context_roundtrip(tmp_path: Path):
    service = _make_service(tmp_path)
    service.assign_label([5], "checked")
    service.replace_connections([(4, 6)], [], batch_id=2)

    report = service.save(SaveMode.TOUCHED_ONLY)
    assert report.succeeded == [2]

    service.save(SaveMode.ALL)

    gateway = JsonSessionGateway(LocalFileSystemStorage(tmp_path))
    ctx = load_context(gateway, ["s1", "s2"], settings=ExplorerSettings())

    assert ctx.store.cell_count == 6
    assert ctx.store.get(5).label == "checked"
    assert ctx.store.get(5).cell_type == "Pyr"
    assert {tuple(int(v) for v in r) for r in ctx.graph.edges(Polarity.EXCITATORY)} == {(1, 2), (2, 3), (4, 6)}
    # replacing session 2 also dropped its inhibitory edge (6, 4)
    assert {tuple(int(v) for v in r) for r in ctx.graph.edges(Polarity.INHIBITORY)} == {(3, 1)}
    assert [p.action for p in ctx.classification.provenance(2)] == ["assign"]


def test_restore_from_backup_is_undoable(tmp_path: Path):
    service = _make_service(tmp_path)
    store = service.context.store

    service.assign_cell_type([4], "Pyr")
    service.save()
    service.assign_cell_type([4], "Int")
    service.assign_tag([5], "Bad")
    report = service.save()
    backup_id = report.outcomes[2].backup_id

    assert service.list_backups(2)[-1] == backup_id

    # backup holds the state of the first save: cell 4 Pyr, no tags
    events = service.restore_from_backup(2, backup_id)

    assert {e.field for e in events} == {"cell_type", "tags"}
    assert store.get(4).cell_type == "Pyr"
    assert store.get(5).tags == frozenset()
    assert service.context.classification.touched_batch_ids() == {2}

    service.undo()
    service.undo()
    assert store.get(4).cell_type == "Int"
    assert store.get(5).tags == frozenset({"Bad"})


def test_restore_keeps_laminar_values_found_in_the_data(tmp_path: Path):
    store = _make_store(deep_superficial=["Layer5", "Layer5", "Deep", "Layer5", "Deep", "Layer5"])
    ctx = build_context(store, excitatory=[(4, 5)], inhibitory=[])
    service = ExplorerService(ctx, JsonSessionGateway(LocalFileSystemStorage(tmp_path)))

    service.assign_cell_type([4], "Pyr")
    service.save()
    service.assign_cell_type([4], "Int")
    backup_id = service.save().outcomes[2].backup_id

    events = service.restore_from_backup(2, backup_id)

    assert [e.field for e in events] == ["cell_type"]
    assert store.get(4).cell_type == "Pyr"
    assert store.get(4).deep_superficial == "Layer5"


def test_invalid_backup_leaves_store_and_history_untouched(tmp_path: Path):
    service = _make_service(tmp_path)
    ctx = service.context
    store = ctx.store
    depth = ctx.classification.history_depth

    # cell_type values are fine, one laminar value is not
    snapshot = store.session_snapshot(2)
    snapshot.cells["cell_type"] = ["Pyr", "Int", "Basket"]
    snapshot.cells["deep_superficial"] = ["Deep", "Middle", "Deep"]
    backup_id = JsonSessionGateway(LocalFileSystemStorage(tmp_path)).backup("s2", snapshot)

    with pytest.raises(ValidationError) as exc:
        service.restore_from_backup(2, backup_id)

    assert [i.code for i in exc.value.issues] == ["FIELD_VALUE_CHOICE"]
    assert [store.get(i).cell_type for i in (4, 5, 6)] == ["Int", "Pyr", "Int"]
    assert store.get(4).deep_superficial == "Unknown"
    assert "Basket" not in ctx.registry.get("cell_type").choices
    assert ctx.classification.history_depth == depth
    assert ctx.classification.touched_batch_ids() == set()

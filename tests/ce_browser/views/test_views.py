from __future__ import annotations

import pandas as pd
import plotly.graph_objs as go
import pytest

from ce_browser.config.model import ExplorerSettings
from ce_browser.core.cell_store import CellStore, Session
from ce_browser.core.connectivity import DisplayMode
from ce_browser.core.context import ExplorerContext, build_context
from ce_browser.views import CellTypeSummaryView, ConnectivityView, default_registry


def _make_context() -> ExplorerContext:
    """
    4 cells: types A, A, B, B
    - firing_rate / trough_to_peak as scatter axes
    - excitatory chain 1 -> 2 -> 3, inhibitory 4 -> 1
    """
    cells = pd.DataFrame(
        {
            "batch_id": [1, 1, 1, 1],
            "uid": [1, 2, 3, 4],
            "cell_type": ["A", "A", "B", "B"],
            "firing_rate": [1.0, 2.0, 3.0, 4.0],
            "trough_to_peak": [0.5, 0.6, 0.2, 0.3],
        },
        index=pd.RangeIndex(1, 5),
    )
    store = CellStore(cells, [Session(1, "s1")])
    return build_context(
        store,
        excitatory=[(1, 2), (2, 3)],
        inhibitory=[(4, 1)],
        settings=ExplorerSettings(cell_types=["A", "B"]),
    )


def test_summary_counts_active_cells_per_class():
    ctx = _make_context()
    view = CellTypeSummaryView(ctx)

    data = view.compute_data(ctx.resolver.resolve())

    assert list(data.columns) == ["class", "count"]
    assert dict(zip(data["class"], data["count"])) == {"A": 2, "B": 2}


def test_summary_respects_filters_and_compare_mode():
    ctx = _make_context()
    view = CellTypeSummaryView(ctx)

    ctx.resolver.set_class_filter(["B"])
    data = view.compute_data(ctx.resolver.resolve())
    assert dict(zip(data["class"], data["count"])) == {"B": 2}

    ctx.resolver.set_text_filter(".firing_rate > 3")
    ctx.resolver.set_compare_mode(True)
    data = view.compute_data(ctx.resolver.resolve())
    assert dict(zip(data["class"], data["count"])) == {"Outside filter": 3, "Inside filter": 1}


def test_summary_empty_subset_renders_placeholder():
    ctx = _make_context()
    ctx.resolver.set_class_filter([])

    fig = CellTypeSummaryView(ctx).render()

    assert isinstance(fig, go.Figure)
    assert len(fig.data) == 0
    assert "No cells" in fig.layout.title.text


def test_connectivity_view_draws_edges_for_focus():
    ctx = _make_context()
    ctx.focus = 2
    view = ConnectivityView(ctx)

    data = view.compute_data(ctx.resolver.resolve())

    assert view.x_metric == "firing_rate"
    assert view.y_metric == "trough_to_peak"
    assert len(data["cells"]) == 4
    assert len(data["edges"]) == 2

    fig = view.render_figure(data, ctx.resolver.resolve())
    line_traces = [t for t in fig.data if t.mode == "lines"]
    assert len(line_traces) == 2
    assert any(t.name == "cell 2" for t in fig.data)


def test_connectivity_view_axes_follow_preferences():
    cells = pd.DataFrame(
        {
            "batch_id": [1, 1],
            "uid": [1, 2],
            "cell_type": ["A", "B"],
            "trough_to_peak": [0.5, 0.2],
            "acg_tau": [12.0, 3.0],
            "peak_voltage": [80.0, 120.0],
            "firing_rate": [1.0, 20.0],
        },
        index=pd.RangeIndex(1, 3),
    )
    store = CellStore(cells, [Session(1, "s1")])

    view = ConnectivityView(build_context(store))
    assert (view.x_metric, view.y_metric) == ("firing_rate", "peak_voltage")

    ctx = build_context(store, settings=ExplorerSettings(plot_x_data="acg_tau", plot_y_data="missing"))
    view = ConnectivityView(ctx)
    assert (view.x_metric, view.y_metric) == ("acg_tau", "trough_to_peak")

    view = ConnectivityView(ctx, x_metric="peak_voltage", y_metric="firing_rate")
    assert (view.x_metric, view.y_metric) == ("peak_voltage", "firing_rate")


def test_connectivity_view_marks_last_hop():
    ctx = _make_context()
    ctx.focus = 1
    ctx.display_mode = DisplayMode.DOWNSTREAM
    view = ConnectivityView(ctx)

    data = view.compute_data(ctx.resolver.resolve())

    last = [e for e in data["edges"] if e["last_hop"]]
    assert len(data["edges"]) == 2
    assert len(last) == 1
    assert last[0]["x"] == [2.0, 3.0]


def test_connectivity_view_without_cells():
    ctx = _make_context()
    ctx.resolver.set_class_filter([])

    fig = ConnectivityView(ctx).render()

    assert len(fig.data) == 0


def test_default_view_registry():
    ctx = _make_context()
    registry = default_registry()

    assert [cls.id for cls in registry.all_classes()] == ["cell_type_summary", "connectivity"]
    assert isinstance(registry.create("connectivity", ctx), ConnectivityView)

    with pytest.raises(KeyError):
        registry.create("heatmap", ctx)
    with pytest.raises(ValueError):
        registry.register(CellTypeSummaryView)

from __future__ import annotations

from typing import Any, Dict, List, Optional, TYPE_CHECKING

import pandas as pd
import plotly.express as px
import plotly.graph_objs as go
from plotly.graph_objs import Figure

from ce_browser.core.base_view import BaseView
from ce_browser.core.connectivity import Polarity
from ce_browser.core.subset import SubsetResult

if TYPE_CHECKING:
    from ce_browser.core.context import ExplorerContext


class ConnectivityView(BaseView):
    """
    Active cells on a metric x/y scatter, with the focused cell's
    monosynaptic connections drawn as lines.

    - colour by class (cell type, or compare group)
    - excitatory edges solid, inhibitory dashed
    - edges of the final up/downstream hop drawn wider
    """

    id = "connectivity"
    label = "Monosynaptic Connections"

    EDGE_COLORS = {Polarity.EXCITATORY: "#2ca02c", Polarity.INHIBITORY: "#d62728"}

    def __init__(self, context: "ExplorerContext", x_metric: Optional[str] = None, y_metric: Optional[str] = None):
        super().__init__(context)
        numeric = context.store.numeric_fields()
        settings = context.settings

        if x_metric is None:
            x_metric = settings.plot_x_data if settings.plot_x_data in numeric else (numeric[0] if numeric else None)
        if y_metric is None:
            if settings.plot_y_data in numeric:
                y_metric = settings.plot_y_data
            else:
                others = [m for m in numeric if m != x_metric]
                y_metric = others[0] if others else x_metric

        self.x_metric = x_metric
        self.y_metric = y_metric

    def compute_data(self, subset: SubsetResult) -> Dict[str, Any]:
        if self.x_metric is None or not subset.indices:
            return {}

        store = self.context.store
        active = sorted(subset.indices)
        cells = pd.DataFrame(
            {
                "cell": active,
                "x": store.column(self.x_metric).loc[active].to_numpy(),
                "y": store.column(self.y_metric).loc[active].to_numpy(),
                "class": subset.class_labels.loc[active].astype(str).to_numpy(),
            }
        )

        ctx = self.context
        view = ctx.graph.connections_for(
            ctx.focus,
            ctx.display_mode,
            ctx.polarities,
            max_hops=ctx.settings.max_hops,
            active=set(subset.indices),
        )

        coords = cells.set_index("cell")[["x", "y"]]
        edges: List[Dict[str, Any]] = []
        for ref in sorted(view.edges | view.last_hop_edges):
            pre, post = ctx.graph.edge(ref)
            edges.append(
                {
                    "polarity": ref.polarity,
                    "last_hop": ref in view.last_hop_edges,
                    "x": [coords.at[pre, "x"], coords.at[post, "x"]],
                    "y": [coords.at[pre, "y"], coords.at[post, "y"]],
                }
            )

        return {"cells": cells, "edges": edges, "focus": ctx.focus, "mode": view.mode}

    def render_figure(self, data: Dict[str, Any], subset: SubsetResult) -> Figure:
        if not data:
            return self.empty_figure("No cells after filtering - adjust class/tag/text filters")

        cells: pd.DataFrame = data["cells"]
        fig = px.scatter(
            cells,
            x="x",
            y="y",
            color="class",
            hover_data=["cell"],
            title=f"Monosynaptic connections ({data['mode'].value})",
        )

        for edge in data["edges"]:
            polarity: Polarity = edge["polarity"]
            fig.add_trace(
                go.Scatter(
                    x=edge["x"],
                    y=edge["y"],
                    mode="lines",
                    line=dict(
                        color=self.EDGE_COLORS[polarity],
                        width=3 if edge["last_hop"] else 1,
                        dash="solid" if polarity is Polarity.EXCITATORY else "dash",
                    ),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

        focus = data["focus"]
        if focus is not None and focus in set(cells["cell"]):
            row = cells.loc[cells["cell"] == focus].iloc[0]
            fig.add_trace(
                go.Scatter(
                    x=[row["x"]],
                    y=[row["y"]],
                    mode="markers",
                    marker=dict(symbol="star", size=14, color="black"),
                    name=f"cell {focus}",
                )
            )

        fig.update_xaxes(title_text=self.x_metric)
        fig.update_yaxes(title_text=self.y_metric)
        fig.update_layout(margin=dict(l=40, r=40, t=40, b=40))
        return fig

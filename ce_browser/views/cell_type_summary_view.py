from __future__ import annotations

import pandas as pd
import plotly.express as px
from plotly.graph_objs import Figure

from ce_browser.core.base_view import BaseView
from ce_browser.core.subset import COMPARE_INSIDE, COMPARE_OUTSIDE, SubsetResult


class CellTypeSummaryView(BaseView):
    """
    Bar chart of how many active cells fall into each class.

    In compare mode the two synthetic groups are shown instead of cell types.
    """

    id = "cell_type_summary"
    label = "Cell Type Summary"

    GROUP_NAMES = {COMPARE_OUTSIDE: "Outside filter", COMPARE_INSIDE: "Inside filter"}

    def compute_data(self, subset: SubsetResult) -> pd.DataFrame:
        labels = subset.class_labels
        if labels.empty:
            return pd.DataFrame(columns=["class", "count"])

        if subset.compare_mode:
            labels = labels.map(self.GROUP_NAMES)

        counts = labels.value_counts().rename_axis("class").reset_index(name="count")
        return counts.sort_values(["count", "class"], ascending=[False, True]).reset_index(drop=True)

    def render_figure(self, data: pd.DataFrame, subset: SubsetResult) -> Figure:
        if data.empty:
            return self.empty_figure("No cells after filtering - adjust class/tag/text filters")

        title = "Compare mode" if subset.compare_mode else "Cell types"
        fig = px.bar(data, x="class", y="count", title=f"{title} ({len(subset.indices)} cells)")
        fig.update_yaxes(title_text="# cells")
        fig.update_layout(margin=dict(l=40, r=40, t=40, b=40))
        return fig

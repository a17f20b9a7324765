from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

import plotly.graph_objs as go

from .subset import SubsetResult

if TYPE_CHECKING:
    from .context import ExplorerContext


class BaseView(ABC):
    """
    Abstract base class for all plot views.

    Views are read-only consumers of the engine:
    - expose an 'id' - used internally
    - expose a 'label' - used for UI/human-readable applications
    - implement 'compute_data' - gather what to draw from the active subset
    - implement 'render_figure' - draw it with Plotly
    """

    id: str = None
    label: str = None

    def __init__(self, context: "ExplorerContext"):
        self.context = context

    @abstractmethod
    def compute_data(self, subset: SubsetResult) -> Any:
        """
        Compute the data for the current active subset
        :param subset: the resolved {@link SubsetResult}
        :return: data consumed by render_figure
        """
        raise NotImplementedError()

    @abstractmethod
    def render_figure(self, data: Any, subset: SubsetResult) -> go.Figure:
        """
        Render the figure given the computed data
        :param data: the data provided by {@link compute_data()}
        :param subset: the same {@link SubsetResult} passed to compute_data
        :return: the Plotly figure
        """
        raise NotImplementedError()

    # ------------------------------------------------------------------
    # Common helpers for all views
    # ------------------------------------------------------------------
    def render(self) -> go.Figure:
        """
        Resolve the active subset once and run compute_data + render_figure on it.
        """
        subset = self.context.resolver.resolve()
        return self.render_figure(self.compute_data(subset), subset)

    @staticmethod
    def empty_figure(message: str) -> go.Figure:
        """
        Standardised 'no data' figure used by all views.
        """
        fig = go.Figure()
        fig.update_layout(
            title=message,
            xaxis={"visible": False},
            yaxis={"visible": False},
        )
        return fig

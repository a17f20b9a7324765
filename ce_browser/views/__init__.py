from .cell_type_summary_view import CellTypeSummaryView
from .connectivity_view import ConnectivityView
from ce_browser.core.view_registry import ViewRegistry

__all__ = ["CellTypeSummaryView", "ConnectivityView", "default_registry"]


def default_registry():
    """ViewRegistry with every built-in view registered."""
    registry = ViewRegistry()
    registry.register(CellTypeSummaryView)
    registry.register(ConnectivityView)
    return registry

"""
Core domain layer: cell store, field registry, classification history,
subset resolution and the connectivity graph.

Submodules are imported directly (e.g. ``ce_browser.core.subset``) so that
the validation package can depend on ``core.exceptions`` without cycles.
"""

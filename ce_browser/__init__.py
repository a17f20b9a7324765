"""
Top-level package for the cell explorer browser.

This package exposes the classification / connectivity engine and the thin
read-only views built on top of it. Most code should import from submodules
such as:
    ce_browser.core
    ce_browser.services
    ce_browser.views
"""

__all__: list[str] = []

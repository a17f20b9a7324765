"""
Config package for ce_browser.

Responsible for:
- the preferences model (ExplorerSettings)
- loading preferences.json from a config root
"""

from .model import ExplorerSettings
from .loader import load_settings, settings_from_dict

__all__ = ["ExplorerSettings", "load_settings", "settings_from_dict"]

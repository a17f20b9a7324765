from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

from ce_browser.config.model import ExplorerSettings
from ce_browser.core.connectivity import DisplayMode
from ce_browser.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

PREFERENCES_FILE = "preferences.json"

_LIST_KEYS = ("cell_types", "deep_superficial", "tags", "ground_truth")


def settings_from_dict(raw: Dict[str, Any]) -> ExplorerSettings:
    """
    Build ExplorerSettings from a raw preferences mapping.
    Unknown keys are logged and ignored; badly typed values raise ConfigError.
    """
    known = set(ExplorerSettings.field_names())
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning("Ignoring unknown preference keys", extra={"keys": unknown})

    kwargs: Dict[str, Any] = {k: v for k, v in raw.items() if k in known}

    for key in _LIST_KEYS:
        if key in kwargs:
            value = kwargs[key]
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"'{key}' must be a list of strings")
            kwargs[key] = list(value)

    if not kwargs.get("cell_types", True):
        raise ConfigError("'cell_types' must contain at least one class")

    for key in ("autosave_frequency", "max_hops"):
        if key in kwargs:
            value = kwargs[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(f"'{key}' must be a non-negative integer")

    if kwargs.get("max_hops") == 0:
        raise ConfigError("'max_hops' must be at least 1")

    limit = kwargs.get("history_limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ConfigError("'history_limit' must be a positive integer or null")

    for key in ("plot_x_data", "plot_y_data"):
        if key in kwargs and not isinstance(kwargs[key], str):
            raise ConfigError(f"'{key}' must be a metric name")

    if "mono_syn_display" in kwargs:
        try:
            DisplayMode.parse(kwargs["mono_syn_display"])
        except ValueError as e:
            raise ConfigError(str(e)) from e

    return ExplorerSettings(**kwargs)


def load_settings(root: Path) -> ExplorerSettings:
    """
    Load preferences from ``root/preferences.json``.
    Falls back to defaults if the file is missing.
    """
    path = Path(root) / PREFERENCES_FILE
    logger.info("Loading preferences", extra={"config_root": str(root)})

    if not path.is_file():
        logger.info(f"No {PREFERENCES_FILE} found, using default preferences")
        return ExplorerSettings()

    try:
        with path.open() as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a JSON object")

    return settings_from_dict(raw)

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ce_browser.config import ExplorerSettings, load_settings, settings_from_dict
from ce_browser.core.exceptions import ConfigError


def _write_prefs(root: Path, data) -> None:
    (root / "preferences.json").write_text(json.dumps(data))


def test_missing_file_gives_defaults(tmp_path: Path):
    settings = load_settings(tmp_path)

    assert settings == ExplorerSettings()
    assert settings.autosave_frequency == 6
    assert settings.mono_syn_display == "Selected"
    assert settings.max_hops == 10
    assert (settings.plot_x_data, settings.plot_y_data) == ("firing_rate", "peak_voltage")
    assert "Pyramidal Cell" in settings.cell_types


def test_load_settings_from_file(tmp_path: Path):
    _write_prefs(
        tmp_path,
        {
            "cell_types": ["Pyr", "Int"],
            "autosave_frequency": 0,
            "mono_syn_display": "Up & downstream",
            "history_limit": 50,
        },
    )

    settings = load_settings(tmp_path)

    assert settings.cell_types == ["Pyr", "Int"]
    assert settings.autosave_frequency == 0
    assert settings.mono_syn_display == "Up & downstream"
    assert settings.history_limit == 50
    # untouched keys keep their defaults
    assert settings.max_hops == 10


def test_unknown_keys_are_ignored(caplog):
    with caplog.at_level("WARNING"):
        settings = settings_from_dict({"theme": "dark", "max_hops": 3})

    assert settings.max_hops == 3
    assert "Ignoring unknown preference keys" in caplog.text


@pytest.mark.parametrize(
    "raw",
    [
        {"cell_types": "Pyr"},
        {"cell_types": []},
        {"tags": ["Good", 1]},
        {"autosave_frequency": -1},
        {"autosave_frequency": True},
        {"max_hops": 0},
        {"history_limit": 0},
        {"mono_syn_display": "Sideways"},
        {"plot_x_data": 3},
    ],
)
def test_invalid_values_raise_config_error(raw):
    with pytest.raises(ConfigError):
        settings_from_dict(raw)


def test_invalid_json_raises_config_error(tmp_path: Path):
    (tmp_path / "preferences.json").write_text("{not json")

    with pytest.raises(ConfigError):
        load_settings(tmp_path)


def test_non_object_raises_config_error(tmp_path: Path):
    _write_prefs(tmp_path, ["a", "b"])

    with pytest.raises(ConfigError):
        load_settings(tmp_path)

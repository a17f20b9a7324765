from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

from ce_browser.logging_config import configure_logging


def test_json_format_by_default(monkeypatch):
    monkeypatch.delenv("CE_BROWSER_LOG_FORMAT", raising=False)
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        configure_logging()

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, jsonlogger.JsonFormatter)
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_plain_format_from_env(monkeypatch):
    monkeypatch.setenv("CE_BROWSER_LOG_FORMAT", "plain")
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        configure_logging(level=logging.DEBUG)

        formatter = root.handlers[0].formatter
        assert not isinstance(formatter, jsonlogger.JsonFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])

from __future__ import annotations

import io
import logging
import sys

import pytest
import structlog

from caddy_manager.logging_config import configure_logging, level_from_name


def test_level_names() -> None:
    assert level_from_name("debug") == logging.DEBUG
    assert level_from_name("WARN") == logging.WARNING
    assert level_from_name(None) == logging.INFO
    assert level_from_name("nonsense") == logging.INFO


def test_logs_follow_the_current_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    configure_logging("INFO")
    log = structlog.get_logger("caddy_manager.test")

    first = io.StringIO()
    monkeypatch.setattr(sys, "stderr", first)
    log.info("first event")

    # The stream used at configure time may be gone; later events go to the new one.
    first.close()
    second = io.StringIO()
    monkeypatch.setattr(sys, "stderr", second)
    log.info("second event", site="example.com")

    assert "second event" in second.getvalue()
    assert "example.com" in second.getvalue()


def test_level_filters_events(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = io.StringIO()
    monkeypatch.setattr(sys, "stderr", stream)
    configure_logging("WARNING")
    log = structlog.get_logger("caddy_manager.test")
    log.info("quiet")
    log.warning("loud")
    assert "loud" in stream.getvalue()
    assert "quiet" not in stream.getvalue()

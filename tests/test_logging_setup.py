# tests/test_logging_setup.py

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from cronledger.logging_setup import CONSOLE, _ConsoleNoiseFilter, setup_logging


def _record(name: str, level: int, **extra) -> logging.LogRecord:
    rec = logging.LogRecord(name, level, __file__, 1, "msg", None, None)
    for key, value in extra.items():
        setattr(rec, key, value)
    return rec


def test_background_loggers_are_quiet_below_warning() -> None:
    f = _ConsoleNoiseFilter()
    for name in (
        "cronledger.tasks.task_runner",
        "cronledger.tasks.task_actions",
        "cronledger.tasks.task_store",
        "cronledger.notifications.matrix_messenger",
    ):
        assert not f.filter(_record(name, logging.INFO))
        assert f.filter(_record(name, logging.WARNING))


def test_console_tagged_records_always_pass() -> None:
    f = _ConsoleNoiseFilter()
    assert f.filter(_record("cronledger.tasks.task_runner", logging.INFO, **CONSOLE))


def test_cli_logs_and_slow_query_warnings_pass() -> None:
    f = _ConsoleNoiseFilter()
    assert f.filter(_record("cronledger.cli.main", logging.INFO))
    assert f.filter(_record("cronledger.monitoring.performance", logging.WARNING))


def test_third_party_and_py_warnings_need_error() -> None:
    f = _ConsoleNoiseFilter()
    for name in ("nio.client", "aiohttp.access", "py.warnings"):
        assert not f.filter(_record(name, logging.WARNING))
        assert f.filter(_record(name, logging.ERROR))


@pytest.fixture()
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_setup_logging_writes_full_log_file(tmp_path: Path, restore_root_logger) -> None:
    setup_logging(log_dir=tmp_path / "logs")
    logging.getLogger("cronledger.tasks.task_runner").debug("claimed nightly-billing")

    for h in logging.getLogger().handlers:
        h.flush()
    text = (tmp_path / "logs" / "cronledger.log").read_text(encoding="utf-8")
    assert "claimed nightly-billing" in text

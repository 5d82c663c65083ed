# src/cronledger/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Loggers that run inside the background scheduler thread. Their INFO lines
# describe every claim and status change and belong in the file log; on the
# console only warnings and records tagged with CONSOLE show up.
_BACKGROUND_LOGGERS = (
    "cronledger.tasks.task_runner",
    "cronledger.tasks.task_actions",
    "cronledger.tasks.task_store",
    "cronledger.notifications.",
)

# extra= flag for a record that should reach the operator console even when
# its logger is otherwise quiet there, e.g. the per-pass scheduler summary.
CONSOLE = {"console": True}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the operator console readable while the scheduler polls in the background.

    - records tagged with CONSOLE always pass
    - scheduler, action, store and notifier logs pass at WARNING+
    - the rest of cronledger (cli, config, slow-query warnings) passes as-is
    - nio/aiohttp and captured Python warnings pass at ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "console", False):
            return True

        name = record.name
        if name.startswith("cronledger."):
            if name.startswith(_BACKGROUND_LOGGERS):
                return record.levelno >= logging.WARNING
            return True

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/cronledger",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Route everything to <log_dir>/cronledger.log and a filtered view to stderr.

    Call once from the entry point, before the scheduler thread starts.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_dir / "cronledger.log"), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)

# src/cronledger/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then starts:
- the task scheduler in a background thread (optional),
- the operator console REPL in the main thread (optional).
"""

from __future__ import annotations

import logging
import signal
import threading

from ..cli.background import start_scheduler_in_background
from ..cli.bootstrap import create_initial_state
from ..cli.console import run_console_loop
from ..config import get_settings
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/cronledger")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logging.getLogger("nio").setLevel(max(console_level, logging.INFO))
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logger.info("Starting %s...", getattr(settings, "app_name", "cronledger"))

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    scheduler = start_scheduler_in_background(state)

    # Use an Event so main can wait without a busy while-loop.
    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError):
        # Not in the main thread, or the platform lacks SIGTERM.
        pass

    try:
        if settings.console_enabled:
            run_console_loop(state)
            stop_main.set()
        else:
            logger.info("Console disabled. Running the scheduler only. Press Ctrl+C to stop.")
            stop_main.wait()
    finally:
        # TaskStore/NotificationStore use short-lived sqlite connections; nothing to close.
        if scheduler is not None:
            scheduler.stop()
            scheduler.join(timeout=10.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()

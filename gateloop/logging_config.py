"""
Logging configuration for gateloop.

This module handles:
- Console output with colored levels
- A per-run log file attached for the duration of one orchestrator run
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

# Detailed format for run log files
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s"

# Simplified format for console
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Color formatting for console output
_LOG_COLORS = {
    "DEBUG": "\033[94m",  # Blue
    "INFO": "\033[92m",  # Green
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[91m\033[1m",  # Bold Red
    "RESET": "\033[0m",  # Reset
}

RUN_LOG_PREFIX = "gateloop-run"


class ColorFormatter(logging.Formatter):
    """Formatter that adds colors to log levels for console output."""

    def format(self, record):
        # Work on a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        if levelname in _LOG_COLORS:
            record.levelname = (
                f"{_LOG_COLORS[levelname]}{levelname}{_LOG_COLORS['RESET']}"
            )
        return super().format(record)


def configure_logging(verbose: bool = False) -> None:
    """
    Configure console logging for the gateloop package.

    Args:
        verbose: Show DEBUG messages on the console
    """
    gateloop_logger = logging.getLogger("gateloop")
    gateloop_logger.setLevel(logging.DEBUG)

    # Clear any existing console handlers to avoid duplicates if reconfigured
    for handler in gateloop_logger.handlers[:]:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, logging.FileHandler
        ):
            gateloop_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColorFormatter(_CONSOLE_FORMAT))
    gateloop_logger.addHandler(console_handler)


def run_log_path(logs_dir: Path, now: datetime | None = None) -> Path:
    """Path of the log file for a run started at `now`."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return logs_dir / f"{RUN_LOG_PREFIX}-{stamp}.log"


def attach_run_log(logs_dir: Path) -> logging.FileHandler:
    """
    Start writing all gateloop log records to a new run log file.

    Args:
        logs_dir: Directory for run logs, created if missing

    Returns:
        The attached handler; pass it to detach_run_log() when the run ends
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(run_log_path(logs_dir), encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT))

    gateloop_logger = logging.getLogger("gateloop")
    if gateloop_logger.level == logging.NOTSET or gateloop_logger.level > logging.DEBUG:
        gateloop_logger.setLevel(logging.DEBUG)
    gateloop_logger.addHandler(handler)
    return handler


def detach_run_log(handler: logging.FileHandler) -> None:
    """Stop writing to a run log and close its file. Safe to call twice."""
    logging.getLogger("gateloop").removeHandler(handler)
    handler.close()

"""Logging configuration for the grove CLI."""

import logging
import sys

from grove.constants import STATE_DIR


class ColoredFormatter(logging.Formatter):
    """Adds ANSI colors to level names when stderr is a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record):
        if sys.stderr.isatty() and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure the root logger.

    Args:
        verbose: Show INFO messages.
        debug: Show DEBUG messages with timestamps and also write them to
            `grove.log` under the state directory.
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    detailed = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    if debug:
        STATE_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(STATE_DIR / "grove.log", mode="w")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt=detailed, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    if debug:
        console_handler.setFormatter(ColoredFormatter(fmt=detailed, datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        console_handler.setFormatter(ColoredFormatter(fmt="[%(name)s] %(message)s"))
    root_logger.addHandler(console_handler)

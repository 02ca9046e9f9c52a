"""
Logging for chanroot.

Every subsystem logs under the "chanroot" logger tree (chanroot.channel,
chanroot.verifier, chanroot.storage.sqlite, ...). Console output is colored;
the CLI can additionally mirror records to <log_dir>/chanroot.log.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import colorlog

ROOT_LOGGER = "chanroot"
LOG_FILE = "chanroot.log"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)-8s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _console_handler() -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
        datefmt=DATE_FORMAT,
        log_colors=LEVEL_COLORS,
    ))
    return handler


def _file_handler(log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / LOG_FILE)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


class ChanrootLogger:
    """Owns the handlers attached to the chanroot logger tree."""

    _console: Optional[logging.Handler] = None
    _file: Optional[logging.Handler] = None

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
    ):
        """
        Configure the chanroot logger tree. Safe to call repeatedly: the
        level always follows the latest call, handlers are attached once.

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_dir: Directory for chanroot.log (default ./logs)
            log_to_file: Also write records to chanroot.log
        """
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level)

        if cls._console is None:
            root.handlers.clear()
            cls._console = _console_handler()
            root.addHandler(cls._console)

        if log_to_file and cls._file is None:
            cls._file = _file_handler(Path(log_dir) if log_dir else Path("logs"))
            root.addHandler(cls._file)

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if cls._console is None:
            cls.setup()
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def get_logger(name: str) -> logging.Logger:
    """Logger for one subsystem, e.g. get_logger("channel")."""
    return ChanrootLogger.get_logger(name)


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = False,
):
    """Setup logging configuration"""
    ChanrootLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file)

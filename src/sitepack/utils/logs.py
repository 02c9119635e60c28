"""Logging setup shared by the CLI commands"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB max per log file
LOG_BACKUP_COUNT = 5  # Number of rotated log files to keep
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "sitepack.log"

# Handlers installed by setup_logging, replaced on every call
_handlers: list[logging.Handler] = []


def console_level(verbosity: int) -> int:
    """Map -v / --debug to a console log level"""
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def setup_logging(log_dir: Path | None, verbosity: int = 0, file_level: str | int = logging.INFO) -> logging.Logger:
    """Set up logging with automatic rotation

    Args:
        log_dir: Directory for the rotating log file (None disables file logging)
        verbosity: 0 = warnings, 1 = info (-v), 2 = debug (--debug) on the console
        file_level: Level name or number for the log file (setting logging.level)

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    level = console_level(verbosity)
    if isinstance(file_level, str):
        file_level = logging.getLevelName(file_level.upper())
        if not isinstance(file_level, int):
            file_level = logging.INFO

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.setLevel(min(file_level, level))
        fh.setFormatter(formatter)
        _handlers.append(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(formatter)
    _handlers.append(ch)

    for handler in _handlers:
        root.addHandler(handler)
    root.setLevel(min(file_level if log_dir is not None else level, level))

    return root

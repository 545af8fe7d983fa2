# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Logging setup for SynPhoto.
Configures console/file handlers and hands out prefixed component loggers.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class PrefixedLogger(logging.LoggerAdapter):
    """Logger adapter that puts a fixed component prefix in front of every message."""

    def __init__(self, logger: logging.Logger, prefix: str):
        super().__init__(logger, {"prefix": prefix})
        self.prefix = prefix

    def process(self, msg, kwargs):
        return f"[{self.prefix}] {msg}", kwargs


ComponentLogger = Union[logging.Logger, logging.LoggerAdapter]


def get_component_logger(name: str, prefix: Optional[str] = None) -> ComponentLogger:
    """
    Get the logger a component should use when none is injected.

    Args:
        name: Logger name, usually the module's __name__.
        prefix: Optional fixed prefix (e.g. "ImageCache").

    Returns:
        A plain logger, or a PrefixedLogger when a prefix is given.
    """
    logger = logging.getLogger(name)
    if prefix:
        return PrefixedLogger(logger, prefix)
    return logger


def parse_level(level: str) -> int:
    """Map a config level name to a logging level (defaults to INFO)."""
    return LOG_LEVELS.get(str(level).lower(), logging.INFO)


def setup_logging(level: str = "info") -> None:
    """Configure root logging to stdout."""
    logging.basicConfig(
        level=parse_level(level),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ],
        force=True,
    )
    # geopy and urllib3 are chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('geopy').setLevel(logging.WARNING)


def setup_file_logging(log_dir: str) -> Path:
    """Set up file logging in addition to console."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path / 'synphoto.log')
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    return log_path / 'synphoto.log'

from __future__ import annotations

import logging
from typing import Mapping

from rich.logging import RichHandler

ROOT_LOGGER = "tasksync"

_LEVEL_MAP: Mapping[str, int] = {
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def parse_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    level_name = str(value).strip().upper()
    if level_name not in _LEVEL_MAP:
        raise ValueError(f"Unsupported log level: {value}")
    return _LEVEL_MAP[level_name]


def build_console_handler(level: str | int) -> logging.Handler:
    handler = RichHandler(rich_tracebacks=True, show_time=True, show_path=False)
    handler.setLevel(parse_level(level))
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    return handler


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    levelno = parse_level(level)
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_tasksync_console", False):
            logger.removeHandler(handler)
    handler = build_console_handler(levelno)
    handler._tasksync_console = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(levelno)
    logger.propagate = False
    return logger

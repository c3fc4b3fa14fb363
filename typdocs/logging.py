"""Logging helpers shared by the CLI, the service and the pipeline phases."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_LOGGER_NAME = "typdocs"
_CONSOLE_FORMAT = "[typdocs] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the typdocs hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, quiet: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Install console output, and optionally a file sink, on the typdocs logger.

    ``verbose`` shows debug records such as cache hits and phase timings;
    ``quiet`` keeps only warnings and errors so the diagnostic report stands
    alone. The file sink always records at debug level.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.propagate = False

    # Repeated invocations in one process must not stack handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


@contextmanager
def log_phase(logger: logging.Logger, name: str) -> Iterator[None]:
    """Log the wall time of one pipeline phase at debug level."""
    started = time.perf_counter()
    try:
        yield
    finally:
        logger.debug("Phase %s finished in %.3fs", name, time.perf_counter() - started)


__all__ = ["configure_logging", "get_logger", "log_phase"]

"""Logging configuration for Kaia.

Provides centralized logging setup with Rich console formatting and
optional file logging. Engine modules log through module loggers
(``logging.getLogger(__name__)``) under the ``kaia`` package logger.

Example:
    >>> from kaia.utils.logging import setup_logging, LogContext
    >>> setup_logging(level="DEBUG")
    >>> with LogContext("Timeline page", owner="baby"):
    ...     page = aggregator.page("baby")
    ... # Logs: "Timeline page: succeeded after 0.01s (owner=baby)"
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_NAME = "kaia"

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(threadName)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_console = Console(stderr=True)


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Configure logging for the kaia package.

    Sets up a Rich console handler for pretty output and optionally a file
    handler for persistent logs. Calling it again replaces earlier handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to log file.

    Returns:
        The configured package logger.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger(PACKAGE_NAME)
    package_logger.setLevel(numeric_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=_console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=numeric_level == logging.DEBUG,
    )
    console_handler.setLevel(numeric_level)
    package_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        package_logger.addHandler(file_handler)

    package_logger.propagate = False
    package_logger.debug(f"Logging configured: level={level}, file={log_file}")
    return package_logger


class LogContext:
    """Times a unit of engine work and logs how it ended.

    Keyword fields (owner, job id, ...) are appended to every line as
    ``key=value``. Code inside the block can attach more with ``bind`` and
    report its result through ``outcome``; an outcome other than
    ``succeeded`` is logged as a warning.

    Example:
        >>> with LogContext("Export", logger=logger, owner="baby") as log_ctx:
        ...     job_id = manager.submit(selection)
        ...     log_ctx.bind(job=job_id)
        ...     log_ctx.outcome = manager.wait(job_id).state.value
        # Logs: "Export: failed after 0.31s (owner=baby job=...)"
    """

    def __init__(
        self,
        message: str,
        logger: logging.Logger | None = None,
        level: int = logging.INFO,
        **fields: Any,
    ) -> None:
        self.message = message
        self.logger = logger or logging.getLogger(PACKAGE_NAME)
        self.level = level
        self.fields: dict[str, Any] = dict(fields)
        self.outcome = "succeeded"
        self.elapsed: float = 0.0
        self._start_time: float = 0.0

    def bind(self, **fields: Any) -> None:
        self.fields.update(fields)

    def _suffix(self) -> str:
        if not self.fields:
            return ""
        return " (" + " ".join(f"{key}={value}" for key, value in self.fields.items()) + ")"

    def __enter__(self) -> "LogContext":
        self._start_time = time.perf_counter()
        self.logger.log(self.level, f"{self.message} started{self._suffix()}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.elapsed = time.perf_counter() - self._start_time

        if exc_type is not None:
            self.logger.error(
                f"{self.message} raised {exc_type.__name__} after {self.elapsed:.2f}s: "
                f"{exc_val}{self._suffix()}"
            )
            return

        level = self.level if self.outcome == "succeeded" else logging.WARNING
        self.logger.log(
            level, f"{self.message}: {self.outcome} after {self.elapsed:.2f}s{self._suffix()}"
        )

"""Logging setup for fleetops.

Diagnostics go through the standard ``logging`` module. Command output is
logged line by line at the custom TRACE level on the ``fleetops.output``
logger, with the host and stream attached to each record. Those records are
rendered in the same layout as the activity-log text mirror, so ``-vvv`` or
a TRACE-level log file shows every line each host printed next to the
surrounding diagnostics.

Session activity records live in :mod:`fleetops.logstore`; this module only
covers process logging.
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

OUTPUT_LOGGER_NAME = "fleetops.output"

CONSOLE_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DETAILED_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(lineno)d] %(message)s"
# Matches LogEntry.format_text: [timestamp] LEVEL actor [label] message
OUTPUT_FORMAT = "[%(asctime)s] %(levelname)-5s %(host)s [%(stream)s] %(message)s"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Indexed by the number of -v flags
_VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG, TRACE)

output_logger = logging.getLogger(OUTPUT_LOGGER_NAME)


def get_level_from_verbosity(verbosity: int) -> int:
    """Map a count of -v flags to a level: warning, info, debug, then trace."""
    return _VERBOSITY_LEVELS[max(0, min(verbosity, len(_VERBOSITY_LEVELS) - 1))]


def get_level_from_name(level_name: str) -> int:
    """Convert a level name from LEVEL_NAMES to its logging level.

    Raises:
        ValueError: If the name is not one of LEVEL_NAMES
    """
    try:
        return LEVEL_NAMES[level_name.lower()]
    except KeyError:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}") from None


def log_output_line(host: str, stream: str, line: str) -> None:
    """Log one line of command output at TRACE."""
    output_logger.log(TRACE, line, extra={"host": host, "stream": stream})


class OutputAwareFormatter(logging.Formatter):
    """Formatter that renders command output records in the activity-log layout.

    Records produced by :func:`log_output_line` carry ``host`` and
    ``stream`` attributes; every other record uses ``fmt``.
    """

    def __init__(self, fmt: str) -> None:
        super().__init__(fmt)
        self._output_formatter = logging.Formatter(OUTPUT_FORMAT, datefmt=TIMESTAMP_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "host") and hasattr(record, "stream"):
            return self._output_formatter.format(record)
        return super().format(record)


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Install the console handler and an optional file handler on the root logger.

    Existing root handlers are replaced. The console uses a short format
    above DEBUG and a detailed one at DEBUG and below; the file always uses
    the detailed format. Command output records use the activity-log layout
    on both.

    Args:
        level: Console level
        log_file: File to append logs to (optional)
        file_level: Level for the file handler (defaults to level)

    Example:
        >>> configure_logging(logging.WARNING, log_file="run.log", file_level=TRACE)
    """
    file_level = level if file_level is None else file_level

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(min(level, file_level) if log_file else level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(
        OutputAwareFormatter(DETAILED_FORMAT if level <= logging.DEBUG else CONSOLE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level)
        file_handler.setFormatter(OutputAwareFormatter(DETAILED_FORMAT))
        root_logger.addHandler(file_handler)


@contextmanager
def log_scope(
    logger: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
    **context: Any,
) -> Generator[None, None, None]:
    """Log the start and end of an operation with its elapsed time.

    An exception leaving the scope is logged at ERROR with the elapsed time
    and re-raised.

    Example:
        >>> with log_scope(logger, "Fleet run", hosts=3):
        ...     await fleet.run(hosts, "uptime")
        DEBUG: Fleet run started (hosts=3)
        DEBUG: Fleet run finished in 0.412s (hosts=3)
    """
    suffix = f" ({', '.join(f'{k}={v}' for k, v in context.items())})" if context else ""
    logger.log(level, f"{operation} started{suffix}")
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(f"{operation} failed after {time.perf_counter() - start:.3f}s{suffix}: {e}")
        raise
    logger.log(level, f"{operation} finished in {time.perf_counter() - start:.3f}s{suffix}")

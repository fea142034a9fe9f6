"""
Centralized Logging Configuration

Logging setup for applications embedding the QC pipeline. Library modules
only create loggers (``logging.getLogger(__name__)``); handlers are installed
by the application through ``setup_logging``.

Usage:
    from flow_qc.core.logging_config import setup_logging, get_logger

    # Initialize logging once at application startup
    setup_logging(level="INFO", log_file="/var/log/flow_qc/qc.log")

    # Get logger in any module
    logger = get_logger(__name__)
    logger.info("QC started", extra={"n_events": 250_000})
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

# Attributes every LogRecord carries; anything else came in through extra={}
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    )
)

# =============================================================================
# Custom Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter.
    Includes timestamp, level, logger name, message, and any extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_entry["file"] = f"{record.pathname}:{record.lineno}"

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for interactive runs.
    Uses ANSI color codes on the level name only.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        color = self.COLORS.get(levelname, self.RESET)
        record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


# =============================================================================
# Logger Setup Functions
# =============================================================================

_initialized = False

_CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: str | int = "INFO",
    log_file: str | None = None,
    structured: bool = False,
    colored: bool = True,
    console: bool = True,
    max_bytes: int = 10_000_000,  # 10 MB
    backup_count: int = 5,
) -> None:
    """
    Initialize logging for the application hosting the QC pipeline.

    Idempotent: calls after the first one are ignored.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a rotating JSON log file
        structured: Use JSON structured format on the console as well
        colored: Use colored level names when stdout is a terminal
        console: Attach a stdout handler
        max_bytes: Max size of log file before rotation
        backup_count: Number of rotated files to keep
    """
    global _initialized
    if _initialized:
        return

    level = _resolve_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        if structured:
            console_handler.setFormatter(StructuredFormatter())
        elif colored and sys.stdout.isatty():
            console_handler.setFormatter(ColoredFormatter(_CONSOLE_FORMAT, _DATE_FORMAT))
        else:
            console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, _DATE_FORMAT))

        root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(level)
        # File logs are always structured
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    # CuPy's compiler cache is chatty at DEBUG
    logging.getLogger("cupy").setLevel(logging.WARNING)

    _initialized = True

    root_logger.info(
        "Logging initialized",
        extra={
            "level": logging.getLevelName(level),
            "log_file": log_file,
            "structured": structured,
        },
    )


def configure_from(logging_config) -> None:
    """Initialize logging from a ``LoggingConfig`` model."""
    setup_logging(
        level=logging_config.level,
        log_file=logging_config.log_file,
        structured=logging_config.structured,
        console=logging_config.log_to_console,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_level(logger_name: str, level: str | int) -> None:
    """
    Set the logging level for a specific logger.

    Args:
        logger_name: Name of the logger to configure
        level: New logging level
    """
    logging.getLogger(logger_name).setLevel(_resolve_level(level))


# =============================================================================
# Performance Logging
# =============================================================================


def log_performance(logger: logging.Logger, operation: str, duration_ms: float, **extra) -> None:
    """
    Log the duration of a pipeline stage.

    Args:
        logger: Logger instance
        operation: Name of the stage being measured
        duration_ms: Duration in milliseconds
        **extra: Additional context fields
    """
    logger.debug(
        f"Performance: {operation} took {duration_ms:.1f} ms",
        extra={
            "operation": operation,
            "duration_ms": round(duration_ms, 2),
            "metric_type": "performance",
            **extra,
        },
    )


def log_throughput(
    logger: logging.Logger, metric_name: str, value: float, unit: str, **extra
) -> None:
    """
    Log a throughput metric.

    Args:
        logger: Logger instance
        metric_name: Name of the throughput metric
        value: Throughput value
        unit: Unit of measurement (e.g., "events/s")
        **extra: Additional context fields
    """
    logger.info(
        f"Throughput: {metric_name} = {value:.2f} {unit}",
        extra={
            "metric_name": metric_name,
            "value": value,
            "unit": unit,
            "metric_type": "throughput",
            **extra,
        },
    )

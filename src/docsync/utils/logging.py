"""Logging setup for the sync agent.

Everything goes through structlog on top of the stdlib root logger, so
records from aiohttp, SQLAlchemy and APScheduler end up in the same
console and file handlers as our own. Fields bound with
``bind_sync_context`` ride along on every record emitted while a sync
run is active, including records from worker threads spawned with
``asyncio.to_thread``.
"""

import functools
import inspect
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

import colorlog
import structlog
from structlog.typing import Processor

from ..config.settings import get_settings


LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Third-party loggers that flood DEBUG output during every run
NOISY_LOGGERS = {
    "apscheduler.executors.default": logging.WARNING,
    "apscheduler.scheduler": logging.INFO,
    "aiohttp.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}

_HANDLER_MARK = "_docsync_handler"


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the root handlers.

    Arguments left as None fall back to ``LoggingSettings``. Passing an
    empty string for ``log_file`` disables file output. Calling this
    again replaces the handlers it installed earlier.
    """
    settings = get_settings()

    level_name = (log_level or settings.logging.level).upper()
    level = getattr(logging, level_name, logging.INFO)
    format_type = log_format or settings.logging.format
    file_path = log_file if log_file is not None else settings.logging.file_path

    root = logging.getLogger()
    root.setLevel(level)
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()

    for name, floor in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, floor))

    structlog.configure(
        processors=_build_processors(format_type),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if file_path:
        root.addHandler(_file_handler(file_path, level))
    root.addHandler(_console_handler(level))


def _build_processors(format_type: str) -> list:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def _file_handler(file_path: str, level: int) -> logging.Handler:
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8"
    )
    handler.setLevel(level)
    # structlog already rendered the event, keep the line as-is
    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        log_colors={
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "red,bg_white",
        }
    ))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_sync_context(**fields: Any) -> None:
    """Attach fields such as ``sync_run_id`` to every following record."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_sync_context() -> None:
    structlog.contextvars.clear_contextvars()


def timed(func: Callable) -> Callable:
    """Log how long ``func`` took at DEBUG, or at ERROR when it raises.

    Works on both plain and ``async def`` functions.
    """
    logger = get_logger(func.__module__)

    def _report(started: float, error: Optional[BaseException] = None) -> None:
        elapsed = round(time.perf_counter() - started, 4)
        if error is None:
            logger.debug("Call finished", function=func.__qualname__, elapsed_seconds=elapsed)
        else:
            logger.error(
                "Call failed",
                function=func.__qualname__,
                elapsed_seconds=elapsed,
                error=str(error),
                error_type=type(error).__name__
            )

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _report(started, e)
                raise
            _report(started)
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _report(started, e)
            raise
        _report(started)
        return result

    return wrapper

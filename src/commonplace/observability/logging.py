"""structlog setup for the CLI and library code.

Events are snake_case names with key/value context, for example
``entry_inserted``, ``search_completed``, ``index_rebuilt``,
``join_completed`` and ``layout_fallback``.

How to use:
    from commonplace.observability.logging import get_logger

    logger = get_logger(__name__)
    logger.info("entry_inserted", entry_id=str(entry.id), article=entry.metadata.article)

Logs go to stderr so command output on stdout (``layout --json``) stays
machine-readable.
"""

import logging
import logging.handlers
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from commonplace.config.schema import LoggingConfig

LOG_FILE_NAME = "commonplace.log"

# Libraries that log every query or request at DEBUG/INFO
_NOISY_LOGGERS = ("aiosqlite", "chromadb", "httpx", "httpcore", "openai", "sentence_transformers")


class TimedRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """Daily rotating file handler that deletes files older than max_days."""

    def __init__(self, filename: str, max_days: int = 30, **kwargs):
        super().__init__(filename, when="midnight", interval=1, **kwargs)
        self.max_days = max_days

    def doRollover(self) -> None:
        super().doRollover()
        self._cleanup_old_files()

    def _cleanup_old_files(self) -> None:
        """Remove rotated log files older than max_days."""
        base_dir = os.path.dirname(self.baseFilename)
        prefix = os.path.basename(self.baseFilename) + "."
        cutoff = datetime.now(timezone.utc).timestamp() - self.max_days * 86400

        for filename in os.listdir(base_dir):
            if not filename.startswith(prefix):
                continue
            path = os.path.join(base_dir, filename)
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except OSError as e:
                logging.getLogger(__name__).debug("log cleanup skipped %s: %s", path, e)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every event with ``app``."""
    event_dict["app"] = "commonplace"
    return event_dict


def _processors(json_logs: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def _attach_file_handler(log_dir: Path, log_level: int, max_days: int) -> None:
    """Route stdlib logging to a rotating file under ``log_dir``.

    Raises:
        OSError: If the directory or file cannot be created
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()

    handler = TimedRotatingFileHandler(str(log_dir / LOG_FILE_NAME), max_days=max_days, encoding="utf-8")
    handler.setLevel(log_level)
    root.addHandler(handler)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_dir: Optional[Path] = None,
    max_days: int = 30,
    enable_file: bool = False,
) -> None:
    """Set up structlog for the process.

    Events below ``level`` are dropped. With ``enable_file`` and a
    ``log_dir``, rendered events go through the stdlib root logger into a
    daily rotating ``commonplace.log`` kept for ``max_days``; otherwise they
    are printed to stderr.
    """
    log_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logger_factory: Any = structlog.PrintLoggerFactory(file=sys.stderr)
    if enable_file and log_dir:
        try:
            _attach_file_handler(log_dir, log_level, max_days)
            logger_factory = structlog.stdlib.LoggerFactory()
        except OSError as e:
            logging.getLogger(__name__).warning("file logging disabled, cannot write to %s: %s", log_dir, e)

    structlog.configure(
        processors=_processors(json_logs),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)


def configure_from_config(config: LoggingConfig) -> None:
    """Configure logging from a LoggingConfig object."""
    configure_logging(
        level=config.level.value,
        json_logs=config.json_logs,
        log_dir=config.log_dir if config.enable_file else None,
        max_days=config.max_days,
        enable_file=config.enable_file,
    )


@contextmanager
def bound_context(**values: Any) -> Iterator[None]:
    """Attach ``values`` to every event logged inside the block.

    Example:
        with bound_context(command="search"):
            await graph.search(query)
    """
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)

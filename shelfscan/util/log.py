"""
structlog setup.

Events are routed through the stdlib logging tree, so the console and the
optional rotating log file receive the same rendered records, and log lines
from aiohttp or openai share the same format.
"""
import logging
import logging.handlers
import pathlib
from typing import Any

import structlog

from shelfscan.internal.env_settings import ApplicationSettings

LOG_FILE_MAX_BYTES = 50 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Third-party loggers that are chatty at DEBUG
QUIET_LOGGERS = ("aiohttp.access", "httpx", "httpcore", "openai")

_shared_processors: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _renderer(log_format: str) -> list[Any]:
    if log_format.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=False)]


def setup_logging(app_settings: ApplicationSettings | None = None) -> None:
    """
    Configure structlog and the root logger from the application settings.

    Uses `log_level`, `log_format` ("text" or "json") and `log_file`, which is
    written under `<config_dir>/logs/` and rotated.
    """
    app_settings = app_settings or ApplicationSettings()
    level = logging.getLevelName(app_settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderer(app_settings.log_format),
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if app_settings.log_file:
        log_dir = pathlib.Path(app_settings.config_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_dir / app_settings.log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
            )
        )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers = []
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[*_shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_logger() -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.stdlib.get_logger()


logger = get_logger()

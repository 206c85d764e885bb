"""
Logging Configuration for the Metrics Cache Backend

structlog renders every event, its own and those of stdlib loggers such as
redis-py, through one handler on stderr. stdout is left to command output.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level, add_logger_name

from metrics_backend.config.settings import get_settings

# Loggers that stay at INFO or above whatever the configured level
QUIET_LOGGERS = ("redis", "asyncio")


def _pre_chain() -> List[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]


def _renderer(fmt: str, stream) -> structlog.types.Processor:
    if fmt.lower() == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream=None,
) -> logging.Handler:
    """
    Route structlog and stdlib logging through a single stream handler.

    Args:
        log_level: Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)
        log_format: Override LOG_FORMAT ("json", anything else is console)
        stream: Destination, stderr by default

    Returns:
        The installed handler
    """
    settings = get_settings()
    level_name = (log_level or settings.monitoring.log_level).upper()
    fmt = log_format or settings.monitoring.log_format
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    stream = stream or sys.stderr

    pre_chain = _pre_chain()
    structlog.configure(
        processors=pre_chain + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(ProcessorFormatter(processor=_renderer(fmt, stream), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    structlog.get_logger(__name__).debug(
        "Logging configured", level=level_name, format=fmt, environment=settings.app_env
    )
    return handler

import logging
import logging.config
import os

import structlog
from structlog.contextvars import merge_contextvars
from structlog.processors import StackInfoRenderer, TimeStamper, format_exc_info
from structlog.stdlib import add_log_level

# Shared processors
shared_processors = [
    merge_contextvars,
    add_log_level,
    TimeStamper(fmt="iso", utc=True),
    StackInfoRenderer(),
    format_exc_info,
]

CONSOLE_RENDERER = structlog.dev.ConsoleRenderer(colors=True, pad_event_to=0, pad_level=False)

# Third-party loggers that flood the console at INFO
QUIET_LOGGERS = {
    "aio_pika": "WARNING",
    "aiormq": "WARNING",
    "httpx": "WARNING",
    "uvicorn.access": "WARNING",
}


def _formatter(renderer) -> dict:
    return {
        "()": "structlog.stdlib.ProcessorFormatter",
        "processor": renderer,
        "foreign_pre_chain": shared_processors,
    }


def build_logging_config(level: str = "INFO", *, json_logs: bool = False) -> dict:
    """stdlib dictConfig routing every logger through structlog's formatter."""
    loggers = {
        name: {"handlers": ["console"], "level": lvl, "propagate": False}
        for name, lvl in {"": level, "apps": level, "infrastructure": level, **QUIET_LOGGERS}.items()
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": _formatter(CONSOLE_RENDERER),
            "json": _formatter(structlog.processors.JSONRenderer()),
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_logs else "plain",
            },
        },
        "loggers": loggers,
    }


def configure_logging(level: str | None = None, *, json_logs: bool | None = None) -> None:
    """Configure stdlib logging and structlog; arguments fall back to MATCHING_LOG_* env vars."""
    level_name = (level or os.getenv("MATCHING_LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("MATCHING_LOG_JSON", "false").lower() in {"1", "true", "yes"}

    logging.config.dictConfig(build_logging_config(level_name, json_logs=json_logs))
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelNamesMapping()[level_name]),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

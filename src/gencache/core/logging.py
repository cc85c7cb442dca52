"""Structured logging configuration for gencache.

structlog sits on top of the standard library so that gencache events and
third-party records (SQLAlchemy, openai, httpx) share one handler and one
renderer: JSON in production, a colored console in development.

Every log line emitted while a resolve() is running carries a generation id
(`<cache_key>#<input hash prefix>`). The id follows the work into the
background generation task, so retries, quota denials and cache writes of
one request can be grepped together even when several callers coalesce on it.

Usage:
    from gencache.core.logging import configure_logging, get_logger

    configure_logging(settings)
    logger = get_logger(__name__)

    with generation_context("summary-S1", input_hash):
        logger.info("cache_miss")  # carries generation_id, cache_key, input_hash
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from gencache.config import Settings

INPUT_HASH_PREFIX = 12

# Third-party loggers held at WARNING unless settings.debug is on
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "aiosqlite", "sqlalchemy.engine")

generation_id_ctx: ContextVar[str | None] = ContextVar("generation_id", default=None)


def generation_id(cache_key: str, input_hash: str) -> str:
    return f"{cache_key}#{input_hash[:INPUT_HASH_PREFIX]}"


def current_generation_id() -> str | None:
    """Id of the generation the current task is working on, if any."""
    return generation_id_ctx.get()


@contextmanager
def generation_context(
    cache_key: str, input_hash: str, **fields: Any
) -> Iterator[str]:
    """Tag every log line in the block with one generation's identity.

    Nested blocks (a chain stage resolving its dependencies) restore the
    outer id on exit.

    Yields:
        The generation id
    """
    gen_id = generation_id(cache_key, input_hash)
    token = generation_id_ctx.set(gen_id)
    try:
        with log_context(
            cache_key=cache_key, input_hash=input_hash[:INPUT_HASH_PREFIX], **fields
        ):
            yield gen_id
    finally:
        generation_id_ctx.reset(token)


def add_generation_id(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Structlog processor adding the current generation id."""
    gen_id = current_generation_id()
    if gen_id:
        event_dict.setdefault("generation_id", gen_id)
    return event_dict


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["service"] = "gencache"
    return event_dict


def _render_chain(settings: Settings) -> list[Processor]:
    if settings.use_json_logs:
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structured logging for the process.

    Args:
        settings: Application settings. If None, uses default settings.
    """
    if settings is None:
        from gencache.config import get_settings

        settings = get_settings()

    log_level = getattr(logging, settings.log_level.value, logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_generation_id,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    # structlog events are handed to the stdlib formatter unrendered, so they
    # go through the same render chain as foreign records
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_render_chain(settings),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if not settings.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Example:
        logger = get_logger(__name__)
        logger.info("generation_started", cache_type="study_notes")
    """
    return structlog.get_logger(name)


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Context manager binding values to all logs within the block."""
    return structlog.contextvars.bound_contextvars(**kwargs)

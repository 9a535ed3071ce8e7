"""structlog setup for the entitlement sync service.

Events render as one JSON object per line (or colored console lines when
LOG_FORMAT=console) and carry whatever request context is bound:
request_id, user_id, product_id. Purchase tokens are shortened before
rendering.
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "entitlement-sync"

# Keys whose values are purchase tokens or credentials
_REDACTED_KEYS = ("token", "purchase_token", "linked_purchase_token")
_TOKEN_PREVIEW_LENGTH = 12


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def redact_tokens(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep a short prefix of each purchase token for correlation."""
    for key in _REDACTED_KEYS:
        token = event_dict.get(key)
        if not isinstance(token, str) or len(token) <= _TOKEN_PREVIEW_LENGTH:
            continue
        event_dict[key] = f"{token[:_TOKEN_PREVIEW_LENGTH]}..."
    return event_dict


def is_debug_mode() -> bool:
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def drop_debug_in_production(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Discard debug events unless LOG_LEVEL=DEBUG."""
    if method_name != "debug" or is_debug_mode():
        return event_dict
    raise structlog.DropEvent


def _build_processors(numeric_level: int, include_timestamp: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        redact_tokens,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_in_production)
    return processors


def _renderer(json_format: bool) -> Processor:
    if json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL; unknown names mean INFO
        json_format: JSON lines when True, console rendering otherwise
        include_timestamp: Add a UTC ISO8601 ``timestamp`` field
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    structlog.configure(
        processors=[*_build_processors(numeric_level, include_timestamp), _renderer(json_format)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or APP_NAME)


def bind_context(**kwargs: Any) -> None:
    """Bind request context for every later event in this task.

    ``None`` values are skipped, so optional fields can be passed through:

        bind_context(user_id=request.user_id, product_id=request.product_id)
    """
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in kwargs.items() if value is not None}
    )


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()

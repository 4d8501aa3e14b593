"""Structured logging configuration with structlog."""

import logging

import structlog

from eventportal.config import Settings

# Keys whose values must never reach the logs.
_REDACTED_KEYS = frozenset({"password", "new_password", "current_password", "code", "token", "password_hash"})


def _redact_secrets(
    _logger: logging.Logger, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output. Shared by the API and the bot process."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    # httpx logs every request URL at INFO, and Bot API URLs embed the token.
    logging.getLogger("httpx").setLevel(logging.WARNING)

"""
Structured logging for the tuition payment service.

structlog renders every event as one JSON line; the stdlib root logger
(uvicorn, sqlalchemy, httpx) goes through python-json-logger so both streams
share a format. Gateway signatures, keys and device tokens never reach the
log stream in full.
"""
import logging
import sys
from typing import Any, List

import structlog
from pythonjsonlogger import jsonlogger

from tuition_payments.config import get_settings

SENSITIVE_KEYS = frozenset(
    {
        "signature_key",
        "server_key",
        "push_server_key",
        "midtrans_server_key",
        "authorization",
        "device_token",
        "snap_token",
    }
)

# Libraries whose INFO output drowns the payment events
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Tag every event with the service name and environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def scrub_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask secrets before rendering.

    Keeps the last 4 characters of string values so operators can still
    correlate a token across events.
    """
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"***{value[-4:]}"
        else:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_app_context,
        scrub_sensitive_fields,
        structlog.processors.JSONRenderer(),
    ]


def _configure_stdlib(level: str, echo_sql: bool) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if echo_sql else logging.WARNING)


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger from settings."""
    settings = get_settings()

    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configure_stdlib(settings.log_level, settings.database_echo)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )

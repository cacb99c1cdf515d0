"""
Structured logging configuration.

structlog renders every event as one JSON line on stdout, shared with
stdlib loggers (uvicorn, sqlalchemy, httpx) through python-json-logger.
Request ids are bound per request through contextvars.

Gateway signatures and secrets never reach the log stream; customer
emails and phone numbers are masked.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from orderflow.config import get_settings

SECRET_FIELDS = frozenset(
    {
        "signature",
        "razorpay_signature",
        "x_razorpay_signature",
        "key_secret",
        "webhook_secret",
        "admin_key",
        "authorization",
    }
)
MASKED_FIELDS = frozenset({"email", "contact", "phone"})

_configured = False


def mask_value(value: Any) -> Any:
    """Keep enough of an email/phone to correlate, hide the rest."""
    if not isinstance(value, str) or not value:
        return value
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"


def redact_payment_data(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor dropping secrets and masking contact details."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_FIELDS:
            event_dict[key] = "[redacted]"
        elif lowered in MASKED_FIELDS:
            event_dict[key] = mask_value(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging(force: bool = False) -> None:
    """
    Configure structlog and the root JSON handler.

    Safe to call more than once (the API factory and the worker both call
    it); pass ``force`` to reapply after settings change.
    """
    global _configured
    if _configured and not force:
        return
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_payment_data,
            add_app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    _configured = True
    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )

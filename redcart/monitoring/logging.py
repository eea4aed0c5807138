"""
Structured logging.

structlog renders every event as one JSON line; stdlib records from
libraries go through python-json-logger so both share a stream. Provider
credentials never reach the log and payer phone numbers are masked.
"""
import logging
import re
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from redcart.config import Settings, get_settings

SECRET_KEYS = frozenset(
    {"password", "passkey", "access_token", "authorization", "consumer_secret", "smtp_pass"}
)
PHONE_KEYS = frozenset({"phone", "phone_number", "payer_phone", "msisdn"})
_PHONE_DIGITS = re.compile(r"^\+?\d{9,12}$")


def mask_phone(value: Any) -> Any:
    """``254712345678`` -> ``2547*****678``. Non-phone values pass through."""
    text = str(value)
    if not _PHONE_DIGITS.match(text):
        return value
    prefix = "+" if text.startswith("+") else ""
    digits = text[len(prefix):]
    return f"{prefix}{digits[:4]}{'*' * (len(digits) - 7)}{digits[-3:]}"


def redact_sensitive(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            event_dict[key] = "***"
        elif lowered in PHONE_KEYS and event_dict[key] is not None:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def _app_context(settings: Settings) -> Any:
    def add_app_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger.

    Request ids bound with ``structlog.contextvars`` by the API middleware are
    merged into every event logged while the request is handled.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _app_context(settings),
            redact_sensitive,
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
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    # Daraja requests are logged by the client itself
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )

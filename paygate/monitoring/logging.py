"""
Structured logging for the gateway.

structlog renders every event as one JSON line carrying the request
context bound by the API middleware (request_id, method, path) plus the
service name and environment. Credentials that end up in an event are
replaced before rendering.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from paygate.config import Settings, get_settings

EventDict = Dict[str, Any]

REDACTED = "***"
CREDENTIAL_KEYS = frozenset(
    {
        "vnpay_hash_secret",
        "momo_access_key",
        "momo_secret_key",
        "zalopay_key1",
        "zalopay_key2",
        "secure_hash",
        "signature",
        "mac",
    }
)

NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def service_context(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Processor stamping the service name and environment on each event."""

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_service_context


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in CREDENTIAL_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; handlers on the root logger are replaced.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            service_context(settings),
            redact_credentials,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Library records (uvicorn, sqlalchemy) go through python-json-logger
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(settings.log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).debug(
        "logging_configured", log_level=settings.log_level, env=settings.app_env
    )

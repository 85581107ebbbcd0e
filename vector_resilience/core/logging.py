"""
Structured logging for cache, index and embedding components.

Every event carries the request correlation id and the active embedding
provider and cache backend. Provider keys and database passwords are
masked before rendering.
"""
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from structlog.stdlib import LoggerFactory
from pythonjsonlogger import jsonlogger

from vector_resilience.core.config import settings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

SECRET_KEYS = ("api_key", "password", "secret", "token", "authorization")
REDACTED = "***"
_URL_PASSWORD = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://[^:/@\s]+:)[^@\s]+@", re.IGNORECASE)
_PROVIDER_KEY = re.compile(r"\bsk-[A-Za-z0-9_-]{8,}")


def get_correlation_id() -> str:
    """Correlation id of the current context; one is created on first use."""
    correlation_id = correlation_id_var.get()
    if correlation_id is None:
        correlation_id = set_correlation_id()
    return correlation_id


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    correlation_id = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def log_request_error(logger, event: str, request, **kwargs):
    """Log an error together with the request path and method."""
    logger.error(event, path=request.url.path, method=request.method, **kwargs)


def redact_text(value: str) -> str:
    """Mask URL passwords and provider keys inside free text."""
    value = _URL_PASSWORD.sub(lambda m: f"{m.group('scheme')}{REDACTED}@", value)
    return _PROVIDER_KEY.sub(REDACTED, value)


def redact_secrets(logger, method_name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in SECRET_KEYS):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = redact_text(value)
    return event_dict


def add_correlation_id(logger, method_name, event_dict):
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def add_app_context(logger, method_name, event_dict):
    event_dict["app_name"] = settings.APP_NAME
    event_dict["app_version"] = settings.APP_VERSION
    event_dict["environment"] = "development" if settings.DEBUG else "production"
    event_dict.setdefault("embedding_provider", settings.EMBEDDING_PROVIDER)
    event_dict.setdefault("cache_backend", settings.CACHE_BACKEND)
    return event_dict


def build_processors(log_format: str) -> List[Any]:
    renderer = (
        structlog.processors.JSONRenderer() if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_correlation_id,
        add_app_context,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
        redact_secrets,
        renderer,
    ]


def configure_logging(level: str = settings.LOG_LEVEL, log_format: str = settings.LOG_FORMAT) -> None:
    """
    Configure stdlib logging and structlog.

    With ``log_format="json"`` the stdlib root handler also emits JSON so
    records from SQLAlchemy, httpx and uvicorn share one format.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
        force=True,
    )

    if log_format == "json":
        json_formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "log.level"},
        )
        for handler in logging.root.handlers:
            handler.setFormatter(json_formatter)

    structlog.configure(
        processors=build_processors(log_format),
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def get_utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


configure_logging()

"""
Structured logging for the scheduler.

structlog renders application events; stdlib loggers (uvicorn, celery,
sqlalchemy, googleapiclient) are routed through python-json-logger so both
streams share one JSON shape. Correlation, user and Celery task ids are kept in
context variables and stamped onto every event.
"""
import os
import sys
import uuid
import logging
import logging.config
from typing import Dict, Any, List, Optional
from contextvars import ContextVar

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

# Third-party loggers and the minimum level they are allowed to emit at
_LIBRARY_LEVELS = {
    "uvicorn.access": "INFO",
    "celery": "INFO",
    "sqlalchemy.engine": "WARNING",
    "googleapiclient.discovery_cache": "ERROR",
}

_REDACT_MARKERS = (
    'token', 'secret', 'password', 'authorization', 'credential', 'jwt',
)


def add_request_context(logger, method_name, event_dict):
    """Stamp the active correlation and user ids onto the event."""
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault('correlation_id', correlation_id)
    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault('user_id', user_id)
    return event_dict


class ServiceInfo:
    def __init__(self, service_name: str, version: str):
        self.service_name = service_name
        self.version = version

    def __call__(self, logger, method_name, event_dict):
        event_dict['service'] = self.service_name
        event_dict['version'] = self.version
        return event_dict


def redact_credentials(logger, method_name, event_dict):
    """Mask OAuth tokens, channel tokens and other secrets."""
    return _redact(event_dict)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if _is_sensitive(key) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    # sync_token and next_page_token are cursors, not credentials
    if lowered in ('sync_token', 'next_page_token', 'page_token'):
        return False
    return any(marker in lowered for marker in _REDACT_MARKERS)


def _stdlib_config(log_level: str, enable_json: bool, log_file: Optional[str]) -> Dict[str, Any]:
    handlers: List[str] = ["console"]
    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "plain": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "json" if enable_json else "plain",
                "stream": sys.stdout,
            },
        },
    }

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 20 * 1024 * 1024,
            "backupCount": 3,
        }
        handlers.append("file")

    loggers = {"": {"handlers": list(handlers), "level": log_level, "propagate": False}}
    for name, level in _LIBRARY_LEVELS.items():
        loggers[name] = {"handlers": list(handlers), "level": level, "propagate": False}
    config["loggers"] = loggers
    return config


def configure_logging(
    log_level: str = "INFO",
    service_name: str = "brain-dumper-scheduler",
    version: str = "0.1.0",
    enable_json: bool = True,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the stdlib logging tree."""
    renderer = (
        structlog.processors.JSONRenderer() if enable_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            ServiceInfo(service_name, version),
            redact_credentials,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig(_stdlib_config(log_level.upper(), enable_json, log_file))


class LoggingContext:
    """Bind correlation id, user id and extra keys for the duration of a block.

    Used around HTTP requests and Celery task bodies.
    """

    def __init__(self, correlation_id: Optional[str] = None,
                 user_id: Optional[str] = None, **extra):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.user_id = user_id
        self.extra = extra
        self._tokens = []

    def __enter__(self):
        self._tokens.append(correlation_id_var.set(self.correlation_id))
        if self.user_id:
            self._tokens.append(user_id_var.set(self.user_id))
        if self.extra:
            structlog.contextvars.bind_contextvars(**self.extra)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.extra:
            structlog.contextvars.unbind_contextvars(*self.extra)
        for token in reversed(self._tokens):
            token.var.reset(token)

"""
Structured logging configuration.

Logs go through structlog on top of stdlib logging so that uvicorn/httpx records
and our own events share one renderer. Bearer tokens are everywhere in this
service, so every event passes through ``sanitize_secrets`` before rendering.
"""

import logging
import os
import sys
from typing import Any, Dict

import structlog
from structlog import dev as structlog_dev

SENSITIVE_KEYS = {
    "token",
    "tokens",
    "access_token",
    "refresh_token",
    "auth_token",
    "bearer",
    "authorization",
    "api_key",
    "secret",
    "access_key_secret",
    "security_token",
    "password",
}


def _redact_value(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ""
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return "***REDACTED***"


def _is_sensitive(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "").replace("_", "")
    for pattern in SENSITIVE_KEYS:
        p = pattern.replace("_", "")
        if normalized == p or normalized.endswith(p):
            return True
    return False


def _sanitize_dict(d: Dict[Any, Any]) -> Dict[Any, Any]:
    sanitized: Dict[Any, Any] = {}
    for key, value in d.items():
        if _is_sensitive(key):
            sanitized[key] = _redact_value(value)
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [_sanitize_dict(v) if isinstance(v, dict) else v for v in value]
        else:
            sanitized[key] = value
    return sanitized


def sanitize_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Redact credential-like keys (exact or suffix match, case and separator insensitive)."""
    return _sanitize_dict(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Set up structlog + stdlib logging.

    Environment overrides: LOG_LEVEL (debug|info|...), LOG_FORMAT (json|console).
    """
    log_level = (os.getenv("LOG_LEVEL") or log_level).upper()
    log_format = (os.getenv("LOG_FORMAT") or log_format).strip().lower()
    level_value = getattr(logging, log_level, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            sanitize_secrets,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer() if log_format == "console" else structlog.processors.JSONRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # httpx logs every request line (with query strings carrying device ids) at INFO.
    for name in ("httpx", "httpcore", "hpack", "h2"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog

# Per-request correlation ID, echoed back through the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_uri_password(uri: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URI for safe logging.

    Example: mongodb://admin:s3cret@db:27017/crm -> mongodb://admin:***@db:27017/crm
    """
    if not uri:
        return uri
    try:
        parts = urlsplit(uri)
        if not parts.password:
            return uri
        # netloc may hold several hosts for replica sets, keep everything after '@'
        hosts = parts.netloc.rsplit("@", 1)[-1]
        user = parts.username or ""
        netloc = f"{user}:***@{hosts}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return "***uri_parse_error***"


_URI_KEYS = ("uri", "url")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials from log entries.

    Password-like keys keep only their first and last two characters; any key
    that looks like a connection URI has its password component masked.
    """
    secret_keys = {"password", "secret", "token", "api_key", "authorization"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        if any(secret in lower_key for secret in secret_keys):
            if len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
        elif lower_key.endswith(_URI_KEYS):
            event_dict[key] = mask_uri_password(value)
    return event_dict


_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """(Re)configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _truthy(os.getenv("LOG_JSON", "true"))
    if dev_mode is None:
        dev_mode = _truthy(os.getenv("LOG_DEV_MODE"))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(sort_keys=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Credentials that external tools (mongodump, mongorestore, drivers) echo back
_CREDENTIAL_PATTERNS = [
    re.compile(r"(?i)(mongodb(?:\+srv)?://[^:/@\s]*:)[^@\s]+(@)"),
    re.compile(r"(?i)(password|secret|token)(\s*[:=]\s*)[^\s,;]+"),
]

MAX_ERROR_MESSAGE_LENGTH = 2000


def sanitize_error_message(error: Optional[str], *, replacement: str = "***") -> str:
    """Strip credentials from driver or tool output before returning it to callers.

    Tool stderr is surfaced to operators so they can act on a failure without
    reading server logs; passwords embedded in connection strings must not be.
    """
    if not error or not isinstance(error, str):
        return ""

    result = _CREDENTIAL_PATTERNS[0].sub(rf"\g<1>{replacement}\g<2>", error)
    result = _CREDENTIAL_PATTERNS[1].sub(rf"\g<1>\g<2>{replacement}", result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result

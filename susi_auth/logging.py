from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

EventDict = Dict[str, Any]

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings of log keys whose values must never reach the log sink verbatim.
_PII_KEYS = (
    "password",
    "secret",
    "token",
    "authorization",
    "email",
    "phone",
    "totp",
)
# Digests and key prefixes are safe to log and useful when correlating records.
_PII_SAFE_SUFFIXES = ("_hash", "_prefix")


def _mask(value: str) -> str:
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _redact_pii(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential and contact values, keeping two chars each side for debugging."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith(_PII_SAFE_SUFFIXES) or not isinstance(value, str):
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Route structlog through the correlation and redaction processors.

    JSON lines in production; coloured console output when ``dev_mode`` is
    set or ``json_output`` is off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
        r"(?i)\$argon2[a-z]*\$[^\s]+",
    )
]
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL text, paths, credentials, password digests and stack traces.

    Store and dependency errors pass through here before they are logged, so
    a failed query never writes user data or hashes to the log sink.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result

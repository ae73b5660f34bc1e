"""Structured logging for the identity provider.

Events are structlog key/value records. The HTTP middleware binds a
correlation id into structlog's context variables so every event emitted while
serving a request carries it. Values under credential keys are dropped
outright and email addresses anywhere in a value keep only their first two
characters.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

REDACTED = "[redacted]"

_CREDENTIAL_KEYS = frozenset(
    {
        "password",
        "secret",
        "authorization",
        "token",
        "approval_code",
        "backup_code",
        "mfa_code",
    }
)
_CREDENTIAL_SUFFIXES = ("_password", "_secret", "_token")
_EMAIL_RE = re.compile(r"([^\s@:]{1,2})[^\s@:]*@")


def redact_email(value: str) -> str:
    """``operator@example.com`` -> ``op***@example.com``; also inside longer strings."""
    return _EMAIL_RE.sub(r"\1***@", value)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when the client sent none."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _is_credential(key: str) -> bool:
    key = key.lower()
    return key in _CREDENTIAL_KEYS or key.endswith(_CREDENTIAL_SUFFIXES)


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if _is_credential(key):
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "@" in value:
            event_dict[key] = redact_email(value)
    return event_dict


def _configure(level: str, json_output: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact,
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure(
    os.getenv("LOG_LEVEL", "INFO"),
    os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

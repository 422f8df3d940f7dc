from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# request id of the call being served; the API middleware sets it
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# substring match against lower-cased keys: "session_token", "new_email", ...
_MASKED_KEY_PARTS = frozenset(
    {"password", "secret", "token", "authorization", "email", "phone", "cookie"}
)


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask session tokens, 2FA secrets and contact details.

    Short values are left alone; longer ones keep two characters at each end
    so an operator can still tell two masked tokens apart.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _MASKED_KEY_PARTS):
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline used by every ``arenaauth`` logger.

    JSON lines are meant for log shipping; ``json_output=False`` switches to
    the coloured console renderer for local runs and the test suite.
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
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# fragments that must never reach a client: SQL text, driver connection
# errors, filesystem paths, inline credentials and tracebacks
_LEAKY_FRAGMENTS = [
    re.compile(r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}'),
    re.compile(r'(?i)connection\s+.*\s+(failed|refused|timeout)'),
    re.compile(r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+'),
    re.compile(r'(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+'),
    re.compile(r'(?i)traceback\s*\(most recent call last\)'),
]

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` fit for an error envelope."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)

    if len(error) > _MAX_CLIENT_MESSAGE:
        error = error[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return error

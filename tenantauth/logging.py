"""Structured logging for the identity service.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Every entry carries the request correlation id, and
credential material is scrubbed before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these keys are never useful in logs, not even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "hash")
# Login identifiers may be email addresses; keep the domain for debugging
_CONTACT_KEYS = ("email", "identifier")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***" if len(value) > 2 else "***"
    return f"{local[:1]}***@{domain}"


def _inject_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lowered for marker in _CONTACT_KEYS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the structlog processor chain.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines when True
        development_mode: Force the colored console renderer
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not development_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))

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
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(p)
    for p in (
        # Signed tokens and password hashes
        r"eyJ[\w-]+\.[\w-]+\.[\w-]*",
        r"\$argon2(?:id|i|d)\$\S+",
        # Storage internals
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)postgres(?:ql)?://\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip tokens, hashes, queries and paths from a message bound for a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_CLIENT_MESSAGE:
        error = error[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return error

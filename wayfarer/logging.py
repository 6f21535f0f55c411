from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Credentials and one-time codes never appear in logs, not even partially
_SECRET_MARKERS = (
    "password",
    "secret",
    "token",
    "authorization",
    "code",
    "totp",
    "backup",
)
# Contact details keep enough shape to eyeball in an incident
_CONTACT_MARKERS = ("email", "phone")
# Diagnostic fields that merely mention a marker
_SAFE_KEYS = frozenset({"status_code", "error_code", "token_type", "email_configured"})


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_contact(value: str) -> str:
    if "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{value[-2:]}" if len(value) > 4 else REDACTED


def _matches(key: str, markers: Iterable[str]) -> bool:
    return any(marker in key for marker in markers)


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask contact details in structured fields.

    Keys ending in ``_hash`` are left alone: they are already one-way digests
    (``email_hash``, ``token_hash``) and are what lets log lines be joined.
    """
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if value is None or lowered == "event" or lowered in _SAFE_KEYS:
            continue
        if lowered.endswith("_hash"):
            continue
        if _matches(lowered, _SECRET_MARKERS):
            event_dict[key] = REDACTED
        elif _matches(lowered, _CONTACT_MARKERS) and isinstance(value, str):
            event_dict[key] = _mask_contact(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline used by every module.

    JSON lines go to stdout in production. ``json_output=False`` switches to
    the coloured console renderer for local work.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_email(email: str) -> str:
    """Stable, non-reversible identifier for an email address in logs."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()

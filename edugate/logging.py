from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Per-request correlation id, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_SUBSTRINGS = ("password", "secret", "token", "api_key", "authorization", "email", "phone")
_PII_EXACT_KEYS = frozenset({"code", "two_factor_code", "backup_code", "otp"})
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in _PII_EXACT_KEYS or any(part in lowered for part in _PII_SUBSTRINGS)


def _redact_pii(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials, one-time codes and contact details.

    Strings longer than four characters keep their first and last two
    characters so related log lines can still be matched up; anything
    shorter is replaced outright.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str) or not _is_sensitive(key):
            continue
        event_dict[key] = f"{value[:2]}***{value[-2:]}" if len(value) > 4 else "***"
    return event_dict


def _renderer(json_output: bool) -> List[Any]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """(Re)configure structlog; JSON for deployments, console output for local work."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_email(email: Optional[str]) -> str:
    """Mask an email address for display (``jo***@example.com``)."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number, keeping the last four digits."""
    if not phone:
        return "***"
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"

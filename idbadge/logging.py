from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Log keys whose values are credentials and are never shown, even partially
_SECRET_KEYS = ("password", "secret", "token", "code", "signature", "authorization")
_EMAIL_KEYS = ("email", "to")
_PHONE_KEYS = ("phone", "device")
_PASSTHROUGH_KEYS = frozenset({"event", "error_code", "message_code", "level", "timestamp", "logger"})


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Use the caller's ``X-Request-ID`` or mint one, and bind it for this request."""
    rid = (request_id or "").strip()[:128] or uuid.uuid4().hex
    request_id_var.set(rid)
    return rid


def redact_email(email: str) -> str:
    """Shorten an address to something safe to log."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_phone(phone: str) -> str:
    return f"***{phone[-2:]}" if len(phone) > 4 else "***"


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    rid = get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _mask_identity_data(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials, one-time codes, addresses and phone numbers."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(part == lower_key or lower_key.endswith("_" + part) for part in _EMAIL_KEYS):
            event_dict[key] = redact_email(value)
        elif any(part in lower_key for part in _PHONE_KEYS):
            event_dict[key] = redact_phone(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line
        development_mode: Pretty console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _mask_identity_data,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

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
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy(os.getenv("LOG_JSON", "true")),
    development_mode=_truthy(os.getenv("LOG_DEV_MODE", "false")),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

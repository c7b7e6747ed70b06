"""Structured logging with correlation ids and secret redaction.

Passwords, codes, tokens and secrets must never reach a log line, so the
redaction processor runs on every event before rendering. E-mail addresses
are only logged through :func:`mask_email`.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[REDACTED]"

# substrings: cualquier clave que los contenga se redacta
_SENSITIVE_FRAGMENTS = ("password", "contrasena", "secret", "token", "otp", "authorization")
# claves exactas (evita redactar status_code, error_code, etc.)
_SENSITIVE_KEYS = frozenset({"code", "codigo", "codigo2fa", "raw_code", "hashed_password", "code_hash"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def is_sensitive_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _SENSITIVE_KEYS:
        return True
    return any(fragment in lower_key for fragment in _SENSITIVE_FRAGMENTS)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor replacing the value of every sensitive key, nested dicts included."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        value = event_dict[key]
        if is_sensitive_key(key):
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def _redact_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in data.items():
        if isinstance(key, str) and is_sensitive_key(key):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = _redact_mapping(value)
        else:
            result[key] = value
    return result


def mask_email(email: Optional[str]) -> str:
    """ab***yz@g***.com style mask used for logs and user-facing echoes."""
    if not email:
        return "correo oculto"
    local, sep, domain = email.partition("@")
    if not sep or not domain:
        return "***@***"
    masked_local = f"{local[:2]}***{local[-2:]}" if len(local) > 4 else "***"
    head, dot, tail = domain.partition(".")
    masked_domain = f"{head[:1]}***.{tail}" if dot else "***"
    return f"{masked_local}@{masked_domain}"


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def security_event(logger: Any, action: str, user_id: Optional[str] = None, **metadata: Any) -> None:
    """Audit-style line: SECURITY [action] with the user id (never secrets)."""
    logger.info("security_event", action=action, user_id=user_id or "unknown", **metadata)

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys whose values never reach a log line in clear text
_CREDENTIAL_KEYS = (
    "password",
    "secret",
    "token",
    "authorization",
    "backup_code",
    "mfa_code",
)

_EMAIL_RE = re.compile(r"^([^@\s])[^@\s]*(@[^@\s]+)$")

_ERROR_SCRUBBERS = (
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/-]+=*"), "Bearer [redacted]"),
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), "[jwt]"),
    (re.compile(r"(?i)([a-z][a-z0-9+.-]*://[^:/@\s]+:)[^@\s]+@"), r"\1[redacted]@"),
    (re.compile(r"(?i)otpauth://\S+"), "otpauth://[redacted]"),
    (re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"), "[sql]"),
    (re.compile(r"(?i)(password|secret|token|key)\s*[:=]\s*\S+"), r"\1=[redacted]"),
    (re.compile(r"/(?:home|var|etc|usr|opt|tmp|srv)/\S+"), "[path]"),
)

_MAX_ERROR_LENGTH = 500


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh uuid) to the current context and return it."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def sanitize_error_message(error: Any) -> str:
    """Scrub tokens, DSN credentials, TOTP URIs, SQL and file paths from an error string."""
    if error is None:
        return ""
    text = str(error)
    for pattern, replacement in _ERROR_SCRUBBERS:
        text = pattern.sub(replacement, text)
    if len(text) > _MAX_ERROR_LENGTH:
        text = text[: _MAX_ERROR_LENGTH - 3] + "..."
    return text


def _mask_email(value: str) -> str:
    match = _EMAIL_RE.match(value)
    if not match:
        return "***"
    return f"{match.group(1)}***{match.group(2)}"


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = current_request_id()
    if rid and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


def _redact(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif lower_key == "error":
            event_dict[key] = sanitize_error_message(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Console rendering is used in dev mode or when JSON output is disabled.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

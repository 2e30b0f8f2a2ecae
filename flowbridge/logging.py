from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation id for the current request or connection event
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Log fields carrying chat identifiers (phone numbers); masked before rendering
CHAT_ID_FIELDS = frozenset({"sender", "to", "group", "user_id", "conversation_key"})
_CREDENTIAL_FIELDS = ("password", "secret", "token", "api_key", "apikey", "authorization")
_DIGIT_RUN = re.compile(r"\d{6,}")

PREVIEW_LENGTH = 20


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id for the current request or event task."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_chat_id(value: str) -> str:
    """Keep the first four and last two digits of every long digit run.

    ``15551234567@c.us`` becomes ``1555*****67@c.us``; the network suffix and
    any non-digit text are left as they are.
    """
    return _DIGIT_RUN.sub(
        lambda m: m.group()[:4] + "*" * (len(m.group()) - 6) + m.group()[-2:], value
    )


def preview(text: Optional[str], limit: int = PREVIEW_LENGTH) -> str:
    """Shorten a message body for log lines; full bodies are never logged."""
    if not text:
        return ""
    return text[:limit] + ("..." if len(text) > limit else "")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _CREDENTIAL_FIELDS):
            event_dict[key] = value[:2] + "***" if len(value) > 4 else "***"
        elif lower_key in CHAT_ID_FIELDS:
            event_dict[key] = mask_chat_id(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog processor chain.

    JSON lines are emitted unless ``json_output`` is off or ``dev_mode`` is
    on, in which case the colored console renderer is used.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach API callers inside error details
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/[^\s]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]
_MAX_ERROR_LENGTH = 500

_SENSITIVE_RESPONSE_KEYS = frozenset({
    "password", "secret", "token", "api_key", "apikey",
    "authorization", "credentials", "private_key",
})


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip file paths, inline credentials and traceback markers; cap the length."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Replace values under credential-like keys with ``[REDACTED]``, recursively."""
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, list):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    if not isinstance(data, dict):
        return data
    result = {}
    for key, value in data.items():
        normalized = key.lower().replace("-", "_").replace(" ", "_")
        if any(marker in normalized for marker in _SENSITIVE_RESPONSE_KEYS):
            result[key] = None if value is None else "[REDACTED]"
        else:
            result[key] = sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
    return result

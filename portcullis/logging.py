from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Key names containing any of these are masked wherever they appear
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "cookie")
# Exact names; "key_id" and "key_prefix" stay readable
_SECRET_KEYS = frozenset({"api_key", "plaintext_key", "key_hash", "digest"})

MAX_CLIENT_ERROR_CHARS = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id used in log entries and error envelopes.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID4 is minted.
    """
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _with_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask secret material that slipped into a log call."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _SECRET_KEYS or any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines go to stdout unless ``development_mode`` (or ``json_output``
    off) selects the colourised console renderer.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _with_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    threshold = logging.getLevelName(level.strip().upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments of internal error text that must not reach a client
_CLIENT_UNSAFE = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
        r"(?i)\$argon2\S+",
        r"(?i)bearer\s+\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip queries, paths, credentials and hashes from an error message.

    Only used when internal error text is surfaced to a client, which the
    error handlers allow in development alone.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _CLIENT_UNSAFE:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_CLIENT_ERROR_CHARS:
        error = error[: MAX_CLIENT_ERROR_CHARS - 3] + "..."
    return error

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation id shared by every log line of one flow execution
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_COUNTER_FIELDS = {"tokens", "total_tokens", "input_tokens", "output_tokens"}
_SECRET_FIELD_MARKERS = ("password", "secret", "token", "api_key", "authorization")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_execution_context(execution_id: str, flow_id: str, **extra: Any) -> None:
    """Attach execution identifiers to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(
        execution_id=execution_id, flow_id=flow_id, **extra
    )


def clear_execution_context() -> None:
    structlog.contextvars.unbind_contextvars("execution_id", "flow_id", "variant_id")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secret_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values of credential-looking fields, keeping token counters."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _COUNTER_FIELDS or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _SECRET_FIELD_MARKERS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by the engine.

    JSON lines by default; ``development_mode`` switches to the colored
    console renderer for local runs.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_secret_fields,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
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


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Provider error text can carry keys, bearer tokens and host paths
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"(?i)sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"(?i)(password|secret|token|api.?key|credential)\s*[:=]\s*[^\s,;]+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credentials and paths from an error message before it is stored.

    Messages longer than ``MAX_ERROR_MESSAGE_LENGTH`` are truncated with a
    trailing ellipsis. Empty or non-string input yields a generic message.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result


def sanitize_trace(trace: list) -> list:
    """Copy of a per-node trace with error strings sanitized."""
    cleaned = []
    for entry in trace:
        if isinstance(entry, dict) and isinstance(entry.get("message"), str):
            entry = {**entry, "message": sanitize_error_message(entry["message"])}
        cleaned.append(entry)
    return cleaned


def log_execution_trace(trace: list, logger: Optional[Any] = None) -> None:
    log = logger or get_logger("flow")
    log.debug("flow_execution_trace", trace=sanitize_trace(trace))

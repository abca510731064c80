from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, also surfaced as meta.requestId in responses
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id when it looks sane, otherwise mint one."""
    cid = correlation_id if correlation_id and _REQUEST_ID.fullmatch(correlation_id) else None
    cid = cid or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def bind_request_context(*, client_ip: Optional[str], method: str, path: str) -> None:
    """Reset structlog's context vars and bind the fields every request log carries."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(client_ip=client_ip, method=method, path=path)


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("request_id", cid)
    return event_dict


# Credentials are hidden entirely; addresses keep enough to correlate.
_SECRET_KEYS = ("password", "secret", "token", "authorization", "otp")
_ADDRESS_KEYS = ("email", "recipient")


def redact_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if lowered.endswith(("_type", "_kind")):
            continue
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(marker in lowered for marker in _ADDRESS_KEYS):
            event_dict[key] = redact_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Every event gets the level, an ISO timestamp, the request id and the
    request-bound context; credentials and addresses are redacted before
    rendering. Dev mode renders for a terminal instead of emitting JSON.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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


_CLIENT_UNSAFE = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(postgres(ql)?|redis)://\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/\S+",
        r"(?i)\b(password|secret|token|otp)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\).*",
    )
]


def sanitize_error_message(message: Any, *, replacement: str = "[redacted]", limit: int = 300) -> str:
    """Make a message safe to hand to an API client.

    SQL fragments, connection URLs, filesystem paths, inline credentials and
    tracebacks are replaced, and the result is truncated to ``limit``.
    """
    if not isinstance(message, str) or not message.strip():
        return "An error occurred"
    result = message
    for pattern in _CLIENT_UNSAFE:
        result = pattern.sub(replacement, result)
    if len(result) > limit:
        result = result[: limit - 3] + "..."
    return result

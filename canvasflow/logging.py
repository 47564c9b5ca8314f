"""structlog setup for the worker.

Every event emitted while a task is in flight carries the task's execution id
as ``correlation_id``. Credential fields are masked and provider error text is
scrubbed before rendering, since provider SDKs echo API keys back in errors.
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

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Event fields whose values are credentials
_CREDENTIAL_FIELDS = ("api_key", "apikey", "token", "secret", "password", "authorization")

# Event fields holding free text that may quote a credential
_FREE_TEXT_FIELDS = ("error", "detail", "body_preview")

_SECRET_PATTERNS = [
    re.compile(r"\b(sk|pk|rk|xai)-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)(api.?key|token|secret|password|authorization)\s*[:=]\s*[^\s,;]+"),
    re.compile(r"(?i)([?&]key=)[^&\s]+"),
]


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the task in flight; the consumer passes the execution id."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def redact_secrets(text: str, *, replacement: str = "[redacted]") -> str:
    """Strip credential-looking substrings from a message before it is shown."""
    if not text:
        return text
    result = text
    for pattern in _SECRET_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _mask(value: str) -> str:
    return "***" + value[-2:] if len(value) > 6 else "***"


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _scrub_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(name in lower_key for name in _CREDENTIAL_FIELDS):
            event_dict[key] = _mask(value)
        elif lower_key in _FREE_TEXT_FIELDS:
            event_dict[key] = redact_secrets(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUE_VALUES


def configure_logging(log_level: Optional[str] = None) -> None:
    """(Re)configure structlog from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.

    Called at import; the CLI calls it again for ``--log-level``.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    console = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

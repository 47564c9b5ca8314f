from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from canvasflow.logging import redact_secrets
from canvasflow.service.retry import is_transient_network_error


class WorkerError(Exception):
    """Base class for failures raised while executing a node task.

    Each subclass carries a stable error_code that becomes the node's
    errorType when the failure is surfaced on the canvas:
    - timeout
    - insufficient_funds
    - unsupported_task
    - provider_error
    """

    error_code: str = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class GenerationTimeoutError(WorkerError):
    """Generation exceeded its wall-clock budget."""
    error_code = "timeout"


class InsufficientFundsError(WorkerError):
    """Provider reported billing or quota exhaustion."""
    error_code = "insufficient_funds"


class UnsupportedTaskError(WorkerError):
    """Task kind, node type or provider the worker cannot serve."""
    error_code = "unsupported_task"


class StreamAdapterError(UnsupportedTaskError):
    """No stream adapter exists for the requested provider."""
    pass


class ProviderError(WorkerError):
    """Provider call failed or returned an unusable result."""
    error_code = "provider_error"


class MediaFetchError(ProviderError):
    """Generated media could not be downloaded or decoded."""
    pass


class DatastoreError(WorkerError):
    """Datastore rejected a query or mutation."""
    error_code = "provider_error"


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    TIMEOUT = "timeout"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNSUPPORTED_TASK = "unsupported_task"
    PROVIDER_ERROR = "provider_error"


MAX_ERROR_MESSAGE_LENGTH = 500

INSUFFICIENT_FUNDS_MESSAGE = (
    "The AI provider rejected the request because the account has no credits "
    "or has exceeded its quota. Check the billing settings for this API key."
)

INSUFFICIENT_FUNDS_PATTERNS = (
    "insufficient_quota",
    "exceeded your current quota",
    "credit balance is too low",
    "usage blocked due to lack of credits",
    "insufficient balance",
    "billing not enabled",
    "payment required",
)


@dataclass
class ClassifiedFailure:
    kind: ErrorKind
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    def as_node_patch(self) -> dict[str, Any]:
        return {"status": "error", "errorType": self.kind.value, "error": self.message}


def truncate_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_insufficient_funds_error(exc: BaseException) -> bool:
    """Detect provider billing/quota exhaustion from status code or message."""
    if isinstance(exc, InsufficientFundsError):
        return True
    if _status_code(exc) == 402:
        return True
    text = str(exc).lower()
    body = getattr(exc, "body", None)
    if body is not None:
        text = f"{text} {body}".lower()
    return any(pattern in text for pattern in INSUFFICIENT_FUNDS_PATTERNS)


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (GenerationTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    # SDK timeout types (openai.APITimeoutError, anthropic.APITimeoutError)
    return type(exc).__name__ == "APITimeoutError"


def classify_error(exc: BaseException, *, timeout_seconds: Optional[float] = None) -> ClassifiedFailure:
    """Map an exception escaping a task to the node-visible failure."""
    detail = {"exception": type(exc).__name__}
    if is_timeout_error(exc):
        if isinstance(exc, GenerationTimeoutError):
            message = exc.message
        elif timeout_seconds:
            message = f"Execution timed out after {timeout_seconds:g}s"
        else:
            message = "Execution timed out"
        return ClassifiedFailure(ErrorKind.TIMEOUT, message, detail)
    if is_insufficient_funds_error(exc):
        return ClassifiedFailure(ErrorKind.INSUFFICIENT_FUNDS, INSUFFICIENT_FUNDS_MESSAGE, detail)

    raw = getattr(exc, "message", None) if isinstance(exc, WorkerError) else None
    message = truncate_message(redact_secrets(raw or str(exc) or type(exc).__name__))
    if isinstance(exc, UnsupportedTaskError):
        return ClassifiedFailure(ErrorKind.UNSUPPORTED_TASK, message, detail)
    if is_transient_network_error(exc):
        return ClassifiedFailure(ErrorKind.TRANSIENT_NETWORK, message, detail)
    return ClassifiedFailure(ErrorKind.PROVIDER_ERROR, message, detail)


__all__ = [
    "WorkerError",
    "GenerationTimeoutError",
    "InsufficientFundsError",
    "UnsupportedTaskError",
    "StreamAdapterError",
    "ProviderError",
    "MediaFetchError",
    "DatastoreError",
    "ErrorKind",
    "ClassifiedFailure",
    "INSUFFICIENT_FUNDS_MESSAGE",
    "classify_error",
    "is_insufficient_funds_error",
    "is_timeout_error",
    "truncate_message",
]

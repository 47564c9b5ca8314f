"""Bounded retries for housekeeping writes.

Only a narrow class of transient network failures is retried: connection
resets, refused/aborted connections and transport timeouts. Anything else is
re-raised on the first attempt so business-logic failures stay visible.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from redis import exceptions as redis_exceptions

from canvasflow.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 500
MAX_BACKOFF_MS = 8000

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    ConnectionResetError,
    ConnectionAbortedError,
    ConnectionRefusedError,
    BrokenPipeError,
    TimeoutError,
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
)

_TRANSIENT_SIGNATURES = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "connection reset",
    "connection aborted",
    "socket hang up",
    "fetch failed",
    "server disconnected",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS
    max_backoff_ms: int = MAX_BACKOFF_MS

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)."""
        delay_ms = min(self.max_backoff_ms, self.backoff_ms * (2 ** (attempt - 1)))
        return delay_ms / 1000.0


def is_transient_network_error(exc: BaseException) -> bool:
    """True for connection reset/timeout failures, following the cause chain."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, _TRANSIENT_TYPES):
            return True
        # SDK wrappers around a dropped connection (openai/anthropic APIConnectionError)
        if type(current).__name__ == "APIConnectionError":
            return True
        text = str(current).lower()
        if any(signature in text for signature in _TRANSIENT_SIGNATURES):
            return True
        current = current.__cause__ or current.__context__
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = RetryPolicy(),
    op_name: str = "write",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with up to ``policy.max_attempts`` attempts.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Attempt count and exponential backoff parameters
        op_name: Label used in log events
        sleep: Injectable sleep for tests

    Raises:
        The last exception once attempts are exhausted, or any
        non-transient exception immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_transient_network_error(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "persistence_retries_exhausted",
                    op=op_name,
                    attempts=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise
            delay = policy.delay_seconds(attempt)
            logger.warning(
                "persistence_retry_backoff",
                op=op_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                backoff_seconds=delay,
                error=str(exc),
            )
            await sleep(delay)

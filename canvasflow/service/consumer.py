"""Priority queue consumer.

One task in flight per process. Each pass polls the sources in priority
order and, after handling a task, starts over from the highest-priority
source so a backlog on a low-priority source cannot starve new high-priority
work. Every received message is acknowledged exactly once after the
dispatcher returns, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

from canvasflow.logging import clear_correlation_id, get_logger, set_correlation_id
from canvasflow.service.dispatcher import ExecutionDispatcher, ExecutionOutcome
from canvasflow.service.retry import with_retry
from canvasflow.service.runtime import WorkerContext
from canvasflow.service.tasks import MalformedTaskError, parse_envelope
from canvasflow.storage.models import QueueMessage

logger = get_logger(__name__)

# Consecutive poll errors after which the error sleep starts doubling
ERROR_BACKOFF_THRESHOLD = 3
MAX_ERROR_SLEEP_SECONDS = 60.0


class QueueConsumer:
    def __init__(
        self,
        context: WorkerContext,
        dispatcher: Optional[ExecutionDispatcher] = None,
    ) -> None:
        self.ctx = context
        self.settings = context.settings
        self.dispatcher = dispatcher or ExecutionDispatcher(context)
        self.processed = 0
        self._consecutive_errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def shutting_down(self) -> bool:
        return self.ctx.shutdown.is_set()

    def request_shutdown(self) -> None:
        """Stop after the in-flight task finishes."""
        self.ctx.request_shutdown()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Platforms without loop signal support keep default handling
                logger.debug("signal_handler_unavailable", signal=sig.name)

    async def start(self) -> None:
        """Run the loop as a background task."""
        if self._task is not None and not self._task.done():
            logger.warning("queue_consumer_already_running")
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Request shutdown and wait for the in-flight task; cancel after ``timeout``."""
        self.request_shutdown()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.warning("queue_consumer_cancelled", timeout=timeout)
        self._task = None

    async def run(self) -> None:
        logger.info("queue_consumer_started", sources=self.settings.queue_sources)
        while not self.shutting_down:
            handled = await self.poll_once()
            if not handled and not self.shutting_down:
                await self._sleep(self.settings.queue_idle_sleep_seconds)
        logger.info("queue_consumer_stopped", processed=self.processed)

    async def poll_once(self) -> bool:
        """Poll sources in priority order; True once a task has been handled."""
        for source in self.settings.queue_sources:
            if self.shutting_down:
                return False
            try:
                message = await self.ctx.queue.receive(
                    source, self.settings.queue_poll_wait_seconds
                )
                self._consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._on_poll_error(source, exc)
                continue
            if message is not None:
                await self.handle_message(message)
                return True
        return False

    async def handle_message(self, message: QueueMessage) -> Optional[ExecutionOutcome]:
        outcome: Optional[ExecutionOutcome] = None
        try:
            try:
                envelope = parse_envelope(message.body)
            except MalformedTaskError as exc:
                logger.warning(
                    "task_malformed_dropped",
                    source=message.source,
                    error=str(exc),
                    body_preview=message.body[:200],
                )
                return None

            set_correlation_id(envelope.execution_id)
            logger.info(
                "task_received",
                source=message.source,
                node_id=envelope.node_id,
                node_type=envelope.node_type,
                canvas_id=envelope.canvas_id,
            )
            try:
                outcome = await self.dispatcher.dispatch(envelope)
            except asyncio.CancelledError:
                # Hard stop mid-task: leave the message unacknowledged for recovery
                logger.warning("task_cancelled_unacknowledged", source=message.source)
                raise
            except Exception as exc:
                logger.error(
                    "task_dispatch_crashed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            self.processed += 1
            return outcome
        finally:
            if not _cancelling():
                await self._acknowledge(message)
            clear_correlation_id()

    async def _acknowledge(self, message: QueueMessage) -> None:
        try:
            await with_retry(
                lambda: self.ctx.queue.acknowledge(message.source, message.handle),
                policy=self.ctx.retry_policy,
                op_name="acknowledge",
            )
        except Exception as exc:
            logger.error("task_ack_failed", source=message.source, error=str(exc))

    async def _on_poll_error(self, source: str, exc: Exception) -> None:
        self._consecutive_errors += 1
        delay = self.settings.queue_error_sleep_seconds
        if self._consecutive_errors > ERROR_BACKOFF_THRESHOLD:
            delay = min(
                MAX_ERROR_SLEEP_SECONDS,
                delay * (2 ** (self._consecutive_errors - ERROR_BACKOFF_THRESHOLD)),
            )
        logger.error(
            "queue_poll_failed",
            source=source,
            error=str(exc),
            error_type=type(exc).__name__,
            consecutive_errors=self._consecutive_errors,
            sleep_seconds=delay,
        )
        await self._sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when shutdown is requested."""
        try:
            await asyncio.wait_for(self.ctx.shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def _cancelling() -> bool:
    task = asyncio.current_task()
    return bool(task is not None and task.cancelling())

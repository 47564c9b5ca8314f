"""Per-task execution state machine.

pending -> running -> thinking -> streaming -> complete, or failed from any
step. Every failure is caught here, classified, written to the canvas node
and the execution record, and reported back to the consumer, which
acknowledges the message either way.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from canvasflow.logging import get_logger
from canvasflow.service.context import (
    ReasoningContext,
    context_from_items,
    resolve_node_context,
)
from canvasflow.service.distillation import distill_context
from canvasflow.service.errors import (
    ClassifiedFailure,
    GenerationTimeoutError,
    UnsupportedTaskError,
    classify_error,
)
from canvasflow.service.prompt_utils import build_messages
from canvasflow.service.retry import with_retry
from canvasflow.service.runtime import WorkerContext
from canvasflow.service.stream_normalizer import normalize_stream
from canvasflow.service.tasks import (
    IMAGE,
    VIDEO,
    ImageGenerationJob,
    NodeJob,
    TaskEnvelope,
    TextGenerationJob,
    VideoGenerationJob,
    build_job,
)
from canvasflow.service.tokenizer_utils import estimate_token_count
from canvasflow.storage.media import fetch_media, new_media_key
from canvasflow.storage.models import ExecutionStatus, NodeStatus

logger = get_logger(__name__)


class StreamFlushThrottle:
    """Decides when accumulated text is worth another canvas write.

    Flushes once ``every_tokens`` new tokens have arrived or ``interval_ms``
    has elapsed since the last flush, whichever comes first.
    """

    def __init__(
        self,
        every_tokens: int,
        interval_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.every_tokens = every_tokens
        self.interval = interval_ms / 1000.0
        self.clock = clock
        self._last_tokens = 0
        self._last_at = clock()

    def should_flush(self, total_tokens: int) -> bool:
        if total_tokens - self._last_tokens >= self.every_tokens:
            return True
        return self.clock() - self._last_at >= self.interval

    def mark(self, total_tokens: int) -> None:
        self._last_tokens = total_tokens
        self._last_at = self.clock()


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    output: Optional[Dict[str, Any]] = None
    failure: Optional[ClassifiedFailure] = None


@dataclass
class _TaskState:
    """Tracks the one terminal record write allowed per task."""

    envelope: TaskEnvelope
    terminal: Optional[ExecutionStatus] = None
    flushes: int = 0


class ExecutionDispatcher:
    def __init__(self, context: WorkerContext) -> None:
        self.ctx = context
        self.settings = context.settings

    async def _persist(self, op_name: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retry(operation, policy=self.ctx.retry_policy, op_name=op_name)

    async def _patch(
        self, envelope: TaskEnvelope, fields: Dict[str, Any], op_name: str = "patch_node"
    ) -> None:
        await self._persist(
            op_name,
            lambda: self.ctx.canvas.patch_node_data(envelope.canvas_id, envelope.node_id, fields),
        )

    async def _mark_terminal(
        self,
        state: _TaskState,
        status: ExecutionStatus,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if state.terminal is not None:
            logger.warning(
                "execution_terminal_write_skipped",
                current=state.terminal.value,
                attempted=status.value,
            )
            return
        envelope = state.envelope
        await self._persist(
            "mark_terminal",
            lambda: self.ctx.records.mark_terminal(
                envelope.execution_id, envelope.node_id, status, output=output, error=error
            ),
        )
        state.terminal = status

    async def dispatch(self, envelope: TaskEnvelope) -> ExecutionOutcome:
        """Run one task to a terminal state; never raises except on cancellation."""
        state = _TaskState(envelope)
        log = logger.bind(
            execution_id=envelope.execution_id,
            node_id=envelope.node_id,
            node_type=envelope.node_type,
        )
        started = time.monotonic()
        try:
            await self._persist(
                "mark_running",
                lambda: self.ctx.records.mark_running(envelope.execution_id, envelope.node_id),
            )
            await self._patch(
                envelope, {"status": NodeStatus.THINKING.value, "error": None, "errorType": None}
            )

            job = build_job(envelope, self.settings)
            if isinstance(job, TextGenerationJob):
                output = await self._run_text(state, job)
            elif isinstance(job, ImageGenerationJob):
                output = await self._run_media(state, job, IMAGE)
            elif isinstance(job, VideoGenerationJob):
                output = await self._run_media(state, job, VIDEO)
            else:
                raise UnsupportedTaskError(f"No handler for job {type(job).__name__}")

            await self._mark_terminal(state, ExecutionStatus.COMPLETED, output=output)
            log.info(
                "task_completed",
                duration_ms=int((time.monotonic() - started) * 1000),
                flushes=state.flushes,
            )
            return ExecutionOutcome(ExecutionStatus.COMPLETED, output=output)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = classify_error(exc, timeout_seconds=self.settings.generation_timeout_seconds)
            log.warning(
                "task_failed",
                error_kind=failure.kind.value,
                error=failure.message,
                error_type=type(exc).__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            await self._record_failure(state, failure)
            return ExecutionOutcome(ExecutionStatus.FAILED, failure=failure)

    async def _record_failure(self, state: _TaskState, failure: ClassifiedFailure) -> None:
        envelope = state.envelope
        try:
            await self._patch(envelope, failure.as_node_patch(), op_name="patch_node_error")
        except Exception as exc:
            logger.error(
                "node_error_patch_failed",
                execution_id=envelope.execution_id,
                node_id=envelope.node_id,
                error=str(exc),
            )
        try:
            await self._mark_terminal(state, ExecutionStatus.FAILED, error=failure.message)
        except Exception as exc:
            logger.error(
                "execution_mark_failed_failed",
                execution_id=envelope.execution_id,
                node_id=envelope.node_id,
                error=str(exc),
            )

    async def _load_context(self, envelope: TaskEnvelope, job: TextGenerationJob) -> ReasoningContext:
        graph = None
        if envelope.canvas_id:
            graph = await self.ctx.canvas.get_graph(envelope.canvas_id)
        context = ReasoningContext(target_node_id=envelope.node_id)
        if graph is not None:
            context = await resolve_node_context(
                envelope.node_id, graph, fetch_content=self.ctx.file_texts.get_file_text
            )
        # Producers that resolve context themselves ship it in the inputs
        if not context.items and job.context_items:
            logger.debug(
                "context_from_task_inputs",
                node_id=envelope.node_id,
                graph_found=graph is not None,
                items=len(job.context_items),
            )
            return context_from_items(envelope.node_id, job.context_items)
        return context

    async def _run_text(self, state: _TaskState, job: TextGenerationJob) -> Dict[str, Any]:
        envelope = state.envelope
        context = await self._load_context(envelope, job)
        distilled = distill_context(context, self.settings.context_token_budget)
        messages = build_messages(job.system_prompt, distilled, job.prompt)
        client = self.ctx.providers.client_for(job.provider, envelope.api_key)

        cancel_event = asyncio.Event()
        timeout = self.settings.generation_timeout_seconds
        try:
            text, reasoning = await asyncio.wait_for(
                self._consume_stream(state, job, client, messages, cancel_event),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            cancel_event.set()
            raise GenerationTimeoutError(f"Execution timed out after {timeout:g}s") from exc

        final: Dict[str, Any] = {"text": text, "status": NodeStatus.COMPLETE.value}
        if reasoning:
            final["reasoning"] = reasoning
        await self._patch(envelope, final, op_name="patch_node_final")
        if not text:
            logger.warning("provider_returned_empty_text", node_id=envelope.node_id, model=job.model)
        return {
            "text": text,
            "tokens": estimate_token_count(text),
            "contextTokens": distilled.total_tokens or 0,
            "contextItems": len(distilled.items),
            "model": job.model,
            "provider": job.provider.value,
        }

    async def _consume_stream(
        self,
        state: _TaskState,
        job: TextGenerationJob,
        client: Any,
        messages: list,
        cancel_event: asyncio.Event,
    ) -> tuple[str, str]:
        envelope = state.envelope
        throttle = StreamFlushThrottle(
            self.settings.stream_flush_tokens, self.settings.stream_flush_interval_ms
        )
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        streaming = False
        raw = client.stream_text(
            job.model,
            messages,
            temperature=job.temperature,
            max_tokens=job.max_tokens,
            cancel_event=cancel_event,
        )
        # Closing both generators runs the provider's stream cleanup on timeout
        async with aclosing(raw) as raw_stream, aclosing(
            normalize_stream(job.provider, raw_stream)
        ) as deltas:
            async for delta in deltas:
                if delta.thinking:
                    reasoning_parts.append(delta.text)
                    continue
                text_parts.append(delta.text)
                if not streaming:
                    streaming = True
                    await self._patch(envelope, {"status": NodeStatus.STREAMING.value})
                    throttle.mark(0)
                text = "".join(text_parts)
                tokens = estimate_token_count(text)
                if throttle.should_flush(tokens):
                    await self._patch(envelope, {"text": text}, op_name="patch_node_progress")
                    throttle.mark(tokens)
                    state.flushes += 1
                    logger.debug("stream_flush", node_id=envelope.node_id, tokens=tokens)
        return "".join(text_parts), "".join(reasoning_parts)

    async def _run_media(self, state: _TaskState, job: NodeJob, kind: str) -> Dict[str, Any]:
        envelope = state.envelope
        client = self.ctx.providers.client_for(job.provider, envelope.api_key)
        timeout = self.settings.media_generation_timeout_seconds
        generate = client.generate_image(job) if kind == IMAGE else client.generate_video(job)
        try:
            media = await asyncio.wait_for(generate, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(
                f"{kind.capitalize()} generation timed out after {timeout:g}s"
            ) from exc

        data, content_type = await fetch_media(
            media,
            self.ctx.http,
            max_bytes=self.settings.media_max_bytes,
            timeout=self.settings.media_fetch_timeout_seconds,
        )
        key = new_media_key(kind, envelope.canvas_id, envelope.node_id, content_type)
        stored_key = await self._persist(
            "put_media", lambda: self.ctx.objects.put(key, data, content_type)
        )
        await self._patch(
            envelope,
            {
                "status": NodeStatus.COMPLETE.value,
                "mediaStorageId": stored_key,
                "mediaType": kind,
                "mediaContentType": content_type,
            },
            op_name="patch_node_media",
        )
        logger.info("media_generated", kind=kind, key=stored_key, size=len(data), model=job.model)
        return {
            "mediaStorageId": stored_key,
            "mediaType": kind,
            "contentType": content_type,
            "bytes": len(data),
            "model": job.model,
            "provider": job.provider.value,
        }

"""End-to-end tests for the execution dispatcher against in-memory services."""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional

import httpx
import pytest

from canvasflow.config import Provider, Settings
from canvasflow.service.consumer import QueueConsumer
from canvasflow.service.dispatcher import ExecutionDispatcher, StreamFlushThrottle
from canvasflow.service.errors import ProviderError
from canvasflow.service.runtime import WorkerContext
from canvasflow.service.tasks import TaskEnvelope
from canvasflow.storage.memory import (
    MemoryCanvasStore,
    MemoryExecutionRecords,
    MemoryFileTextStore,
    MemoryObjectStore,
    MemoryTaskQueue,
)
from canvasflow.storage.models import ExecutionStatus, MediaResult


class MockProviderClient:
    """Scripted provider: streams OpenAI-shaped chunks or returns canned media."""

    def __init__(
        self,
        chunks: tuple = (),
        *,
        provider: Provider = Provider.OPENAI,
        hang: bool = False,
        error: Optional[Exception] = None,
        media: Optional[MediaResult] = None,
    ) -> None:
        self.provider = provider
        self.chunks = chunks
        self.hang = hang
        self.error = error
        self.media = media
        self.calls: List[List[dict]] = []
        self.closed = False
        self.cancel_event: Optional[asyncio.Event] = None

    async def stream_text(self, model, messages, *, temperature, max_tokens, cancel_event):
        self.calls.append(messages)
        self.cancel_event = cancel_event
        if self.error is not None:
            raise self.error
        try:
            for text in self.chunks:
                yield {"choices": [{"delta": {"content": text}}]}
            if self.hang:
                await asyncio.sleep(10)
        finally:
            self.closed = True

    async def generate_image(self, job):
        if self.error is not None:
            raise self.error
        return self.media

    async def generate_video(self, job):
        return self.media


class MockProviders:
    def __init__(self, client: MockProviderClient) -> None:
        self.client = client
        self.requested: List[tuple] = []

    def client_for(self, provider, api_key=None):
        self.requested.append((provider, api_key))
        return self.client


class FlakyCanvasStore(MemoryCanvasStore):
    """Drops the first patch with a connection reset."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    async def patch_node_data(self, canvas_id, node_id, fields):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("Connection reset by peer")
        await super().patch_node_data(canvas_id, node_id, fields)


class SlowProgressCanvas(MemoryCanvasStore):
    """Progress text writes hang well past any generation timeout."""

    async def patch_node_data(self, canvas_id, node_id, fields):
        if "text" in fields and "status" not in fields:
            await asyncio.sleep(5)
        await super().patch_node_data(canvas_id, node_id, fields)


def _settings(**overrides: Any) -> Settings:
    values = {"test_mode": True, "persistence_backoff_ms": 0}
    values.update(overrides)
    return Settings(**values)


def _context(settings, client, *, http_handler=None, canvas=None) -> WorkerContext:
    handler = http_handler or (lambda request: httpx.Response(404))
    return WorkerContext(
        settings=settings,
        queue=MemoryTaskQueue(),
        records=MemoryExecutionRecords(),
        canvas=canvas or MemoryCanvasStore(),
        objects=MemoryObjectStore(),
        file_texts=MemoryFileTextStore(),
        providers=MockProviders(client),
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _chain_canvas(target_type: str = "display") -> dict:
    return {
        "nodes": [
            {"id": "n1", "type": "display", "data": {"text": "a" * 500, "createdAt": 1}},
            {"id": "n2", "type": "display", "data": {"text": "b" * 500, "createdAt": 2}},
            {"id": "n3", "type": "display", "data": {"text": "c" * 500, "createdAt": 3}},
            {"id": "target", "type": target_type, "data": {"label": "Summary", "createdAt": 4}},
        ],
        "edges": [
            {"source": "n1", "target": "n2"},
            {"source": "n2", "target": "n3"},
            {"source": "n3", "target": "target"},
        ],
    }


def _envelope(node_type="display", **inputs) -> TaskEnvelope:
    return TaskEnvelope(
        executionId="exec-1",
        nodeId="target",
        nodeType=node_type,
        canvasId="canvas-1",
        inputs=inputs,
    )


class TestStreamFlushThrottle:
    def test_flushes_on_token_count(self):
        now = [0.0]
        throttle = StreamFlushThrottle(10, 500, clock=lambda: now[0])
        assert not throttle.should_flush(9)
        assert throttle.should_flush(10)
        throttle.mark(10)
        assert not throttle.should_flush(15)

    def test_flushes_on_interval(self):
        now = [0.0]
        throttle = StreamFlushThrottle(10, 500, clock=lambda: now[0])
        assert not throttle.should_flush(1)
        now[0] = 0.5
        assert throttle.should_flush(1)


class TestTextGeneration:
    @pytest.mark.asyncio
    async def test_display_node_completes_with_full_context(self):
        client = MockProviderClient(("Hello", " world"))
        ctx = _context(_settings(context_token_budget=1000), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="Summarise"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        messages = client.calls[0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "Summarise"}
        # 3 x 500 chars = 375 tokens, inside the budget
        assert len(messages) == 5
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["status"] == "complete"
        assert node["text"] == "Hello world"
        assert node["label"] == "Summary"
        assert ctx.records.status("exec-1", "target") == ExecutionStatus.COMPLETED
        assert outcome.output["text"] == "Hello world"

    @pytest.mark.asyncio
    async def test_tight_budget_keeps_two_most_recent_ancestors(self):
        client = MockProviderClient(("Done",))
        ctx = _context(_settings(context_token_budget=260), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="Summarise"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        context_messages = client.calls[0][1:-1]
        assert len(context_messages) == 2
        assert "b" * 500 in context_messages[0]["content"]
        assert "c" * 500 in context_messages[1]["content"]
        assert outcome.output["contextItems"] == 2
        assert outcome.output["contextTokens"] <= 260
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["status"] == "complete"
        assert node["text"]

    @pytest.mark.asyncio
    async def test_status_progression_and_throttled_flushes(self):
        chunks = tuple("word " for _ in range(40))
        client = MockProviderClient(chunks)
        ctx = _context(_settings(stream_flush_tokens=10, stream_flush_interval_ms=60000), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())

        await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="go"))
        await ctx.http.aclose()

        statuses = [fields.get("status") for _, _, fields in ctx.canvas.patches if "status" in fields]
        assert statuses == ["thinking", "streaming", "complete"]
        progress = [f for _, _, f in ctx.canvas.patches if "text" in f and "status" not in f]
        # 200 chars = 50 tokens, flushed every 10 tokens
        assert 1 <= len(progress) <= 5
        assert len(progress) < len(chunks)

    @pytest.mark.asyncio
    async def test_missing_canvas_uses_pre_resolved_context(self):
        client = MockProviderClient(("ok",))
        ctx = _context(_settings(), client)

        outcome = await ExecutionDispatcher(ctx).dispatch(
            _envelope(
                prompt="",
                context=[{"sourceNodeId": "x", "nodeType": "input", "content": "Plan a trip"}],
            )
        )
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        messages = client.calls[0]
        assert "Plan a trip" in messages[1]["content"]
        assert messages[-1]["content"] == "Proceed with the task based on the context provided above."
        assert await ctx.canvas.get_graph("canvas-1") is None

    @pytest.mark.asyncio
    async def test_target_without_ancestors_uses_pre_resolved_context(self):
        client = MockProviderClient(("ok",))
        ctx = _context(_settings(), client)
        ctx.canvas.put_canvas(
            "canvas-1", {"nodes": [{"id": "target", "type": "display", "data": {}}], "edges": []}
        )

        outcome = await ExecutionDispatcher(ctx).dispatch(
            _envelope(
                prompt="Go",
                context=[{"sourceNodeId": "x", "nodeType": "display", "content": "Shipped notes"}],
            )
        )
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.output["contextItems"] == 1
        messages = client.calls[0]
        assert len(messages) == 3
        assert "Shipped notes" in messages[1]["content"]
        assert ctx.canvas.node_data("canvas-1", "target")["status"] == "complete"

    @pytest.mark.asyncio
    async def test_graph_context_wins_over_pre_resolved_items(self):
        client = MockProviderClient(("ok",))
        ctx = _context(_settings(), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())

        await ExecutionDispatcher(ctx).dispatch(
            _envelope(prompt="Go", context=[{"nodeType": "display", "content": "stale"}])
        )
        await ctx.http.aclose()

        contents = " ".join(m["content"] for m in client.calls[0])
        assert "stale" not in contents
        assert "c" * 500 in contents

    @pytest.mark.asyncio
    async def test_task_api_key_is_passed_to_provider(self):
        client = MockProviderClient(("ok",))
        ctx = _context(_settings(), client)
        envelope = _envelope(prompt="hi")
        envelope.api_key = "sk-user-key-123456"

        await ExecutionDispatcher(ctx).dispatch(envelope)
        await ctx.http.aclose()

        assert ctx.providers.requested == [(Provider.OPENAI, "sk-user-key-123456")]

    @pytest.mark.asyncio
    async def test_transient_patch_failure_is_retried(self):
        client = MockProviderClient(("ok",))
        canvas = FlakyCanvasStore()
        ctx = _context(_settings(), client, canvas=canvas)
        canvas.put_canvas("canvas-1", _chain_canvas())

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="hi"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        assert canvas.node_data("canvas-1", "target")["status"] == "complete"


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_fails_once_and_acknowledges_once(self):
        client = MockProviderClient(("partial",), hang=True)
        ctx = _context(_settings(generation_timeout_seconds=0.05), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())
        source = ctx.settings.queue_sources[0]
        await ctx.queue.enqueue(
            source,
            json.dumps(
                {
                    "executionId": "exec-1",
                    "nodeId": "target",
                    "nodeType": "display",
                    "canvasId": "canvas-1",
                    "inputs": {"prompt": "go"},
                }
            ),
        )

        consumer = QueueConsumer(ctx)
        handled = await consumer.poll_once()
        await ctx.http.aclose()

        assert handled is True
        assert client.closed is True
        assert client.cancel_event.is_set()
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["status"] == "error"
        assert node["errorType"] == "timeout"
        terminal = [t for t in ctx.records.transitions if t[2].is_terminal]
        assert terminal == [("exec-1", "target", ExecutionStatus.FAILED)]
        assert len(ctx.queue.acknowledged) == 1
        assert ctx.queue.in_flight == {}

    @pytest.mark.asyncio
    async def test_timeout_during_progress_write_closes_provider_stream(self):
        client = MockProviderClient(tuple("word " for _ in range(20)))
        canvas = SlowProgressCanvas()
        ctx = _context(
            _settings(generation_timeout_seconds=0.1, stream_flush_tokens=1),
            client,
            canvas=canvas,
        )
        canvas.put_canvas("canvas-1", _chain_canvas())

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="go"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.failure.kind.value == "timeout"
        assert client.closed is True
        assert client.cancel_event.is_set()
        terminal = [t for t in ctx.records.transitions if t[2].is_terminal]
        assert terminal == [("exec-1", "target", ExecutionStatus.FAILED)]

    @pytest.mark.asyncio
    async def test_media_fetch_failure_leaves_no_media_reference(self):
        media = MediaResult(url="https://media.example/generated.png", content_type="image/png")
        client = MockProviderClient(media=media)
        ctx = _context(
            _settings(),
            client,
            http_handler=lambda request: httpx.Response(500, text="upstream error"),
        )
        ctx.canvas.put_canvas("canvas-1", _chain_canvas("aiModel"))

        outcome = await ExecutionDispatcher(ctx).dispatch(
            _envelope("aiModel", modelId="dall-e-3", prompt="a lighthouse")
        )
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.FAILED
        assert ctx.records.status("exec-1", "target") == ExecutionStatus.FAILED
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["status"] == "error"
        assert "mediaStorageId" not in node
        assert ctx.objects.objects == {}

    @pytest.mark.asyncio
    async def test_image_success_stores_reference_only(self):
        media = MediaResult(url="https://media.example/generated.png", content_type="image/png")
        client = MockProviderClient(media=media)
        ctx = _context(
            _settings(),
            client,
            http_handler=lambda request: httpx.Response(
                200, content=b"\x89PNG-bytes", headers={"content-type": "image/png"}
            ),
        )
        ctx.canvas.put_canvas("canvas-1", _chain_canvas("aiModel"))

        outcome = await ExecutionDispatcher(ctx).dispatch(
            _envelope("aiModel", modelId="dall-e-3", prompt="a lighthouse")
        )
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        node = ctx.canvas.node_data("canvas-1", "target")
        key = node["mediaStorageId"]
        assert node["status"] == "complete"
        assert node["mediaType"] == "image"
        assert key.startswith("image/canvas-1/target/")
        assert ctx.objects.objects[key][0] == b"\x89PNG-bytes"
        assert all(not isinstance(value, bytes) for value in node.values())

    @pytest.mark.asyncio
    async def test_inline_video_bytes_are_stored(self):
        client = MockProviderClient(media=MediaResult(data=b"mp4-bytes", content_type="video/mp4"))
        ctx = _context(_settings(), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas("aiModel"))

        outcome = await ExecutionDispatcher(ctx).dispatch(
            _envelope("aiModel", modelId="sora-2-text-to-video", prompt="waves")
        )
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.COMPLETED
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["mediaType"] == "video"
        assert ctx.objects.objects[node["mediaStorageId"]][0] == b"mp4-bytes"

    @pytest.mark.asyncio
    async def test_unsupported_node_type_fails_without_provider_call(self):
        client = MockProviderClient(("never",))
        ctx = _context(_settings(), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas("webSearch"))

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope("webSearch", prompt="x"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.failure.kind.value == "unsupported_task"
        assert client.calls == []
        assert ctx.providers.requested == []
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["errorType"] == "unsupported_task"

    @pytest.mark.asyncio
    async def test_insufficient_funds_surfaces_dedicated_message(self):
        client = MockProviderClient(
            error=ProviderError("Error code: 429 - You exceeded your current quota")
        )
        ctx = _context(_settings(), client)
        ctx.canvas.put_canvas("canvas-1", _chain_canvas())

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt="hi"))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.FAILED
        node = ctx.canvas.node_data("canvas-1", "target")
        assert node["errorType"] == "insufficient_funds"
        assert "quota" in node["error"]
        assert "429" not in node["error"]

    @pytest.mark.asyncio
    async def test_empty_prompt_without_context_fails(self):
        client = MockProviderClient(("x",))
        ctx = _context(_settings(), client)

        outcome = await ExecutionDispatcher(ctx).dispatch(_envelope(prompt=""))
        await ctx.http.aclose()

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.failure.message == "No messages to send to the model"

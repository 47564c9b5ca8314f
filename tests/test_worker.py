from __future__ import annotations

import pytest

from canvasflow import worker
from canvasflow.config import Settings
from canvasflow.service.runtime import build_worker_context
from canvasflow.storage.memory import MemoryTaskQueue


def test_parse_args():
    args = worker.parse_args(["--once", "--sources", "a,b", "--log-level", "DEBUG"])
    assert args.once is True
    assert args.sources == "a,b"
    assert args.log_level == "DEBUG"


@pytest.mark.asyncio
async def test_memory_context_wiring():
    context = build_worker_context(Settings(test_mode=True))
    assert isinstance(context.queue, MemoryTaskQueue)
    assert context.closers
    await context.aclose()
    assert context.closers == []


@pytest.mark.asyncio
async def test_serve_once_exits_when_idle():
    settings = Settings(test_mode=True, queue_poll_wait_seconds=0)
    assert await worker.serve(settings, once=True) == 0


def test_main_applies_source_override(monkeypatch):
    captured = {}

    async def fake_serve(settings, *, once=False):
        captured["sources"] = settings.queue_sources
        captured["once"] = once
        return 0

    monkeypatch.setattr(worker, "serve", fake_serve)
    assert worker.main(["--once", "--sources", "tasks:a, tasks:b"]) == 0
    assert captured == {"sources": ["tasks:a", "tasks:b"], "once": True}

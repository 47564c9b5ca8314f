from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from canvasflow.config import Provider, Settings
from canvasflow.logging import get_logger
from canvasflow.service.retry import RetryPolicy
from canvasflow.storage.models import CanvasGraph, ExecutionStatus, QueueMessage

logger = get_logger(__name__)


class TaskQueue(Protocol):
    async def receive(self, source: str, max_wait: float) -> Optional[QueueMessage]: ...

    async def acknowledge(self, source: str, handle: str) -> None: ...

    async def close(self) -> None: ...


class ExecutionRecords(Protocol):
    async def mark_running(self, execution_id: str, node_id: str) -> None: ...

    async def mark_terminal(
        self,
        execution_id: str,
        node_id: str,
        status: ExecutionStatus,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None: ...


class CanvasStore(Protocol):
    async def patch_node_data(self, canvas_id: str, node_id: str, fields: Dict[str, Any]) -> None: ...

    async def get_graph(self, canvas_id: str) -> Optional[CanvasGraph]: ...


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str: ...


class FileTextStore(Protocol):
    async def get_file_text(self, storage_id: str) -> Optional[str]: ...


class ProviderClients(Protocol):
    def client_for(self, provider: Provider, api_key: Optional[str] = None) -> Any: ...


@dataclass
class WorkerContext:
    """Everything one worker loop shares, passed explicitly instead of module globals."""

    settings: Settings
    queue: TaskQueue
    records: ExecutionRecords
    canvas: CanvasStore
    objects: ObjectStore
    file_texts: FileTextStore
    providers: ProviderClients
    http: httpx.AsyncClient
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list, repr=False)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.persistence_max_attempts,
            backoff_ms=self.settings.persistence_backoff_ms,
        )

    def request_shutdown(self) -> None:
        if not self.shutdown.is_set():
            logger.info("worker_shutdown_requested")
        self.shutdown.set()

    async def aclose(self) -> None:
        for close in reversed(self.closers):
            try:
                await close()
            except Exception as exc:
                logger.warning("worker_resource_close_failed", error=str(exc))
        self.closers.clear()


def build_worker_context(settings: Settings) -> WorkerContext:
    """Wire the configured backends: in-memory for tests/dev, Redis + HTTP otherwise."""
    from canvasflow.service.model_backend import ProviderRegistry

    http = httpx.AsyncClient(timeout=settings.media_fetch_timeout_seconds)
    providers = ProviderRegistry(settings, http)

    if settings.in_memory:
        from canvasflow.storage.memory import (
            MemoryCanvasStore,
            MemoryExecutionRecords,
            MemoryFileTextStore,
            MemoryObjectStore,
            MemoryTaskQueue,
        )

        context = WorkerContext(
            settings=settings,
            queue=MemoryTaskQueue(),
            records=MemoryExecutionRecords(),
            canvas=MemoryCanvasStore(),
            objects=MemoryObjectStore(),
            file_texts=MemoryFileTextStore(),
            providers=providers,
            http=http,
        )
        context.closers.append(http.aclose)
        logger.info("worker_context_built", backend="memory")
        return context

    from canvasflow.storage.http_store import build_datastore
    from canvasflow.storage.media import FileObjectStore
    from canvasflow.storage.redis_cache import RedisFileTextStore, RedisTaskQueue

    queue = RedisTaskQueue(settings.redis_url, max_wait=settings.queue_poll_wait_seconds)
    datastore, records, canvas = build_datastore(settings)
    context = WorkerContext(
        settings=settings,
        queue=queue,
        records=records,
        canvas=canvas,
        objects=FileObjectStore(settings.media_root),
        file_texts=RedisFileTextStore(queue.client),
        providers=providers,
        http=http,
    )
    context.closers.extend([http.aclose, datastore.close, queue.close])
    logger.info(
        "worker_context_built",
        backend="redis",
        queue_sources=settings.queue_sources,
        datastore_url=settings.datastore_url,
    )
    return context

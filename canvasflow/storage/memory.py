"""In-process implementations of every external service the worker talks to.

Used by tests and by ``USE_MEMORY_STORE=true`` local runs. Semantics match the
remote services where the worker depends on them: canvas patches merge,
execution records refuse writes after a terminal status, and queue messages
stay in flight until acknowledged.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.errors import DatastoreError
from canvasflow.storage.models import (
    CanvasGraph,
    ExecutionStatus,
    QueueMessage,
    StoredObject,
)

logger = get_logger(__name__)


class MemoryTaskQueue:
    def __init__(self) -> None:
        self._messages: Dict[str, Deque[Tuple[str, str]]] = {}
        self._events: Dict[str, asyncio.Event] = {}
        self.in_flight: Dict[str, QueueMessage] = {}
        self.acknowledged: List[Tuple[str, str]] = []
        self.receive_calls: List[str] = []

    def _event(self, source: str) -> asyncio.Event:
        if source not in self._events:
            self._events[source] = asyncio.Event()
        return self._events[source]

    async def enqueue(self, source: str, body: str) -> str:
        handle = uuid.uuid4().hex
        self._messages.setdefault(source, deque()).append((handle, body))
        self._event(source).set()
        return handle

    def pending(self, source: str) -> int:
        return len(self._messages.get(source, ()))

    async def receive(self, source: str, max_wait: float) -> Optional[QueueMessage]:
        self.receive_calls.append(source)
        queue = self._messages.setdefault(source, deque())
        if not queue and max_wait > 0:
            event = self._event(source)
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=max_wait)
            except asyncio.TimeoutError:
                return None
        if not queue:
            return None
        handle, body = queue.popleft()
        message = QueueMessage(source=source, handle=handle, body=body)
        self.in_flight[handle] = message
        return message

    async def acknowledge(self, source: str, handle: str) -> None:
        self.in_flight.pop(handle, None)
        self.acknowledged.append((source, handle))

    async def close(self) -> None:
        return None


class MemoryExecutionRecords:
    def __init__(self) -> None:
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.transitions: List[Tuple[str, str, ExecutionStatus]] = []

    def _current(self, execution_id: str, node_id: str) -> Dict[str, Any]:
        return self.records.setdefault(
            (execution_id, node_id), {"status": ExecutionStatus.PENDING}
        )

    async def mark_running(self, execution_id: str, node_id: str) -> None:
        record = self._current(execution_id, node_id)
        if record["status"].is_terminal:
            raise DatastoreError(f"execution node {execution_id}/{node_id} already terminal")
        record["status"] = ExecutionStatus.RUNNING
        self.transitions.append((execution_id, node_id, ExecutionStatus.RUNNING))

    async def mark_terminal(
        self,
        execution_id: str,
        node_id: str,
        status: ExecutionStatus,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        record = self._current(execution_id, node_id)
        if record["status"].is_terminal:
            raise DatastoreError(f"execution node {execution_id}/{node_id} already terminal")
        record.update({"status": status, "output": output, "error": error})
        self.transitions.append((execution_id, node_id, status))

    def status(self, execution_id: str, node_id: str) -> Optional[ExecutionStatus]:
        record = self.records.get((execution_id, node_id))
        return record["status"] if record else None


class MemoryCanvasStore:
    def __init__(self) -> None:
        self.canvases: Dict[str, Dict[str, Any]] = {}
        self.patches: List[Tuple[str, str, Dict[str, Any]]] = []

    def put_canvas(self, canvas_id: str, document: Dict[str, Any]) -> None:
        self.canvases[canvas_id] = copy.deepcopy(document)

    def node_data(self, canvas_id: str, node_id: str) -> Dict[str, Any]:
        for node in self.canvases.get(canvas_id, {}).get("nodes", []):
            if node.get("id") == node_id:
                return node.setdefault("data", {})
        raise KeyError(node_id)

    async def patch_node_data(self, canvas_id: str, node_id: str, fields: Dict[str, Any]) -> None:
        self.patches.append((canvas_id, node_id, dict(fields)))
        canvas = self.canvases.get(canvas_id)
        node = None
        if canvas is not None:
            node = next((n for n in canvas.get("nodes", []) if n.get("id") == node_id), None)
        if node is None:
            # Patches never create canvases or nodes
            logger.warning("canvas_patch_target_missing", canvas_id=canvas_id, node_id=node_id)
            return
        node["data"] = {**node.get("data", {}), **copy.deepcopy(fields)}

    async def get_graph(self, canvas_id: str) -> Optional[CanvasGraph]:
        document = self.canvases.get(canvas_id)
        if document is None:
            return None
        return CanvasGraph.from_document(copy.deepcopy(document))


class MemoryObjectStore:
    def __init__(self) -> None:
        self.objects: Dict[str, Tuple[bytes, StoredObject]] = {}

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.objects[key] = (data, StoredObject(key=key, content_type=content_type, size=len(data)))
        return key


class MemoryFileTextStore:
    def __init__(self, texts: Optional[Dict[str, str]] = None) -> None:
        self.texts = dict(texts or {})

    async def get_file_text(self, storage_id: str) -> Optional[str]:
        return self.texts.get(storage_id)

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from canvasflow.config import Settings
from canvasflow.logging import get_logger
from canvasflow.service.errors import DatastoreError
from canvasflow.storage.models import CanvasGraph, ExecutionStatus

logger = get_logger(__name__)


class DatastoreClient:
    """Calls named queries and mutations on the reactive datastore's HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        response = await self.http.post(
            f"/api/{kind}", json={"path": path, "args": args, "format": "json"}
        )
        if response.status_code >= 400:
            raise DatastoreError(
                f"{kind} {path} failed with HTTP {response.status_code}",
                detail={"body": response.text[:500]},
            )
        payload = response.json()
        if payload.get("status") != "success":
            raise DatastoreError(
                f"{kind} {path} failed: {payload.get('errorMessage') or 'unknown error'}"
            )
        return payload.get("value")

    async def mutation(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call("mutation", path, args)

    async def query(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call("query", path, args)

    async def close(self) -> None:
        await self.http.aclose()


class HttpExecutionRecords:
    def __init__(self, client: DatastoreClient, *, path: str) -> None:
        self.client = client
        self.path = path

    async def mark_running(self, execution_id: str, node_id: str) -> None:
        await self.client.mutation(
            self.path,
            {"executionId": execution_id, "nodeId": node_id, "status": ExecutionStatus.RUNNING.value},
        )

    async def mark_terminal(
        self,
        execution_id: str,
        node_id: str,
        status: ExecutionStatus,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        args: Dict[str, Any] = {
            "executionId": execution_id,
            "nodeId": node_id,
            "status": status.value,
        }
        if output is not None:
            args["output"] = output
        if error is not None:
            args["error"] = error
        await self.client.mutation(self.path, args)


class HttpCanvasStore:
    def __init__(self, client: DatastoreClient, *, patch_path: str, graph_path: str) -> None:
        self.client = client
        self.patch_path = patch_path
        self.graph_path = graph_path

    async def patch_node_data(self, canvas_id: str, node_id: str, fields: Dict[str, Any]) -> None:
        # The mutation merges ``data`` into the node's existing data
        await self.client.mutation(
            self.patch_path, {"canvasId": canvas_id, "nodeId": node_id, "data": fields}
        )

    async def get_graph(self, canvas_id: str) -> Optional[CanvasGraph]:
        document = await self.client.query(self.graph_path, {"canvasId": canvas_id})
        if not isinstance(document, dict):
            return None
        return CanvasGraph.from_document(document)


def build_datastore(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> tuple[DatastoreClient, HttpExecutionRecords, HttpCanvasStore]:
    client = DatastoreClient(
        settings.datastore_url,
        token=settings.datastore_token,
        http_client=http_client,
        timeout=settings.datastore_timeout_seconds,
    )
    records = HttpExecutionRecords(client, path=settings.datastore_execution_path)
    canvas = HttpCanvasStore(
        client, patch_path=settings.datastore_patch_path, graph_path=settings.datastore_graph_path
    )
    return client, records, canvas

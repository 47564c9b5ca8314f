from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ExecutionStatus(str, Enum):
    """Per-node status kept on the execution record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class NodeStatus(str, Enum):
    """Live status observed by the canvas UI."""

    THINKING = "thinking"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


@dataclass
class GraphNode:
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, Any] = field(default_factory=dict)

    @property
    def created_at(self) -> Optional[float]:
        return _number(self.data.get("createdAt"))

    @property
    def y(self) -> float:
        return _number(self.position.get("y")) or 0.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GraphNode":
        return cls(
            id=str(raw["id"]),
            type=str(raw.get("type") or ""),
            data=dict(raw.get("data") or {}),
            position=dict(raw.get("position") or {}),
        )


@dataclass
class GraphEdge:
    source: str
    target: str
    relation: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GraphEdge":
        relation = raw.get("relation")
        if relation is None and isinstance(raw.get("data"), dict):
            relation = raw["data"].get("relation")
        return cls(
            source=str(raw["source"]),
            target=str(raw["target"]),
            relation=str(relation) if relation else None,
        )


@dataclass
class CanvasGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "CanvasGraph":
        """Build a graph from a canvas document, skipping malformed entries."""
        nodes = [
            GraphNode.from_dict(raw)
            for raw in document.get("nodes") or []
            if isinstance(raw, dict) and raw.get("id")
        ]
        edges = [
            GraphEdge.from_dict(raw)
            for raw in document.get("edges") or []
            if isinstance(raw, dict) and raw.get("source") and raw.get("target")
        ]
        return cls(nodes=nodes, edges=edges)


@dataclass
class QueueMessage:
    """One received task body plus the handle needed to acknowledge it."""

    source: str
    handle: str
    body: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class StoredObject:
    key: str
    content_type: str
    size: int


@dataclass
class MediaResult:
    """Media returned by a one-shot generation call: a URL or inline bytes."""

    url: Optional[str] = None
    data: Optional[bytes] = None
    content_type: str = "application/octet-stream"
    headers: Dict[str, str] = field(default_factory=dict, repr=False)

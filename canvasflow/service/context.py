"""Upstream context resolution for a canvas node.

Walks incoming edges breadth-first from the target node, extracts the content
of every ancestor and tags it with a semantic role. The visited set makes the
walk terminate on cyclic graphs and include diamond ancestors once.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from canvasflow.logging import get_logger
from canvasflow.storage.models import CanvasGraph, GraphEdge, GraphNode

logger = get_logger(__name__)

MAX_ITEM_CHARS = 15000
TRUNCATION_MARKER = "\n...[truncated]"
DEFAULT_IMPORTANCE = 3

FetchContent = Callable[[str], Awaitable[Optional[str]]]


class SemanticRole(str, Enum):
    INSTRUCTION = "instruction"
    CONSTRAINT = "constraint"
    CRITIQUE = "critique"
    EXAMPLE = "example"
    KNOWLEDGE = "knowledge"
    HISTORY = "history"
    EVIDENCE = "evidence"
    CONTEXT = "context"


_ROLE_BY_NODE_TYPE: Dict[str, SemanticRole] = {
    "input": SemanticRole.INSTRUCTION,
    "chatInput": SemanticRole.INSTRUCTION,
    "display": SemanticRole.KNOWLEDGE,
    "image": SemanticRole.KNOWLEDGE,
    "file": SemanticRole.KNOWLEDGE,
    "knowledge": SemanticRole.KNOWLEDGE,
    "response": SemanticRole.HISTORY,
}


@dataclass
class ReasoningContextItem:
    source_node_id: str
    node_type: str
    role: SemanticRole
    content: str
    importance: int = DEFAULT_IMPORTANCE
    relation: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sourceNodeId": self.source_node_id,
            "nodeType": self.node_type,
            "role": self.role.value,
            "content": self.content,
            "importance": self.importance,
            "relation": self.relation,
        }


@dataclass
class ReasoningContext:
    target_node_id: str
    items: List[ReasoningContextItem] = field(default_factory=list)
    total_tokens: Optional[int] = None
    is_distilled: bool = False

    def with_items(self, items: List[ReasoningContextItem], **changes: Any) -> "ReasoningContext":
        return replace(self, items=list(items), **changes)


def _coerce_role(value: Any) -> Optional[SemanticRole]:
    if isinstance(value, SemanticRole):
        return value
    if isinstance(value, str):
        try:
            return SemanticRole(value.strip().lower())
        except ValueError:
            return None
    return None


def assign_role(node_type: str, data: Dict[str, Any]) -> SemanticRole:
    """Explicit node role wins; otherwise derive it from the node type."""
    explicit = _coerce_role(data.get("role"))
    if explicit is not None:
        return explicit
    return _ROLE_BY_NODE_TYPE.get(node_type, SemanticRole.CONTEXT)


def clamp_importance(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_IMPORTANCE
    return max(1, min(5, int(value)))


def truncate_content(content: str, limit: int = MAX_ITEM_CHARS) -> str:
    """Cap content at ``limit`` characters, marker included."""
    if len(content) <= limit:
        return content
    return content[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def _text_field(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    # Completed nodes may store output as {"text": ...}
    if isinstance(value, dict) and isinstance(value.get("text"), str) and value["text"]:
        return value["text"]
    return None


async def extract_node_content(node: GraphNode, fetch_content: Optional[FetchContent]) -> str:
    """Content for one ancestor; never raises for missing attachments."""
    data = node.data
    for key in ("output", "text", "prompt"):
        text = _text_field(data.get(key))
        if text:
            return text

    if node.type != "file":
        return ""

    name = data.get("fileName") or data.get("name") or "unknown"
    if isinstance(data.get("textContent"), str) and data["textContent"]:
        return f"[File: {name}]\n{data['textContent']}"

    storage_id = data.get("storageId")
    if storage_id and fetch_content is not None:
        try:
            fetched = await fetch_content(str(storage_id))
        except Exception as exc:
            logger.warning(
                "context_file_fetch_failed",
                node_id=node.id,
                storage_id=storage_id,
                error=str(exc),
            )
            return f"[File: {name} (Error fetching content)]"
        if fetched:
            return f"[File: {name}]\n{fetched}"
        return f"[File: {name} (Content not available)]"

    return f"[File: {name} (Binary/Image/Processing)]"


def collect_ancestors(target_node_id: str, graph: CanvasGraph) -> List[tuple[GraphNode, GraphEdge]]:
    """Breadth-first walk over incoming edges; each ancestor appears once.

    Returns (node, discovering edge) pairs sorted by creation time, falling
    back to vertical position for nodes without a timestamp.
    """
    nodes_by_id = {node.id: node for node in graph.nodes}
    incoming: Dict[str, List[GraphEdge]] = {}
    for edge in graph.edges:
        incoming.setdefault(edge.target, []).append(edge)

    visited = {target_node_id}
    found: List[tuple[GraphNode, GraphEdge]] = []
    queue = deque([target_node_id])
    while queue:
        current = queue.popleft()
        for edge in incoming.get(current, []):
            if edge.source in visited:
                continue
            visited.add(edge.source)
            source = nodes_by_id.get(edge.source)
            if source is None:
                # Dangling edge; nothing to read
                continue
            found.append((source, edge))
            queue.append(source.id)

    found.sort(
        key=lambda pair: (
            pair[0].created_at if pair[0].created_at is not None else math.inf,
            pair[0].y,
        )
    )
    return found


async def resolve_node_context(
    target_node_id: str,
    graph: CanvasGraph,
    fetch_content: Optional[FetchContent] = None,
) -> ReasoningContext:
    """Build the ordered reasoning context for ``target_node_id``."""
    items: List[ReasoningContextItem] = []
    for node, edge in collect_ancestors(target_node_id, graph):
        content = await extract_node_content(node, fetch_content)
        if not content.strip():
            continue
        items.append(
            ReasoningContextItem(
                source_node_id=node.id,
                node_type=node.type,
                role=assign_role(node.type, node.data),
                content=truncate_content(content),
                importance=clamp_importance(node.data.get("importance")),
                relation=edge.relation,
            )
        )
    logger.debug("context_resolved", target_node_id=target_node_id, items=len(items))
    return ReasoningContext(target_node_id=target_node_id, items=items)


def context_from_items(target_node_id: str, raw_items: List[Any]) -> ReasoningContext:
    """Rebuild a context from pre-resolved items shipped inside task inputs."""
    items: List[ReasoningContextItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        content = raw.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        node_type = str(raw.get("nodeType") or "")
        role = _coerce_role(raw.get("role")) or _ROLE_BY_NODE_TYPE.get(node_type, SemanticRole.CONTEXT)
        items.append(
            ReasoningContextItem(
                source_node_id=str(raw.get("sourceNodeId") or ""),
                node_type=node_type,
                role=role,
                content=truncate_content(content),
                importance=clamp_importance(raw.get("importance")),
                relation=raw.get("relation") if isinstance(raw.get("relation"), str) else None,
            )
        )
    return ReasoningContext(target_node_id=target_node_id, items=items)

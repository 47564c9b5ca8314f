from __future__ import annotations

from dataclasses import replace
from typing import Dict, List

from canvasflow.logging import get_logger
from canvasflow.service.context import ReasoningContext, ReasoningContextItem, SemanticRole
from canvasflow.service.tokenizer_utils import estimate_token_count, max_chars_for_tokens

logger = get_logger(__name__)

DEFAULT_TOKEN_BUDGET = 4000
DISTILL_MARKER = "\n... [truncated for context efficiency]"
# Partial items shorter than this are dropped instead of truncated
MIN_PARTIAL_TOKENS = 25

ROLE_PRIORITY: Dict[SemanticRole, int] = {
    SemanticRole.INSTRUCTION: 100,
    SemanticRole.CONSTRAINT: 90,
    SemanticRole.CRITIQUE: 80,
    SemanticRole.EXAMPLE: 70,
    SemanticRole.KNOWLEDGE: 60,
    SemanticRole.HISTORY: 50,
    SemanticRole.EVIDENCE: 40,
    SemanticRole.CONTEXT: 30,
}


def item_tokens(item: ReasoningContextItem) -> int:
    return estimate_token_count(item.content)


def context_tokens(context: ReasoningContext) -> int:
    return sum(item_tokens(item) for item in context.items)


def _truncate_to_tokens(content: str, tokens: int) -> str:
    """Cut content so content + marker stays within ``tokens``; empty if nothing useful remains."""
    keep = max_chars_for_tokens(tokens) - len(DISTILL_MARKER)
    if keep <= 0:
        return ""
    head = content[:keep].rstrip()
    if not head:
        return ""
    return head + DISTILL_MARKER


def distill_context(context: ReasoningContext, budget: int = DEFAULT_TOKEN_BUDGET) -> ReasoningContext:
    """Compress ``context`` so its estimated tokens never exceed ``budget``.

    Items are admitted in descending (role weight, importance, recency) order,
    where recency is the item's position in the chronologically sorted input.
    An item that does not fit is cut down to the remaining allowance when at
    least MIN_PARTIAL_TOKENS remain, otherwise dropped. Retained items keep
    their input order.
    """
    total = context_tokens(context)
    if total <= budget:
        return context.with_items(context.items, total_tokens=total, is_distilled=False)

    if budget <= 0:
        logger.info("context_distilled", kept=0, dropped=len(context.items), budget=budget)
        return context.with_items([], total_tokens=0, is_distilled=True)

    ranked = sorted(
        range(len(context.items)),
        key=lambda idx: (
            ROLE_PRIORITY.get(context.items[idx].role, 0),
            context.items[idx].importance,
            idx,
        ),
        reverse=True,
    )

    remaining = budget
    kept: Dict[int, ReasoningContextItem] = {}
    truncated = 0
    for idx in ranked:
        item = context.items[idx]
        tokens = item_tokens(item)
        if tokens <= remaining:
            kept[idx] = item
            remaining -= tokens
            continue
        if remaining < MIN_PARTIAL_TOKENS:
            continue
        partial = _truncate_to_tokens(item.content, remaining)
        if not partial:
            continue
        kept[idx] = replace(item, content=partial)
        remaining -= estimate_token_count(partial)
        truncated += 1

    items: List[ReasoningContextItem] = [kept[idx] for idx in sorted(kept)]
    used = sum(item_tokens(item) for item in items)
    logger.info(
        "context_distilled",
        kept=len(items),
        dropped=len(context.items) - len(items),
        truncated=truncated,
        tokens_before=total,
        tokens_after=used,
        budget=budget,
    )
    return context.with_items(items, total_tokens=used, is_distilled=True)

from __future__ import annotations

from typing import Dict, List, Optional

from canvasflow.service.context import ReasoningContext, SemanticRole
from canvasflow.service.errors import UnsupportedTaskError

DEFAULT_SYSTEM_PROMPT = "You are an AI model operating inside a structured reasoning graph."

OUTPUT_FORMAT_INSTRUCTION = (
    "OUTPUT FORMAT: Respond in Markdown. Use headings, lists and fenced code "
    "blocks where they help readability."
)

DISTILLED_NOTE = (
    "Note: the upstream context was condensed to fit the model's context "
    "budget; some items may be shortened or omitted."
)

PROCEED_PROMPT = "Proceed with the task based on the context provided above."

Message = Dict[str, str]


def build_system_prompt(system_prompt: Optional[str], *, distilled: bool) -> str:
    parts = [(system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT, OUTPUT_FORMAT_INSTRUCTION]
    if distilled:
        parts.append(DISTILLED_NOTE)
    return "\n\n".join(parts)


def format_context_item(role: SemanticRole, importance: int, content: str) -> str:
    return f'{role.value.upper()} (Importance: {importance}/5):\n"""\n{content}\n"""'


def build_messages(
    system_prompt: Optional[str],
    context: ReasoningContext,
    user_prompt: Optional[str],
) -> List[Message]:
    """Provider-agnostic message list: system, context items, user prompt."""
    messages: List[Message] = [
        {
            "role": "system",
            "content": build_system_prompt(system_prompt, distilled=context.is_distilled),
        }
    ]
    for item in context.items:
        messages.append(
            {
                "role": "assistant" if item.role == SemanticRole.HISTORY else "user",
                "content": format_context_item(item.role, item.importance, item.content),
            }
        )

    prompt = (user_prompt or "").strip()
    if not prompt and context.items:
        prompt = PROCEED_PROMPT
    if prompt:
        messages.append({"role": "user", "content": prompt})

    if len(messages) == 1:
        raise UnsupportedTaskError("No messages to send to the model")
    return messages

"""Translate provider-native streaming chunks into one delta sequence.

Each provider family gets an adapter that knows its chunk shape:

- OpenAI-compatible (OpenAI, xAI, DeepSeek): ``choices[0].delta.content``,
  with ``reasoning_content`` carried as thinking text.
- Anthropic: ``content_block_delta`` events whose nested ``delta.type`` is
  ``text_delta`` or ``thinking_delta``.
- Google: response chunks exposing the new text as ``text`` (falling back to
  the candidate parts).

Chunks may be SDK objects or plain dicts. Adapters never rewrite text; a
chunk without text yields nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, List, Protocol, Union

from canvasflow.config import Provider
from canvasflow.logging import get_logger
from canvasflow.service.errors import StreamAdapterError

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreamDelta:
    text: str
    thinking: bool = False


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first(seq: Any) -> Any:
    if isinstance(seq, (list, tuple)) and seq:
        return seq[0]
    return None


class StreamAdapter(Protocol):
    def extract(self, chunk: Any) -> Iterable[StreamDelta]:
        ...


class OpenAICompatibleAdapter:
    def extract(self, chunk: Any) -> Iterable[StreamDelta]:
        delta = _field(_first(_field(chunk, "choices")), "delta")
        if delta is None:
            return []
        out: List[StreamDelta] = []
        reasoning = _field(delta, "reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            out.append(StreamDelta(reasoning, thinking=True))
        content = _field(delta, "content")
        if isinstance(content, str) and content:
            out.append(StreamDelta(content))
        return out


class AnthropicAdapter:
    def extract(self, chunk: Any) -> Iterable[StreamDelta]:
        if _field(chunk, "type") != "content_block_delta":
            return []
        delta = _field(chunk, "delta")
        delta_type = _field(delta, "type")
        if delta_type == "text_delta":
            text = _field(delta, "text")
            if isinstance(text, str) and text:
                return [StreamDelta(text)]
        elif delta_type == "thinking_delta":
            thinking = _field(delta, "thinking")
            if isinstance(thinking, str) and thinking:
                return [StreamDelta(thinking, thinking=True)]
        return []


class GeminiAdapter:
    def extract(self, chunk: Any) -> Iterable[StreamDelta]:
        text = _field(chunk, "text")
        if callable(text):
            text = text()
        if isinstance(text, str):
            return [StreamDelta(text)] if text else []

        # Chunks without the convenience accessor: walk candidate parts
        content = _field(_first(_field(chunk, "candidates")), "content")
        out: List[StreamDelta] = []
        for part in _field(content, "parts") or []:
            part_text = _field(part, "text")
            if isinstance(part_text, str) and part_text:
                out.append(StreamDelta(part_text, thinking=bool(_field(part, "thought"))))
        return out


STREAM_ADAPTERS: Dict[Provider, StreamAdapter] = {
    Provider.OPENAI: OpenAICompatibleAdapter(),
    Provider.XAI: OpenAICompatibleAdapter(),
    Provider.DEEPSEEK: OpenAICompatibleAdapter(),
    Provider.ANTHROPIC: AnthropicAdapter(),
    Provider.GOOGLE: GeminiAdapter(),
}


def get_stream_adapter(provider: Union[Provider, str]) -> StreamAdapter:
    try:
        key = Provider(provider)
    except ValueError as exc:
        raise StreamAdapterError(f"No stream adapter for provider '{provider}'") from exc
    adapter = STREAM_ADAPTERS.get(key)
    if adapter is None:
        raise StreamAdapterError(f"No stream adapter for provider '{provider}'")
    return adapter


async def normalize_stream(
    provider: Union[Provider, str], raw_stream: AsyncIterable[Any]
) -> AsyncIterator[StreamDelta]:
    """Yield non-empty deltas from ``raw_stream`` until it ends.

    Raises StreamAdapterError before consuming anything when the provider
    has no adapter.
    """
    adapter = get_stream_adapter(provider)
    chunks = 0
    async for chunk in raw_stream:
        chunks += 1
        for delta in adapter.extract(chunk):
            yield delta
    logger.debug(
        "provider_stream_ended", provider=getattr(provider, "value", provider), chunks=chunks
    )

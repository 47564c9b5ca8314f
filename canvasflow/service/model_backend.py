from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

import httpx
from anthropic import AsyncAnthropic
from google import genai
from google.genai import types as genai_types
from openai import AsyncOpenAI

from canvasflow.config import Provider, Settings
from canvasflow.logging import get_logger
from canvasflow.service.errors import ProviderError, UnsupportedTaskError
from canvasflow.service.tasks import ImageGenerationJob, VideoGenerationJob
from canvasflow.storage.models import MediaResult

logger = get_logger(__name__)

XAI_BASE_URL = "https://api.x.ai/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"
GEMINI_REST_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
VEO_POLL_INTERVAL_SECONDS = 5.0
VEO_MAX_POLLS = 120
DEFAULT_MAX_OUTPUT_TOKENS = 4096


class ProviderClient(Protocol):
    """Capability every provider backend exposes to the dispatcher."""

    provider: Provider

    def stream_text(
        self,
        model: str,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: Optional[int],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[Any]: ...

    async def generate_image(self, job: ImageGenerationJob) -> MediaResult: ...

    async def generate_video(self, job: VideoGenerationJob) -> MediaResult: ...


def split_system(messages: List[dict]) -> tuple[str, List[dict]]:
    """Separate system text from the conversational turns."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    turns = [m for m in messages if m.get("role") != "system"]
    return "\n\n".join(system_parts), turns


def merge_consecutive_turns(turns: List[dict]) -> List[dict]:
    """Collapse same-role neighbours; conversation must open with a user turn."""
    merged: List[dict] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {
                "role": turn["role"],
                "content": f"{merged[-1]['content']}\n\n{turn['content']}",
            }
        else:
            merged.append({"role": turn["role"], "content": turn["content"]})
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": "Earlier output from the graph follows."})
    return merged


class OpenAIProviderClient:
    """OpenAI and OpenAI-compatible endpoints (xAI, DeepSeek)."""

    def __init__(
        self,
        api_key: str,
        *,
        provider: Provider = Provider.OPENAI,
        base_url: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream_text(
        self,
        model: str,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: Optional[int],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[Any]:
        kwargs: Dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            stream=True,
            **kwargs,
        )
        try:
            async for chunk in stream:
                if cancel_event.is_set():
                    break
                yield chunk
        finally:
            await stream.close()

    async def generate_image(self, job: ImageGenerationJob) -> MediaResult:
        kwargs: Dict[str, Any] = {"model": job.model, "prompt": job.prompt, "size": job.size, "n": 1}
        for name in ("quality", "background", "output_format", "moderation"):
            value = getattr(job, name)
            if value:
                kwargs[name] = value
        response = await self.client.images.generate(**kwargs)
        item = (response.data or [None])[0]
        if item is None:
            raise ProviderError("Image generation returned no data")
        if getattr(item, "url", None):
            return MediaResult(url=item.url, content_type="image/png")
        if getattr(item, "b64_json", None):
            fmt = job.output_format or "png"
            return MediaResult(data=base64.b64decode(item.b64_json), content_type=f"image/{fmt}")
        raise ProviderError("Image generation returned neither a URL nor image data")

    async def generate_video(self, job: VideoGenerationJob) -> MediaResult:
        kwargs: Dict[str, Any] = {"model": job.model, "prompt": job.prompt}
        if job.seconds:
            kwargs["seconds"] = str(job.seconds)
        if job.size:
            kwargs["size"] = job.size
        video = await self.client.videos.create_and_poll(**kwargs)
        if video.status != "completed":
            error = getattr(video, "error", None)
            raise ProviderError(
                f"Video generation {video.status}: {getattr(error, 'message', None) or 'no details'}"
            )
        content = await self.client.videos.download_content(video.id, variant="video")
        return MediaResult(data=content.content, content_type="video/mp4")


class AnthropicProviderClient:
    """Claude models through the Messages API; text only."""

    provider = Provider.ANTHROPIC

    def __init__(self, api_key: str) -> None:
        self.client = AsyncAnthropic(api_key=api_key)

    async def stream_text(
        self,
        model: str,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: Optional[int],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[Any]:
        system, turns = split_system(messages)
        kwargs: Dict[str, Any] = {}
        if system:
            kwargs["system"] = system
        stream = await self.client.messages.create(
            model=model,
            messages=merge_consecutive_turns(turns),
            max_tokens=max_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
            temperature=temperature,
            stream=True,
            **kwargs,
        )
        try:
            async for event in stream:
                if cancel_event.is_set():
                    break
                yield event
        finally:
            await stream.close()

    async def generate_image(self, job: ImageGenerationJob) -> MediaResult:
        raise UnsupportedTaskError("Anthropic models do not generate images")

    async def generate_video(self, job: VideoGenerationJob) -> MediaResult:
        raise UnsupportedTaskError("Anthropic models do not generate video")


class GeminiProviderClient:
    """Gemini text and image models via google-genai; Veo via the REST operation API."""

    provider = Provider.GOOGLE

    def __init__(self, api_key: str, http_client: httpx.AsyncClient) -> None:
        self.api_key = api_key
        self.client = genai.Client(api_key=api_key)
        self.http = http_client

    @staticmethod
    def _contents(turns: List[dict]) -> List[dict]:
        return [
            {
                "role": "model" if turn["role"] == "assistant" else "user",
                "parts": [{"text": turn["content"]}],
            }
            for turn in merge_consecutive_turns(turns)
        ]

    async def stream_text(
        self,
        model: str,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: Optional[int],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[Any]:
        system, turns = split_system(messages)
        config = genai_types.GenerateContentConfig(
            system_instruction=system or None,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        stream = await self.client.aio.models.generate_content_stream(
            model=model, contents=self._contents(turns), config=config
        )
        async for chunk in stream:
            if cancel_event.is_set():
                break
            yield chunk

    async def generate_image(self, job: ImageGenerationJob) -> MediaResult:
        response = await self.client.aio.models.generate_content(
            model=job.model,
            contents=job.prompt,
            config=genai_types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        for candidate in response.candidates or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    return MediaResult(data=inline.data, content_type=inline.mime_type or "image/png")
        raise ProviderError("Gemini returned no image data")

    async def generate_video(self, job: VideoGenerationJob) -> MediaResult:
        parameters: Dict[str, Any] = {}
        if job.aspect_ratio:
            parameters["aspectRatio"] = job.aspect_ratio
        if job.seconds:
            parameters["durationSeconds"] = job.seconds
        headers = {"x-goog-api-key": self.api_key}
        response = await self.http.post(
            f"{GEMINI_REST_BASE_URL}/models/{job.model}:predictLongRunning",
            json={"instances": [{"prompt": job.prompt}], "parameters": parameters},
            headers=headers,
        )
        response.raise_for_status()
        operation = response.json()
        name = operation.get("name")
        if not name:
            raise ProviderError("Video generation did not return an operation name")

        polls = 0
        while not operation.get("done"):
            if polls >= VEO_MAX_POLLS:
                raise ProviderError("Video generation did not finish in time")
            polls += 1
            await asyncio.sleep(VEO_POLL_INTERVAL_SECONDS)
            poll = await self.http.get(f"{GEMINI_REST_BASE_URL}/{name}", headers=headers)
            poll.raise_for_status()
            operation = poll.json()

        if operation.get("error"):
            raise ProviderError(f"Video generation failed: {operation['error'].get('message')}")
        return self._video_from_operation(operation.get("response") or {}, headers)

    @staticmethod
    def _video_from_operation(result: Dict[str, Any], headers: Dict[str, str]) -> MediaResult:
        samples = (result.get("generateVideoResponse") or {}).get("generatedSamples") or []
        if samples:
            uri = (samples[0].get("video") or {}).get("uri")
            if uri:
                return MediaResult(url=uri, content_type="video/mp4", headers=headers)
        predictions = result.get("predictions") or []
        if predictions:
            encoded = predictions[0].get("bytesBase64Encoded") or predictions[0].get("video")
            if encoded:
                return MediaResult(data=base64.b64decode(encoded), content_type="video/mp4")
            if predictions[0].get("gcsUri"):
                return MediaResult(url=predictions[0]["gcsUri"], content_type="video/mp4")
        raise ProviderError("Video generation finished without a video")


@dataclass(frozen=True)
class ProviderPlug:
    """Describes how to build the client for one provider."""

    provider: Provider
    label: str
    build: Callable[[str, Settings, httpx.AsyncClient], ProviderClient]


BUILTIN_PROVIDER_PLUGS: dict[Provider, ProviderPlug] = {
    Provider.OPENAI: ProviderPlug(
        Provider.OPENAI,
        "OpenAI",
        lambda key, settings, http: OpenAIProviderClient(key),
    ),
    Provider.XAI: ProviderPlug(
        Provider.XAI,
        "xAI Grok",
        lambda key, settings, http: OpenAIProviderClient(
            key, provider=Provider.XAI, base_url=XAI_BASE_URL
        ),
    ),
    Provider.DEEPSEEK: ProviderPlug(
        Provider.DEEPSEEK,
        "DeepSeek",
        lambda key, settings, http: OpenAIProviderClient(
            key, provider=Provider.DEEPSEEK, base_url=DEEPSEEK_BASE_URL
        ),
    ),
    Provider.ANTHROPIC: ProviderPlug(
        Provider.ANTHROPIC,
        "Anthropic Claude",
        lambda key, settings, http: AnthropicProviderClient(key),
    ),
    Provider.GOOGLE: ProviderPlug(
        Provider.GOOGLE,
        "Google Gemini",
        lambda key, settings, http: GeminiProviderClient(key, http),
    ),
}


class ProviderRegistry:
    """Builds provider clients, preferring the task's key over configured defaults."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        plugs: Optional[dict[Provider, ProviderPlug]] = None,
    ) -> None:
        self.settings = settings
        self.http = http_client
        self.plugs = plugs if plugs is not None else BUILTIN_PROVIDER_PLUGS

    def client_for(self, provider: Provider, api_key: Optional[str] = None) -> ProviderClient:
        plug = self.plugs.get(provider)
        if plug is None:
            raise UnsupportedTaskError(f"Unsupported provider: {provider}")
        key = api_key or self.settings.default_api_key(provider)
        if not key:
            raise ProviderError(f"No API key configured for {plug.label}")
        logger.debug("provider_client_built", provider=provider.value, task_key=bool(api_key))
        return plug.build(key, self.settings, self.http)

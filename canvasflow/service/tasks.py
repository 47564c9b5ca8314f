from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from canvasflow.config import Provider, Settings, resolve_provider
from canvasflow.service.errors import UnsupportedTaskError

GENERATION_NODE_TYPES = frozenset({"chatInput", "aiModel", "display", "response"})

TEXT = "text"
IMAGE = "image"
VIDEO = "video"


class MalformedTaskError(ValueError):
    """Queue body that cannot be interpreted as a task at all."""


class TaskEnvelope(BaseModel):
    """Queue message body as produced by the scheduler."""

    execution_id: str = Field(alias="executionId", min_length=1)
    node_id: str = Field(alias="nodeId", min_length=1)
    node_type: str = Field("", alias="nodeType")
    canvas_id: str = Field("", alias="canvasId")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    api_key: Optional[str] = Field(None, alias="apiKey", repr=False)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("inputs", mode="before")
    @classmethod
    def _inputs_dict(cls, value: Any) -> Any:
        return value if value is not None else {}


def parse_envelope(body: str) -> TaskEnvelope:
    """Parse a raw queue body; MalformedTaskError for empty, non-JSON or legacy bodies."""
    if not body or not body.strip():
        raise MalformedTaskError("empty message body")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedTaskError(f"message body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedTaskError("message body is not an object")
    try:
        return TaskEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedTaskError(f"missing task identifiers: {exc.error_count()} errors") from exc


@dataclass(frozen=True)
class CatalogEntry:
    category: str
    provider: Provider
    provider_model_id: str


MODEL_CATALOG: Dict[str, CatalogEntry] = {
    "gpt-image-1.5": CatalogEntry(IMAGE, Provider.OPENAI, "gpt-image-1.5"),
    "gpt-image-1": CatalogEntry(IMAGE, Provider.OPENAI, "gpt-image-1"),
    "gpt-image-1-mini": CatalogEntry(IMAGE, Provider.OPENAI, "gpt-image-1-mini"),
    "dall-e-3": CatalogEntry(IMAGE, Provider.OPENAI, "dall-e-3"),
    "gemini-3-pro-image-preview": CatalogEntry(IMAGE, Provider.GOOGLE, "gemini-3-pro-image-preview"),
    "gemini-2.5-flash-image": CatalogEntry(IMAGE, Provider.GOOGLE, "gemini-2.5-flash-image"),
    "sora-2-text-to-video": CatalogEntry(VIDEO, Provider.OPENAI, "sora-2"),
    "sora-2-pro-text-to-video": CatalogEntry(VIDEO, Provider.OPENAI, "sora-2-pro"),
    "sora-2": CatalogEntry(VIDEO, Provider.OPENAI, "sora-2"),
    "veo-3.1-text-to-video": CatalogEntry(VIDEO, Provider.GOOGLE, "veo-3.1-generate-preview"),
}


@dataclass
class TextGenerationJob:
    provider: Provider
    model: str
    prompt: str
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    context_items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ImageGenerationJob:
    provider: Provider
    model: str
    prompt: str
    size: str = "1024x1024"
    quality: Optional[str] = None
    background: Optional[str] = None
    output_format: Optional[str] = None
    moderation: Optional[str] = None


@dataclass
class VideoGenerationJob:
    provider: Provider
    model: str
    prompt: str
    seconds: Optional[int] = None
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None


NodeJob = Union[TextGenerationJob, ImageGenerationJob, VideoGenerationJob]


class GenerationInputs(BaseModel):
    """Loose node input map with the fields the worker understands."""

    prompt: Optional[str] = None
    text: Optional[str] = None
    model_id: Optional[str] = Field(None, alias="modelId")
    model: Optional[str] = None
    provider: Optional[str] = None
    category: Optional[str] = None
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, alias="maxTokens")
    context: List[Dict[str, Any]] = Field(default_factory=list)
    image_size: Optional[str] = Field(None, alias="imageSize")
    image_quality: Optional[str] = Field(None, alias="imageQuality")
    image_background: Optional[str] = Field(None, alias="imageBackground")
    image_output_format: Optional[str] = Field(None, alias="imageOutputFormat")
    image_moderation: Optional[str] = Field(None, alias="imageModeration")
    video_seconds: Optional[int] = Field(None, alias="videoSeconds")
    video_size: Optional[str] = Field(None, alias="videoSize")
    aspect_ratio: Optional[str] = Field(None, alias="aspectRatio")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("context", mode="before")
    @classmethod
    def _context_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @property
    def user_prompt(self) -> str:
        return self.prompt or self.text or ""


def _provider_from_model(model_id: Optional[str]) -> Provider:
    prefix = (model_id or "").split("-", 1)[0].lower()
    return resolve_provider(prefix) or Provider.OPENAI


def _resolve_job_provider(
    inputs: GenerationInputs, entry: Optional[CatalogEntry], model_id: Optional[str]
) -> Provider:
    if entry is not None:
        return entry.provider
    if inputs.provider is None:
        return _provider_from_model(model_id)
    provider = resolve_provider(inputs.provider)
    if provider is None:
        raise UnsupportedTaskError(f"Unsupported provider: {inputs.provider}")
    return provider


def build_job(envelope: TaskEnvelope, settings: Settings) -> NodeJob:
    """Turn an envelope into the typed job for its node kind."""
    if envelope.node_type not in GENERATION_NODE_TYPES:
        raise UnsupportedTaskError(f"Unsupported node type: {envelope.node_type or '<missing>'}")
    try:
        inputs = GenerationInputs.model_validate(envelope.inputs)
    except ValidationError as exc:
        raise UnsupportedTaskError(f"Invalid node inputs: {exc.error_count()} errors") from exc

    model_id = inputs.model_id or inputs.model
    entry = MODEL_CATALOG.get(model_id) if model_id else None
    category = entry.category if entry else (inputs.category or TEXT).lower()
    provider = _resolve_job_provider(inputs, entry, model_id)
    model = entry.provider_model_id if entry else model_id

    if category == IMAGE:
        model = model or settings.default_image_model
        return ImageGenerationJob(
            provider=provider,
            model=model,
            prompt=inputs.user_prompt,
            size=inputs.image_size or "1024x1024",
            # gpt-image models reject the dall-e quality values
            quality=inputs.image_quality or (None if model.startswith("gpt-image") else "standard"),
            background=inputs.image_background,
            output_format=inputs.image_output_format,
            moderation=inputs.image_moderation,
        )
    if category == VIDEO:
        return VideoGenerationJob(
            provider=provider,
            model=model or settings.default_video_model,
            prompt=inputs.user_prompt,
            seconds=inputs.video_seconds,
            size=inputs.video_size,
            aspect_ratio=inputs.aspect_ratio,
        )
    if category != TEXT:
        raise UnsupportedTaskError(f"Unsupported model category: {category}")
    return TextGenerationJob(
        provider=provider,
        model=model or settings.default_text_model,
        prompt=inputs.user_prompt,
        system_prompt=inputs.system_prompt,
        temperature=(
            inputs.temperature if inputs.temperature is not None else settings.default_temperature
        ),
        max_tokens=inputs.max_tokens,
        context_items=inputs.context,
    )

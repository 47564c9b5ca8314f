from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
import uuid
from pathlib import Path
from typing import Optional, Tuple

import httpx

from canvasflow.logging import get_logger
from canvasflow.service.errors import MediaFetchError
from canvasflow.service.fs import atomic_write_bytes, safe_join
from canvasflow.storage.models import MediaResult

logger = get_logger(__name__)

MAX_MEDIA_REDIRECTS = 5


def new_media_key(kind: str, canvas_id: str, node_id: str, content_type: str) -> str:
    """Fresh, never-reused key for one generated artifact."""
    extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
    safe_canvas = canvas_id.replace("/", "_") or "canvas"
    safe_node = node_id.replace("/", "_")
    return f"{kind}/{safe_canvas}/{safe_node}/{uuid.uuid4().hex}{extension}"


class FileObjectStore:
    """Durable media storage on the shared filesystem."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = safe_join(self.root, key)
        await asyncio.to_thread(atomic_write_bytes, path, data)
        logger.info("media_stored", key=key, size=len(data), content_type=content_type)
        return key


def _decode_data_url(url: str) -> Tuple[bytes, str]:
    header, _, payload = url.partition(",")
    if not header.startswith("data:") or not payload:
        raise MediaFetchError("Malformed data URL")
    meta = header[len("data:"):]
    content_type = meta.split(";")[0] or "application/octet-stream"
    try:
        if ";base64" in meta:
            return base64.b64decode(payload, validate=True), content_type
        return payload.encode("utf-8"), content_type
    except (binascii.Error, ValueError) as exc:
        raise MediaFetchError("Data URL payload is not valid base64") from exc


def _origin(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    return url.scheme, url.host, url.port


async def _download(
    media: MediaResult, http_client: httpx.AsyncClient, timeout: Optional[float]
) -> httpx.Response:
    """GET ``media.url``, following redirects by hand.

    Provider headers carry credentials (e.g. the Gemini API key), so they are
    sent only to the origin the provider returned, never to a redirect target
    on another host.
    """
    url = httpx.URL(media.url)
    origin = _origin(url)
    kwargs = {} if timeout is None else {"timeout": timeout}
    for _ in range(MAX_MEDIA_REDIRECTS + 1):
        headers = media.headers if _origin(url) == origin else None
        response = await http_client.get(
            url, headers=headers or None, follow_redirects=False, **kwargs
        )
        if not response.is_redirect:
            response.raise_for_status()
            return response
        url = url.join(response.headers["location"])
        logger.debug("media_fetch_redirect", host=url.host, same_origin=_origin(url) == origin)
    raise MediaFetchError(f"Generated media exceeded {MAX_MEDIA_REDIRECTS} redirects")


async def fetch_media(
    media: MediaResult,
    http_client: httpx.AsyncClient,
    *,
    max_bytes: int,
    timeout: Optional[float] = None,
) -> Tuple[bytes, str]:
    """Materialise generated media as bytes; MediaFetchError on any failure."""
    if media.data is not None:
        data, content_type = media.data, media.content_type
    elif media.url and media.url.startswith("data:"):
        data, content_type = _decode_data_url(media.url)
    elif media.url and media.url.startswith(("https://", "http://")):
        try:
            response = await _download(media, http_client, timeout)
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"Failed to download generated media: {exc}") from exc
        data = response.content
        content_type = response.headers.get("content-type", media.content_type).split(";")[0]
    else:
        raise MediaFetchError("Generated media has no downloadable location")

    if not data:
        raise MediaFetchError("Generated media is empty")
    if len(data) > max_bytes:
        raise MediaFetchError(f"Generated media exceeds {max_bytes} bytes")
    return data, content_type

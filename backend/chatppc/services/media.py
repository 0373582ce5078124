"""Media loading for the workers.

Loads image bytes from URLs or data URLs, validates them by content, and
turns animated GIFs into still PNG frames for vision models that cannot
read animation.
"""

from __future__ import annotations

import io
import logging
import re

import httpx
from PIL import Image, UnidentifiedImageError

from chatppc.errors import MediaValidationError
from chatppc.utils.formats import decode_data_url, detect_mime_type, is_supported_image, to_data_url

logger = logging.getLogger(__name__)

GIF_FRAME_COUNT = 3
MAX_IMAGE_SOURCES = 4

_TRAILING_PUNCTUATION_RE = re.compile(r"[),.!?;:]+$")
_GIF_PATH_RE = re.compile(r"\.gif(\?.*)?$", re.IGNORECASE)


def normalize_image_url(url: str) -> str:
    """Trim whitespace and trailing sentence punctuation from a URL."""
    return _TRAILING_PUNCTUATION_RE.sub("", url.strip())


def collect_image_sources(image_urls: list[str]) -> list[str]:
    """Unique, normalized image URLs in order, at most four."""
    unique: list[str] = []
    for url in image_urls:
        normalized = normalize_image_url(url)
        if normalized and normalized not in unique:
            unique.append(normalized)
    return unique[:MAX_IMAGE_SOURCES]


def is_gif_source(url: str) -> bool:
    normalized = normalize_image_url(url).lower()
    if normalized.startswith("data:image/gif"):
        return True
    return bool(_GIF_PATH_RE.search(normalized))


def select_frame_indexes(frame_count: int, count: int = GIF_FRAME_COUNT) -> list[int]:
    """First, middle and last frame; a still image repeats frame 0."""
    if frame_count <= 1:
        return [0] * count
    last = frame_count - 1
    return [0, last // 2, last][:count]


def extract_gif_frames(data: bytes, count: int = GIF_FRAME_COUNT) -> list[bytes]:
    """Render representative frames of a GIF as PNG bytes.

    Pillow composites each frame onto the previous canvas when seeking, so
    every returned PNG is the full picture at that point of the animation.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            frame_count = getattr(img, "n_frames", 1)
            frames: list[bytes] = []
            for index in select_frame_indexes(frame_count, count):
                img.seek(index)
                buf = io.BytesIO()
                img.convert("RGBA").save(buf, format="PNG")
                frames.append(buf.getvalue())
    except (UnidentifiedImageError, OSError, EOFError) as exc:
        raise MediaValidationError(f"GIF could not be decoded: {exc}") from exc
    if not frames:
        raise MediaValidationError("GIF has no frames")
    return frames


def gif_frame_data_urls(data: bytes) -> list[str]:
    """Exactly three PNG frame data URLs for GIF bytes."""
    urls = [to_data_url(frame, "image/png") for frame in extract_gif_frames(data)]
    while len(urls) < GIF_FRAME_COUNT:
        urls.append(urls[-1])
    return urls[:GIF_FRAME_COUNT]


class MediaFetcher:
    """Fetch media over HTTP with size and content checks."""

    __slots__ = ("_timeout", "_max_bytes", "_transport")

    def __init__(
        self,
        timeout: float = 10.0,
        max_bytes: int = 15 * 1024 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_bytes = max_bytes
        self._transport = transport

    async def fetch_bytes(self, url: str) -> tuple[bytes, str | None]:
        """Return ``(body, declared_content_type)`` for a URL or data URL.

        Raises:
            MediaValidationError: If the media cannot be loaded.
        """
        if url.startswith("data:"):
            decoded = decode_data_url(url)
            if decoded is None:
                raise MediaValidationError("Invalid image data URL")
            mime_type, data = decoded
            return data, mime_type

        chunks: list[bytes] = []
        received = 0
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self._timeout,
                max_redirects=5,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-type")
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self._max_bytes:
                            raise MediaValidationError(
                                f"Media too large: over {self._max_bytes} bytes"
                            )
                        chunks.append(chunk)
        except httpx.HTTPStatusError as exc:
            raise MediaValidationError(
                f"Media fetch returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise MediaValidationError(f"Media fetch failed: {exc}") from exc

        return b"".join(chunks), declared

    async def fetch_validated_image(self, url: str) -> str:
        """Fetch ``url`` and confirm it really is an image; returns its MIME type.

        The byte signature decides. A declared content type that is not an
        image rejects the media as well.
        """
        data, declared = await self.fetch_bytes(url)
        if declared and not declared.split(";", 1)[0].strip().lower().startswith("image/"):
            raise MediaValidationError(f"Declared content type is {declared}")
        if not is_supported_image(data):
            raise MediaValidationError("Byte signature is not a supported image")
        return detect_mime_type(data)

    async def analysis_image_urls(self, url: str) -> list[str]:
        """Images a vision model should see for ``url``.

        GIFs become exactly three PNG frame data URLs. The byte signature
        counts as well as the URL, so a GIF served without a ``.gif`` suffix
        is expanded too. Anything else passes through unchanged.

        Raises:
            MediaValidationError: If a GIF source cannot be loaded or decoded.
        """
        named_gif = is_gif_source(url)
        try:
            data, _ = await self.fetch_bytes(url)
        except MediaValidationError as exc:
            if named_gif:
                raise
            logger.info("Could not inspect image %s, passing it through: %s", url, exc)
            return [url]
        if not named_gif and detect_mime_type(data) != "image/gif":
            return [url]
        return gif_frame_data_urls(data)


_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*]\(([^)]+)\)")
_HTTP_URL_RE = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)
_IMAGE_URL_RE = re.compile(
    r"^data:image/[a-zA-Z0-9.+-]+;base64,|\.(png|jpe?g|gif|webp|svg)(\?.*)?$", re.IGNORECASE
)


def extract_image_urls(text: str) -> list[str]:
    """Image URLs in a message: markdown images first, then bare image links."""
    found = [normalize_image_url(url) for url in _MARKDOWN_IMAGE_RE.findall(text)]
    for url in _HTTP_URL_RE.findall(text):
        normalized = normalize_image_url(url)
        if _IMAGE_URL_RE.search(normalized):
            found.append(normalized)
    return collect_image_sources([url for url in found if url])

"""GIF lookup for GIF-request mentions.

Candidates come from the Giphy search API and are never trusted as-is:
each one is downloaded and must pass the byte-signature check before it
is embedded in a chat message.
"""

from __future__ import annotations

import logging

import httpx

from chatppc.errors import MediaValidationError, ProviderError, ProviderErrorKind
from chatppc.services.media import MediaFetcher

logger = logging.getLogger(__name__)

GIF_NOT_FOUND_TEXT = "Ich konnte kein passendes GIF finden. Versuch es mit anderen Suchbegriffen."


def format_gif_message(url: str, query: str) -> str:
    alt = query.replace("[", "").replace("]", "").strip() or "gif"
    return f"![{alt}]({url})"


class GifSearchClient:
    """Giphy ``/gifs/search`` client returning candidate media URLs."""

    __slots__ = ("_api_key", "_base_url", "_limit", "_timeout", "_transport")

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.giphy.com/v1",
        limit: int = 5,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._limit = limit
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str) -> list[str]:
        params = {
            "api_key": self._api_key,
            "q": query,
            "limit": str(self._limit),
            "rating": "r",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(f"{self._base_url}/gifs/search", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"GIF search returned HTTP {exc.response.status_code}",
                kind=ProviderErrorKind.SERVER
                if exc.response.status_code >= 500
                else ProviderErrorKind.CLIENT,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"GIF search failed: {exc}", kind=ProviderErrorKind.TRANSPORT
            ) from exc
        except ValueError as exc:
            raise ProviderError(
                "GIF search returned invalid JSON", kind=ProviderErrorKind.MALFORMED
            ) from exc

        items = data.get("data") if isinstance(data, dict) else None
        urls: list[str] = []
        for item in items or []:
            try:
                url = item["images"]["original"]["url"]
            except (KeyError, TypeError):
                continue
            if isinstance(url, str) and url.startswith("https://"):
                urls.append(url)
        return urls


class GifResponder:
    """Turn a GIF query into chat message content."""

    __slots__ = ("_search", "_fetcher")

    def __init__(self, search: GifSearchClient, fetcher: MediaFetcher) -> None:
        self._search = search
        self._fetcher = fetcher

    async def find_validated_gif(self, query: str) -> str | None:
        """First candidate whose bytes really are an image, or None."""
        if not self._search.is_configured:
            logger.info("GIF search requested but no GIF provider is configured")
            return None
        try:
            candidates = await self._search.search(query)
        except ProviderError:
            logger.warning("GIF search failed for %r", query, exc_info=True)
            return None

        for url in candidates:
            try:
                await self._fetcher.fetch_validated_image(url)
            except MediaValidationError as exc:
                logger.info("Rejected GIF candidate %s: %s", url, exc)
                continue
            return url
        return None

    async def respond(self, query: str) -> str:
        url = await self.find_validated_gif(query)
        if url is None:
            return GIF_NOT_FOUND_TEXT
        return format_gif_message(url, query)

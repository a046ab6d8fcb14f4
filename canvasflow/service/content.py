from __future__ import annotations

import html
import re
from typing import Optional

import httpx

from canvasflow.logging import get_logger

logger = get_logger(__name__)

MAX_ARTICLE_CHARS = 20_000
USER_AGENT = "canvasflow/1.0 (+workflow content fetcher)"

_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_ARTICLE_RE = re.compile(r"<article[\s\S]*?</article>", re.IGNORECASE)
_MAIN_RE = re.compile(r"<main[\s\S]*?</main>", re.IGNORECASE)
_PARAGRAPH_RE = re.compile(r"<p[^>]*>([\s\S]*?)</p>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


class ContentFetchError(Exception):
    """Raised when a content URL cannot be fetched or yields no text."""


def extract_text_from_html(markup: str) -> str:
    """Reduce an HTML page to its readable paragraph text.

    ``<article>`` is preferred over ``<main>`` over the whole document;
    inside the container, ``<p>`` bodies are used when present.
    """
    cleaned = _STYLE_RE.sub(" ", _SCRIPT_RE.sub(" ", markup))
    match = _ARTICLE_RE.search(cleaned) or _MAIN_RE.search(cleaned)
    container = match.group(0) if match else cleaned
    paragraphs = _PARAGRAPH_RE.findall(container)
    text = "\n\n".join(paragraphs) if paragraphs else container
    text = _TAG_RE.sub(" ", text)
    text = _WS_RE.sub(" ", text).strip()
    return html.unescape(text).replace("\xa0", " ")


class ArticleFetcher:
    """Fetch article pages referenced by content nodes."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        max_chars: int = MAX_ARTICLE_CHARS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_chars = max_chars
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_text(self, url: str) -> str:
        """Return the readable text of ``url`` capped at ``max_chars``.

        Raises:
            ContentFetchError: on transport errors, non-2xx responses, or
                pages without extractable text.
        """
        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("article_fetch_status", url=url, status_code=exc.response.status_code)
            raise ContentFetchError(f"article fetch returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("article_fetch_failed", url=url, error_type=type(exc).__name__, error=str(exc))
            raise ContentFetchError("article fetch failed") from exc

        text = extract_text_from_html(response.text)
        if not text:
            raise ContentFetchError("article page contained no readable text")
        logger.info("article_fetched", url=url, chars=len(text), truncated=len(text) > self.max_chars)
        return text[: self.max_chars]

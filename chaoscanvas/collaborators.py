# chaoscanvas/collaborators.py
"""
Adapters for the two outside services the canvas talks to:

  - content generation: (prompt, style, userId) -> {url, prompt, style}
  - checkout: (priceId, userId) -> redirect URL

Both are thin httpx clients behind small protocols so the HTTP layer (and
tests) can swap them.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

STYLE_KEYWORDS: Dict[str, str] = {
    "meme": "viral tiktok meme, funny, trending",
    "pixel": "pixel art, retro game style, 8-bit",
    "anime": "anime style, detailed, vibrant",
    "photo": "photorealistic, ultra detailed, 4k",
    "surreal": "surreal, dreamlike, abstract",
}

UNSPLASH_RANDOM_URL = "https://api.unsplash.com/photos/random"
PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"
PLACEHOLDER_URL = "https://placeholder.co/320x320?text={text}"


@dataclass(frozen=True)
class GeneratedContent:
    url: str
    prompt: str
    style: str
    source: str


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    session_url: str


class ContentGenerator(Protocol):
    def generate(self, prompt: str, style: str, user_id: str) -> GeneratedContent:
        ...


class CheckoutProvider(Protocol):
    def create_session(self, price_id: str, user_id: str) -> CheckoutSession:
        ...


class StockImageGenerator:
    """
    Stock-photo stand-in for image generation.

    Tries Unsplash, then Pexels, then falls back to a placeholder image. A
    source without a configured key is skipped; upstream errors fall
    through to the next source and never fail the call.
    """

    def __init__(
        self,
        *,
        unsplash_key: Optional[str] = None,
        pexels_key: Optional[str] = None,
        timeout_s: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.unsplash_key = unsplash_key if unsplash_key is not None else os.environ.get("UNSPLASH_ACCESS_KEY", "")
        self.pexels_key = pexels_key if pexels_key is not None else os.environ.get("PEXELS_API_KEY", "")
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    @staticmethod
    def search_query(prompt: str, style: str) -> str:
        return f"{prompt} {STYLE_KEYWORDS.get(style, STYLE_KEYWORDS['meme'])}"

    def _from_unsplash(self, query: str) -> Optional[str]:
        if not self.unsplash_key:
            return None
        resp = self._client.get(
            UNSPLASH_RANDOM_URL,
            params={"query": query, "w": 320, "h": 320, "client_id": self.unsplash_key},
            headers={"Accept-Version": "v1"},
        )
        resp.raise_for_status()
        urls = resp.json().get("urls") or {}
        return urls.get("regular") or urls.get("small")

    def _from_pexels(self, query: str) -> Optional[str]:
        if not self.pexels_key:
            return None
        resp = self._client.get(
            PEXELS_SEARCH_URL,
            params={"query": query, "per_page": 1, "size": "small"},
            headers={"Authorization": self.pexels_key},
        )
        resp.raise_for_status()
        photos = resp.json().get("photos") or []
        if not photos:
            return None
        return (photos[0].get("src") or {}).get("small")

    def generate(self, prompt: str, style: str, user_id: str) -> GeneratedContent:
        prompt = prompt.strip()
        query = self.search_query(prompt, style)
        for source, fetch in (("unsplash", self._from_unsplash), ("pexels", self._from_pexels)):
            try:
                url = fetch(query)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("image source %s failed: %s", source, exc, extra={"user_id": user_id})
                continue
            if url:
                return GeneratedContent(url=url, prompt=prompt, style=style, source=source)
        url = PLACEHOLDER_URL.format(text=quote(prompt[:20]))
        logger.info("image sources exhausted; using placeholder", extra={"user_id": user_id})
        return GeneratedContent(url=url, prompt=prompt, style=style, source="placeholder")

    def close(self) -> None:
        self._client.close()


class HttpCheckoutClient:
    """
    Posts ``{priceId, userId}`` to a checkout service and expects
    ``{sessionId, url}`` back.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    def create_session(self, price_id: str, user_id: str) -> CheckoutSession:
        try:
            resp = self._client.post(self.endpoint, json={"priceId": price_id, "userId": user_id})
            resp.raise_for_status()
            data: Dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("checkout session failed", exc_info=True, extra={"user_id": user_id})
            raise UpstreamUnavailable("checkout service unavailable") from exc
        session_id = data.get("sessionId") or data.get("id")
        session_url = data.get("url") or data.get("sessionUrl")
        if not session_id or not session_url:
            raise UpstreamUnavailable("checkout service returned an incomplete session")
        return CheckoutSession(session_id=str(session_id), session_url=str(session_url))

    def close(self) -> None:
        self._client.close()


__all__ = [
    "STYLE_KEYWORDS",
    "GeneratedContent",
    "CheckoutSession",
    "ContentGenerator",
    "CheckoutProvider",
    "StockImageGenerator",
    "HttpCheckoutClient",
]

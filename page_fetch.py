"""Upstream HTTP fetching (httpx.AsyncClient, bounded timeout, no retries)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx

from crashnet_core import DEFAULT_FETCH_TIMEOUT, DEFAULT_USER_AGENT, FetchError

PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
IMAGE_ACCEPT = "image/jpeg,image/gif,image/png,image/webp,image/svg+xml,*/*;q=0.5"
HTML_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchResult:
    content: bytes
    content_type: str
    final_url: str
    status: int
    encoding: Optional[str] = None

    @property
    def mime(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def is_html(self) -> bool:
        return self.mime in HTML_TYPES or (not self.mime and self.content.lstrip()[:1] == b"<")

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")


class PageFetcher:
    """Thin wrapper over one shared ``httpx.AsyncClient``.

    ``transport`` is injectable so tests can serve canned upstream responses
    with ``httpx.MockTransport``.
    """

    def __init__(self, timeout: float = DEFAULT_FETCH_TIMEOUT, user_agent: str = DEFAULT_USER_AGENT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.user_agent = user_agent
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport)

    def _headers(self, accept: str) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.5",
            "Save-Data": "on",
            "DNT": "1",
        }

    async def fetch(self, url: str, method: str = "GET", form: Optional[List[Tuple[str, str]]] = None,
                    accept: str = PAGE_ACCEPT) -> FetchResult:
        try:
            if method.upper() == "POST":
                data: Dict[str, List[str]] = {}
                for k, v in form or []:
                    data.setdefault(k, []).append(v)
                resp = await self._client.post(url, data=data, headers=self._headers(accept))
            else:
                resp = await self._client.get(url, headers=self._headers(accept))
        except httpx.TimeoutException:
            raise FetchError(f"Failed to fetch URL: timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch URL: {e}")
        if not resp.is_success:
            raise FetchError(f"Failed to fetch URL: {resp.status_code} {resp.reason_phrase}",
                             status=resp.status_code, reason=resp.reason_phrase)
        return FetchResult(
            content=resp.content,
            content_type=resp.headers.get("content-type", ""),
            final_url=str(resp.url),
            status=resp.status_code,
            encoding=resp.encoding,
        )

    async def fetch_image(self, url: str) -> FetchResult:
        return await self.fetch(url, accept=IMAGE_ACCEPT)

    async def aclose(self):
        await self._client.aclose()

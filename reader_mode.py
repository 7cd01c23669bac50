"""Main-content extraction for read mode (trafilatura).

A reader is anything with ``extract(html, url) -> (title, content_html)``
returning ``None`` when no article could be found; the pipeline turns that
into a ParseError.
"""
from __future__ import annotations

from typing import Optional, Protocol, Tuple

from crashnet_core import ParseError, log_to


class ArticleReader(Protocol):
    def extract(self, html: str, url: str) -> Optional[Tuple[str, str]]: ...


class TrafilaturaReader:
    def __init__(self, log=None):
        self.log = log

    def extract(self, html: str, url: str) -> Optional[Tuple[str, str]]:
        try:
            import trafilatura  # type: ignore
        except Exception as e:
            raise ParseError(f"trafilatura not installed: {e}")
        content = trafilatura.extract(
            html,
            url=url,
            output_format="html",
            include_images=True,
            include_links=True,
            include_tables=True,
            favor_recall=True,
        )
        if not content or not content.strip():
            log_to(self.log, f"[reader] no article found in {url}")
            return None
        title = ""
        meta = trafilatura.extract_metadata(html, default_url=url)
        if meta is not None and meta.title:
            title = meta.title.strip()
        return title, content

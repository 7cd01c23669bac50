"""Pick a single image URL out of ``srcset`` candidates and ``<picture>`` sources.

Resolution is plain width arithmetic against a fixed reference width; no
viewport or media query is evaluated.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from crashnet_core import SRCSET_REFERENCE_WIDTH, log_to
from dom_tree import Document

_FIRST_URL_RE = re.compile(r"https?://[^\s,]+|data:[^\s,]+", re.IGNORECASE)
_FIRST_TOKEN_RE = re.compile(r"^\s*([^\s,]+)")
_DESCRIPTOR_RE = re.compile(r"^(\d+(?:\.\d+)?)([wx])$", re.IGNORECASE)
_NARROW_MEDIA_RE = re.compile(r"max-width|width\s*<", re.IGNORECASE)


class SrcsetSyntaxError(ValueError):
    pass


@dataclass(frozen=True)
class SrcsetCandidate:
    url: str
    effective_width: float


def _split_candidates(srcset: str) -> List[str]:
    # a comma only separates candidates when followed by whitespace or at a
    # descriptor boundary; commas inside URLs (e.g. image CDNs) stay put
    out: List[str] = []
    buf: List[str] = []
    i, n = 0, len(srcset)
    in_url = True
    while i < n:
        ch = srcset[i]
        if ch == "," and (not in_url or i + 1 >= n or srcset[i + 1].isspace() or not "".join(buf).strip()):
            out.append("".join(buf))
            buf = []
            in_url = True
        else:
            if ch.isspace() and "".join(buf).strip():
                in_url = False
            buf.append(ch)
        i += 1
    out.append("".join(buf))
    return [c.strip() for c in out if c.strip()]


def parse_srcset(srcset: str, reference_width: int = SRCSET_REFERENCE_WIDTH) -> List[SrcsetCandidate]:
    """Parse a srcset attribute; raises SrcsetSyntaxError on anything it does not understand."""
    candidates: List[SrcsetCandidate] = []
    for raw in _split_candidates(srcset or ""):
        parts = raw.split()
        url = parts[0]
        if len(parts) == 1:
            width = float(reference_width)
        elif len(parts) == 2:
            m = _DESCRIPTOR_RE.match(parts[1])
            if not m:
                raise SrcsetSyntaxError(f"unknown descriptor {parts[1]!r}")
            value = float(m.group(1))
            width = value if m.group(2).lower() == "w" else value * reference_width
        else:
            raise SrcsetSyntaxError(f"too many descriptors in {raw!r}")
        candidates.append(SrcsetCandidate(url, width))
    if not candidates:
        raise SrcsetSyntaxError("empty srcset")
    return candidates


def select_from_srcset(srcset: str, reference_width: int = SRCSET_REFERENCE_WIDTH) -> str:
    """Return the candidate closest to ``reference_width`` (first wins ties); never raises."""
    try:
        candidates = parse_srcset(srcset, reference_width)
        best = candidates[0]
        for c in candidates[1:]:
            if abs(c.effective_width - reference_width) < abs(best.effective_width - reference_width):
                best = c
        return best.url
    except SrcsetSyntaxError:
        pass
    text = srcset or ""
    m = _FIRST_URL_RE.search(text)
    if m:
        return m.group(0)
    m = _FIRST_TOKEN_RE.match(text)
    return m.group(1) if m else ""


def _source_url(doc: Document, source: int) -> str:
    srcset = doc.get_attr(source, "srcset")
    if srcset:
        return select_from_srcset(srcset)
    return (doc.get_attr(source, "src") or "").strip()


def pick_picture_source(doc: Document, picture: int) -> str:
    """URL for a ``<picture>``: narrow-media source first, else first source, else inner img."""
    sources = doc.element_children(picture, "source")
    chosen: Optional[int] = next((s for s in sources if _NARROW_MEDIA_RE.search(doc.get_attr(s, "media") or "")), None)
    if chosen is None and sources:
        chosen = sources[0]
    url = _source_url(doc, chosen) if chosen is not None else ""
    if not url:
        img = doc.find_first("img", picture)
        if img is not None:
            url = (doc.get_attr(img, "src") or "").strip() or select_from_srcset(doc.get_attr(img, "srcset") or "")
    return url


def resolve_pictures(doc: Document, ctx=None, styles=None, log=None) -> int:
    """Replace each resolvable ``<picture>`` with a plain ``<img>``; unresolvable ones stay as they are."""
    count = 0
    for picture in doc.find_all("picture"):
        if picture not in doc:
            continue
        try:
            url = pick_picture_source(doc, picture)
            if not url:
                log_to(log, f"[picture] no usable source in picture #{picture}")
                continue
            attrs = {"src": url}
            img = doc.find_first("img", picture)
            if img is not None:
                for keep in ("alt", "width", "height", "border"):
                    if doc.has_attr(img, keep):
                        attrs[keep] = doc.get_attr(img, keep)
            doc.replace(picture, doc.create_element("img", attrs))
            count += 1
        except Exception as e:
            log_to(log, f"[picture] picture #{picture} left unchanged: {e}")
    return count

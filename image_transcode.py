"""Image transcoding for ``/image_proxy``.

Input is an absolute URL or a ``data:`` URI. Output is either the original
bytes (non-image content) or a re-encoded image that fits inside the
640x480 viewport box:

* transparency-capable sources (PNG, GIF, WebP, SVG) become PNG with alpha;
* everything else becomes a baseline JPEG at a fixed low quality.

SVG is rasterised through the page host before re-encoding.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
from dataclasses import dataclass
from typing import Tuple
from urllib.parse import unquote, unquote_to_bytes, urlsplit

from PIL import Image, UnidentifiedImageError

from crashnet_core import (
    IMAGE_CACHE_CONTROL, JPEG_QUALITY, PNG_COMPRESS_LEVEL, VIEWPORT_HEIGHT, VIEWPORT_WIDTH,
    DataUriError, ImageError, log_to,
)

SVG_MIME = "image/svg+xml"
TRANSPARENT_MIMES = frozenset({"image/png", "image/apng", "image/gif", "image/webp", SVG_MIME})
TRANSPARENT_EXTS = (".png", ".apng", ".gif", ".webp", ".svg", ".svgz")
IMAGE_EXTS = TRANSPARENT_EXTS + (".jpg", ".jpeg", ".jfif", ".pjpeg", ".bmp", ".ico", ".tif", ".tiff", ".avif")


@dataclass
class TranscodeResult:
    body: bytes
    content_type: str
    cache_control: str = IMAGE_CACHE_CONTROL


def parse_data_uri(uri: str) -> Tuple[str, bytes]:
    """``data:[<mime>][;base64],<payload>`` -> ``(mime, bytes)``; raises DataUriError when malformed."""
    if not uri[:5].lower() == "data:":
        raise DataUriError("Not a data URI")
    header, sep, payload = uri[5:].partition(",")
    if not sep:
        raise DataUriError("Malformed data URI: missing ',' separator")
    if not payload.strip():
        raise DataUriError("Malformed data URI: empty payload")
    params = [p.strip().lower() for p in header.split(";")]
    mime = params[0] or "text/plain"
    if "base64" in params[1:]:
        compact = "".join(unquote(payload).split())
        try:
            data = base64.b64decode(compact + "=" * (-len(compact) % 4), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DataUriError(f"Malformed data URI: bad base64 payload ({e})")
    else:
        data = unquote_to_bytes(payload)
    if not data:
        raise DataUriError("Malformed data URI: empty payload")
    return mime, data


def _extension(url: str) -> str:
    if url[:5].lower() == "data:":
        return ""
    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    return path[dot:] if dot != -1 else ""


def is_svg(mime: str, url: str) -> bool:
    return mime == SVG_MIME or _extension(url) in (".svg", ".svgz")


def is_image(mime: str, url: str) -> bool:
    return mime.startswith("image/") or _extension(url) in IMAGE_EXTS


def is_transparency_capable(mime: str, url: str) -> bool:
    return mime in TRANSPARENT_MIMES or _extension(url) in TRANSPARENT_EXTS


def encode_image(data: bytes, transparent: bool) -> Tuple[bytes, str]:
    """Fit inside the viewport box (never upscaling) and re-encode as PNG or JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as src:
            src.seek(0)  # first frame of animations
            img = src.convert("RGBA") if transparent or src.mode in ("P", "LA", "RGBA", "PA") else src.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageError(f"Unsupported or corrupt image: {e}")
    img.thumbnail((VIEWPORT_WIDTH, VIEWPORT_HEIGHT), Image.Resampling.LANCZOS)
    out = io.BytesIO()
    if transparent:
        img.save(out, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
        return out.getvalue(), "image/png"
    if img.mode == "RGBA":
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[3])
        img = background
    img.save(out, format="JPEG", quality=JPEG_QUALITY, progressive=False)
    return out.getvalue(), "image/jpeg"


class ImageTranscoder:
    """Fetch/decode/resize/re-encode one image. ``fetcher`` is a PageFetcher, ``host`` a page host."""

    def __init__(self, fetcher, host=None, log=None, events=None):
        self.fetcher = fetcher
        self.host = host
        self.log = log
        self.events = events

    async def load(self, url: str) -> Tuple[str, bytes]:
        if url[:5].lower() == "data:":
            return parse_data_uri(url)
        res = await self.fetcher.fetch_image(url)
        return res.mime, res.content

    async def transcode(self, url: str) -> TranscodeResult:
        mime, data = await self.load(url)
        if not is_image(mime, url):
            log_to(self.log, f"[image] passthrough {mime or 'unknown'} ({len(data)} bytes)")
            self._emit(source=_source_kind(url), mime=mime, out_type=mime, bytes_in=len(data), bytes_out=len(data))
            return TranscodeResult(data, mime or "application/octet-stream")
        transparent = is_transparency_capable(mime, url)
        if is_svg(mime, url):
            if self.host is None:
                raise ImageError("No page host available to rasterize SVG")
            data = await self.host.rasterize_svg(data)
        body, out_type = await asyncio.to_thread(encode_image, data, transparent)
        log_to(self.log, f"[image] {mime or 'image'} -> {out_type} ({len(data)} -> {len(body)} bytes)")
        self._emit(source=_source_kind(url), mime=mime, out_type=out_type, bytes_in=len(data), bytes_out=len(body))
        return TranscodeResult(body, out_type)

    def _emit(self, **data):
        if self.events is not None:
            self.events('image', **data)


def _source_kind(url: str) -> str:
    return "data" if url[:5].lower() == "data:" else "remote"

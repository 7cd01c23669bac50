"""Proxy link codec: build, recognise and resolve the URLs CrashNet emits.

All rewritten references take one of two shapes::

    {proxy_base}/proxy?[read=true&]url={quoted absolute target}
    {proxy_base}/image_proxy?url={quoted absolute target or data URI}

``url`` and ``read`` are reserved parameters of the proxy endpoint and are
never forwarded to the target site.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote, urljoin, urlsplit, urlunsplit, parse_qsl, urlencode

from crashnet_core import InputError

RESERVED_PARAMS = ("url", "read")
FETCHABLE_SCHEMES = ("http", "https")
PASSTHROUGH_SCHEMES = ("mailto", "tel", "ftp", "news", "gopher", "data", "about", "sms")


def _base(proxy_base: Optional[str]) -> str:
    return (proxy_base or "").rstrip("/")


def proxy_url(proxy_base: Optional[str], target: str, read: bool = False) -> str:
    """Page proxy link for an absolute target URL."""
    read_param = "read=true&" if read else ""
    return f"{_base(proxy_base)}/proxy?{read_param}url={quote(target, safe='')}"


def image_proxy_url(proxy_base: Optional[str], target: str) -> str:
    return f"{_base(proxy_base)}/image_proxy?url={quote(target, safe='')}"


def proxy_endpoint(proxy_base: Optional[str]) -> str:
    return f"{_base(proxy_base)}/proxy"


def _is_endpoint(value: str, proxy_base: Optional[str], path: str, relative: bool = True) -> bool:
    """True when ``value`` is exactly ``path`` (optionally under ``proxy_base``) with an optional query."""
    v = (value or "").strip()
    if not v: return False
    base = _base(proxy_base)
    prefixes = [base + path] if base else []
    if relative or not base:
        prefixes.append(path)
    return any(v == p or v.startswith(p + "?") for p in prefixes)


def is_proxy_url(value: str, proxy_base: Optional[str] = None, allow_root: bool = False) -> bool:
    """True for references to the page proxy endpoint.

    With ``allow_root`` the index page (``/`` or the bare proxy base) counts too;
    form actions use that, anchors never do since ``/`` is the target site's root.
    """
    v = (value or "").strip()
    if allow_root and (v == "/" or (proxy_base and v.rstrip("/") == _base(proxy_base))):
        return True
    return _is_endpoint(v, proxy_base, "/proxy")


def is_image_proxy_url(value: str, proxy_base: Optional[str] = None) -> bool:
    """True for image proxy links this service emitted; with a base, only absolute ones qualify."""
    return _is_endpoint(value, proxy_base, "/image_proxy", relative=False)


def scheme_of(url: str) -> str:
    try:
        return urlsplit(url.strip()).scheme.lower()
    except ValueError:
        return ""


def resolve_url(href: str, base: str) -> str:
    """Resolve ``href`` against ``base``; raises InputError when no absolute http(s) URL results.

    Protocol-relative references (``//host/path``) inherit the scheme of ``base``.
    """
    ref = (href or "").strip()
    if not ref:
        raise InputError("Empty URL")
    try:
        if ref.startswith("//"):
            scheme = urlsplit(base).scheme or "http"
            absolute = f"{scheme}:{ref}"
        else:
            absolute = urljoin(base, ref)
        parts = urlsplit(absolute)
        parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InputError(f"Malformed URL {href!r}: {e}")
    if parts.scheme.lower() == "data":
        return absolute
    if parts.scheme.lower() not in FETCHABLE_SCHEMES or not parts.netloc:
        raise InputError(f"Cannot resolve {href!r} against {base!r}")
    return absolute


def normalize_target(url: str) -> str:
    """Normalise a user supplied target: trim and add ``http://`` when no scheme is given."""
    u = (url or "").strip()
    if not u:
        raise InputError("Missing URL")
    if u.startswith("//"):
        u = "http:" + u
    elif "://" not in u:
        u = "http://" + u
    try:
        parts = urlsplit(u)
        parts.port
    except ValueError as e:
        raise InputError(f"Malformed URL {url!r}: {e}")
    if parts.scheme.lower() not in FETCHABLE_SCHEMES or not parts.netloc:
        raise InputError(f"Unsupported URL: {url}")
    return u


def split_proxy_params(items: Iterable[Tuple[str, str]]) -> Tuple[Optional[str], bool, List[Tuple[str, str]]]:
    """Separate reserved proxy parameters from those destined for the target.

    Returns ``(url, read, forwarded)`` where ``forwarded`` keeps the original
    order and repetitions of non-reserved pairs.
    """
    url = None
    read = False
    forwarded: List[Tuple[str, str]] = []
    for k, v in items:
        if k == "url":
            if url is None: url = v
        elif k == "read":
            read = read or v == "true"
        else:
            forwarded.append((k, v))
    return url, read, forwarded


def with_query(target: str, extra: Iterable[Tuple[str, str]]) -> str:
    """Append forwarded query pairs to ``target`` (existing pairs are kept)."""
    extra = list(extra)
    if not extra:
        return target
    parts = urlsplit(target)
    pairs = parse_qsl(parts.query, keep_blank_values=True) + extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(pairs), parts.fragment))


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"

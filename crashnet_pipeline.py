"""Pipeline orchestration: fetch, snapshot, transform, serialize.

The stage order is the contract of this module. Each entry of
``WEB_STAGES`` / ``READ_STAGES`` is ``(name, fn)`` where ``fn(doc, ctx,
styles, log) -> int`` returns how many nodes it changed. Stages run one
after another on a single request's Document; a stage that raises is
reported as a ``stage_error`` event and the run continues with the next.
"""
from __future__ import annotations
import time, asyncio
from dataclasses import dataclass, field
from html import escape
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from crashnet_core import (
    MODE_READ, MODE_WEB, EventEmitter, InputError, ParseError, ServiceConfig, TransformCallbacks,
    TransformContext, _invoke, log_to,
)
from dom_tree import DOCTYPE, Document, parse_html
from attr_policy import remove_denied_tags, replace_modern_tags, strip_attributes, unwrap_disallowed
from image_rewrite import rewrite_images
from link_rewrite import rewrite_links
from media_substitute import substitute_media
from proxy_links import normalize_target, origin_of, proxy_endpoint, proxy_url, resolve_url, with_query
from srcset_resolver import resolve_pictures
from style_downgrade import downgrade_styles
from table_layout import convert_tables

Stage = Tuple[str, Callable[..., int]]

BODY_ATTRIBUTES = {"bgcolor": "white", "text": "black", "link": "blue", "vlink": "purple"}
# never pruned even when the snapshot says they are not rendered
PRUNE_EXEMPT = frozenset({"html", "head", "body", "source", "track", "input", "audio"})


def prune_hidden(doc: Document, ctx=None, styles: Optional[Mapping] = None, log=None) -> int:
    """Remove elements whose computed style is ``display: none`` or ``visibility: hidden``."""
    styles = styles or {}
    head = doc.head
    count = 0
    for nid in list(doc.iter_elements()):
        if nid not in doc or doc.tag(nid) in PRUNE_EXEMPT:
            continue
        style = styles.get(nid)
        if style is None or (style.display != "none" and style.visibility != "hidden"):
            continue
        if head is not None and head in doc.ancestors(nid):
            continue
        doc.remove(nid)
        count += 1
    if count: log_to(log, f"[prune] removed {count} hidden elements")
    return count


def set_body_attributes(doc: Document, ctx=None, styles=None, log=None) -> int:
    body = doc.body
    if body is None:
        return 0
    for k, v in BODY_ATTRIBUTES.items():
        doc.set_attr(body, k, v)
    return 1


def header_markup(target_url: str, proxy_base_url: str, read: bool) -> str:
    """Navigation bar placed at the top of every converted page."""
    base = (proxy_base_url or "").rstrip("/")
    toggle = proxy_url(base, target_url, read=not read)
    label = "Use Web" if read else "Use Reader"
    hidden_read = '<input type="hidden" name="read" value="true">' if read else ""
    return (
        '<center>'
        f'<form action="{escape(proxy_endpoint(base))}" method="get">'
        f'<a href="{escape(base)}/">Back to <font face="Courier">CrashNet</font></a>&nbsp;&nbsp;&nbsp;'
        f'<input type="text" name="url" value="{escape(target_url)}" size="30">'
        f'{hidden_read}'
        '<input type="submit" value="Go">&nbsp;&nbsp;&nbsp;'
        f'<a href="{escape(toggle)}">{label}</a>'
        '</form>'
        '<hr>'
        '</center>'
    )


def inject_header(doc: Document, ctx: TransformContext, styles=None, log=None) -> int:
    body = doc.body
    if body is None:
        return 0
    markup = header_markup(ctx.target_base_url, ctx.proxy_base_url, ctx.read)
    for i, nid in enumerate(doc.parse_fragment(markup)):
        doc.insert_child(body, i, nid)
    return 1


WEB_STAGES: List[Stage] = [
    ("prune", prune_hidden),                  # first: reads the snapshot before anything is rewritten
    ("styles", downgrade_styles),             # needs original tags to line up with the snapshot
    ("pictures", resolve_pictures),           # before images, which drop srcset with the other attributes
    ("tables", convert_tables),               # before denied-tag removal so cell content survives
    ("media", substitute_media),              # emits <img>/<a>, so before image and link rewriting
    ("images", rewrite_images),
    ("links", rewrite_links),
    ("modern_tags", replace_modern_tags),
    ("denied_tags", remove_denied_tags),
    ("attributes", strip_attributes),         # after every stage that reads data-/style attributes
    ("body", set_body_attributes),
    ("header", inject_header),                # last: already proxy-shaped, must not be rewritten
]

READ_STAGES: List[Stage] = [
    ("pictures", resolve_pictures),
    ("media", substitute_media),
    ("images", rewrite_images),
    ("links", rewrite_links),
    ("modern_tags", replace_modern_tags),     # before unwrapping so strong/em become b/i, not text
    ("unwrap", unwrap_disallowed),
    ("denied_tags", remove_denied_tags),
    ("attributes", strip_attributes),
    ("body", set_body_attributes),
    ("header", inject_header),
]


def run_stages(doc: Document, ctx: TransformContext, styles: Mapping, stages: List[Stage],
               callbacks: Optional[TransformCallbacks] = None, events: Optional[EventEmitter] = None) -> Dict[str, int]:
    """Run ``stages`` in order; returns the per-stage change counts."""
    def log(msg: str): _invoke(callbacks, 'log', msg)
    emit = events or EventEmitter()
    counts: Dict[str, int] = {}
    for i, (name, fn) in enumerate(stages, 1):
        if callbacks is not None and getattr(callbacks, 'is_canceled', None) and callbacks.is_canceled():
            emit('canceled', stage=name)
            log(f"[cancel] requested before {name} stage")
            raise asyncio.CancelledError()
        t = time.time()
        try:
            counts[name] = int(fn(doc, ctx, styles, log) or 0)
        except Exception as e:
            log(f"[stage] {name} failed: {e}")
            emit('stage_error', stage=name, error=str(e), error_type=type(e).__name__)
            continue
        _invoke(callbacks, 'stage', 'transform', int(i * 100 / len(stages)))
        emit('stage', stage=name, changed=counts[name], seconds=round(time.time() - t, 4))
    return counts


def style_map(doc: Document, stamped: Mapping) -> Mapping:
    """Re-key a host snapshot (by stamp) to node ids of ``doc``; read-only."""
    return MappingProxyType({doc.stamps[s]: st for s, st in stamped.items() if s in doc.stamps})


def document_base(doc: Document, page_url: str) -> str:
    """Base for relative references: the page's ``<base href>`` when usable, else its URL."""
    base = doc.find_first("base")
    href = (doc.get_attr(base, "href") or "").strip() if base is not None else ""
    if not href:
        return page_url
    try:
        return resolve_url(href, page_url)
    except InputError:
        return page_url


def build_reader_document(page: Document, article: Tuple[str, str], page_url: str) -> Document:
    """Fresh document holding only the extracted article (title falls back to the page's)."""
    title, content = article
    doc = parse_html(f"<html><head><title></title></head><body>{content}</body></html>")
    doc.set_title((title or "").strip() or page.title or page_url)
    return doc


def serialize(doc: Document, minify: bool = True, log=None) -> str:
    markup = doc.to_html(doctype=False)
    if minify:
        try:
            import minify_html
            markup = minify_html.minify(markup, minify_js=False, minify_css=False)
        except Exception as e:
            log_to(log, f"[minify] skipped: {e}")
    # minify_html would shorten the doctype, so it is prepended afterwards
    return DOCTYPE + "\n" + markup


def transform_document(doc: Document, ctx: TransformContext, styles: Mapping,
                       callbacks: Optional[TransformCallbacks] = None,
                       events: Optional[EventEmitter] = None) -> Dict[str, int]:
    stages = READ_STAGES if ctx.read else WEB_STAGES
    counts = run_stages(doc, ctx, styles, stages, callbacks, events)
    if not doc.title:
        doc.set_title(ctx.target_base_url)
    return counts


@dataclass
class ConvertResult:
    body: bytes
    content_type: str
    is_html: bool
    final_url: str
    title: str = ""
    counts: Dict[str, int] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    run_id: Optional[str] = None


def _parse_page(html: str) -> Document:
    try:
        return parse_html(html)
    except Exception as e:
        raise ParseError(f"Could not parse page: {e}")


async def convert_url(url: str, *, read: bool = False, proxy_base_url: str, host, fetcher, reader=None,
                      config: Optional[ServiceConfig] = None, callbacks: Optional[TransformCallbacks] = None,
                      events: Optional[EventEmitter] = None, method: str = "GET",
                      params: Optional[List[Tuple[str, str]]] = None,
                      form: Optional[List[Tuple[str, str]]] = None) -> ConvertResult:
    """Fetch ``url`` and convert it for a vintage browser.

    ``params`` are forwarded query pairs (GET) and ``form`` the forwarded body
    (POST). Non-HTML responses come back untouched. Raises InputError,
    FetchError or ParseError.
    """
    cfg = config or ServiceConfig()
    events = events or EventEmitter.for_config(cfg, callbacks)
    def log(msg: str): _invoke(callbacks, 'log', msg)
    t0 = time.time()
    target = with_query(normalize_target(url), params or [])
    mode = MODE_READ if read else MODE_WEB
    events('start', url=target, mode=mode, method=method.upper())
    _invoke(callbacks, 'stage', 'fetch', 0)

    res = await fetcher.fetch(target, method=method, form=form)
    t_fetch = time.time()
    _invoke(callbacks, 'stage', 'fetch', 100)
    log(f"[fetch] {res.status} {res.mime or 'unknown'} {len(res.content)} bytes from {res.final_url}")
    timings = {'fetch_seconds': round(t_fetch - t0, 4)}
    if not res.is_html:
        events('passthrough', url=res.final_url, content_type=res.content_type, bytes=len(res.content))
        timings['total_seconds'] = round(time.time() - t0, 4)
        return ConvertResult(res.content, res.content_type or "application/octet-stream", False,
                             res.final_url, timings=timings, run_id=events.run_id)

    html = res.text
    if read:
        if reader is None:
            raise ParseError("No reader configured")
        page = await asyncio.to_thread(_parse_page, html)
        article = await asyncio.to_thread(reader.extract, html, res.final_url)
        if not article:
            raise ParseError("Could not parse article content")
        doc = build_reader_document(page, article, res.final_url)
        base = document_base(page, res.final_url)
        styles: Mapping = MappingProxyType({})
    else:
        snap = await host.snapshot(html, res.final_url)
        doc = await asyncio.to_thread(_parse_page, snap.html)
        styles = style_map(doc, snap.styles)
        base = document_base(doc, res.final_url)
    t_host = time.time()
    timings['host_seconds'] = round(t_host - t_fetch, 4)

    ctx = TransformContext(target_base_url=base, origin_base_url=origin_of(res.final_url),
                           proxy_base_url=proxy_base_url, mode=mode)

    def _transform() -> Tuple[Dict[str, int], str]:
        counts = transform_document(doc, ctx, styles, callbacks, events)
        return counts, serialize(doc, cfg.minify, log)

    counts, markup = await asyncio.to_thread(_transform)
    timings['transform_seconds'] = round(time.time() - t_host, 4)
    timings['total_seconds'] = round(time.time() - t0, 4)
    body = markup.encode("utf-8")
    events('summary', url=res.final_url, mode=mode, bytes=len(body), counts=counts, timings=timings)
    return ConvertResult(body, "text/html; charset=utf-8", True, res.final_url, doc.title,
                         counts, timings, events.run_id)

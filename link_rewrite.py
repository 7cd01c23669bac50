"""Route anchors and forms through the page proxy."""
from __future__ import annotations

from crashnet_core import InputError, TransformContext, log_to
from dom_tree import Document
from proxy_links import (
    PASSTHROUGH_SCHEMES, is_proxy_url, proxy_endpoint, proxy_url, resolve_url, scheme_of,
)


def rewrite_href(href: str, ctx: TransformContext) -> str:
    """Proxy link for ``href``; raises InputError when it cannot be resolved."""
    return proxy_url(ctx.proxy_base_url, resolve_url(href, ctx.target_base_url), read=ctx.read)


def rewrite_anchor(doc: Document, nid: int, ctx: TransformContext) -> str:
    """Returns what happened: 'removed', 'kept' or 'proxied'."""
    href = doc.get_attr(nid, "href")
    if href is None:
        return "kept"
    h = href.strip()
    if h.lower().startswith("javascript:"):
        doc.remove(nid)
        return "removed"
    if not h or h.startswith("#"):
        return "kept"
    if scheme_of(h) in PASSTHROUGH_SCHEMES:
        return "kept"
    doc.set_attr(nid, "href", rewrite_href(h, ctx))
    return "proxied"


def rewrite_form(doc: Document, nid: int, ctx: TransformContext) -> bool:
    action = doc.get_attr(nid, "action")
    if action is not None and is_proxy_url(action, ctx.proxy_base_url, allow_root=True):
        return False
    absolute = resolve_url(action.strip() if action and action.strip() else ctx.target_base_url, ctx.target_base_url)
    method = (doc.get_attr(nid, "method") or "get").strip().lower()
    if method == "post":
        doc.set_attr(nid, "action", proxy_url(ctx.proxy_base_url, absolute, read=ctx.read))
        doc.set_attr(nid, "method", "post")
        return True
    # a GET submission replaces the action's query, so the proxy parameters travel as fields
    doc.set_attr(nid, "action", proxy_endpoint(ctx.proxy_base_url))
    doc.set_attr(nid, "method", "get")
    hidden = [("url", absolute)]
    if ctx.read:
        hidden.append(("read", "true"))
    for name, value in reversed(hidden):
        doc.insert_child(nid, 0, doc.create_element("input", {"type": "hidden", "name": name, "value": value}))
    return True


def rewrite_links(doc: Document, ctx: TransformContext, styles=None, log=None) -> int:
    changed = 0
    for a in doc.find_all("a"):
        if a not in doc:
            continue
        try:
            if rewrite_anchor(doc, a, ctx) != "kept":
                changed += 1
        except InputError as e:
            log_to(log, f"[links] anchor left unchanged: {e}")
    for form in doc.find_all("form"):
        try:
            if rewrite_form(doc, form, ctx):
                changed += 1
        except InputError as e:
            log_to(log, f"[links] form left unchanged: {e}")
    return changed

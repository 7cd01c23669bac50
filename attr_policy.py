"""Tag and attribute policy for HTML 3.2 output.

Everything here is plain data consulted by a small set of functions; there
are no per-attribute special cases outside the tables.
"""
from __future__ import annotations

from dom_tree import Document
from crashnet_core import log_to

# Attribute names starting with any of these are dropped (event handlers, data-*, aria-*, namespaces).
DENIED_ATTRIBUTE_PREFIXES = ("aria-", "data-", "on", "xmlns", "xlink:", "xml:")

# Exact attribute names introduced after 1995 (or meaningless without CSS/JS).
DENIED_ATTRIBUTE_NAMES = frozenset({
    "style", "class", "role", "itemscope", "itemtype", "itemprop", "itemid", "itemref",
    "srcset", "sizes", "integrity", "crossorigin", "loading", "fetchpriority", "decoding",
    "rel", "async", "defer", "nomodule", "contenteditable", "spellcheck", "autocomplete",
    "autocapitalize", "autofocus", "enterkeyhint", "inputmode", "is", "nonce", "part", "slot",
    "translate", "playsinline", "autoplay", "controls", "loop", "muted", "poster", "preload",
    "importance", "intrinsicsize", "referrerpolicy", "tabindex", "viewbox", "preserveaspectratio",
    "allowfullscreen", "allowpaymentrequest", "ping", "sandbox", "hidden", "draggable",
    "accesskey", "dir", "lang", "title", "download", "placeholder", "required", "pattern",
    "min", "max", "step", "form", "formaction", "formmethod", "list", "srcdoc", "media",
})

# Elements removed together with their content.
DENIED_TAGS = frozenset({
    "script", "noscript", "style", "link", "meta", "base", "iframe", "frame", "frameset",
    "object", "embed", "applet", "param", "canvas", "template", "source", "track", "dialog",
    "svg", "math", "video", "audio", "portal", "slot", "datalist", "output", "progress",
    "meter",
})

# Elements replaced by a legacy equivalent (attributes and children kept).
MODERN_TAG_RENAMES = {
    "strong": "b",
    "em": "i",
    "mark": "b",
    "ins": "u",
    "del": "strike",
    "s": "strike",
    "header": "div",
    "footer": "div",
    "nav": "div",
    "section": "div",
    "article": "div",
    "aside": "div",
    "main": "div",
    "figure": "div",
    "figcaption": "div",
    "details": "div",
    "summary": "div",
    "hgroup": "div",
    "search": "div",
    "time": "span",
    "abbr": "span",
    "bdi": "span",
    "bdo": "span",
    "data": "span",
    "label": "span",
    "fieldset": "div",
    "legend": "b",
}

# Elements replaced by their children.
UNWRAP_TAGS = frozenset({"picture"})

# Reader mode keeps only these; anything else not denied outright is unwrapped.
READER_ALLOWED_TAGS = frozenset({
    "html", "head", "title", "body", "a", "b", "i", "u", "tt", "strike", "big", "small", "sub",
    "sup", "p", "br", "hr", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "dl", "dt",
    "dd", "blockquote", "pre", "code", "kbd", "samp", "var", "cite", "dfn", "address", "img",
    "table", "caption", "tr", "td", "th", "div", "span", "center", "font", "form", "input",
    "select", "option", "textarea", "spacer",
})


def is_denied_attribute(name: str) -> bool:
    n = name.lower()
    return n in DENIED_ATTRIBUTE_NAMES or n.startswith(DENIED_ATTRIBUTE_PREFIXES)


def sanitize_element(doc: Document, nid: int) -> int:
    """Drop denied attributes from one element; returns how many were removed."""
    attrs = doc.attrs(nid)
    doomed = [k for k in attrs if is_denied_attribute(k)]
    for k in doomed:
        del attrs[k]
    return len(doomed)


def strip_attributes(doc: Document, ctx=None, styles=None, log=None) -> int:
    """Apply the attribute policy to every element (idempotent)."""
    removed = 0
    for nid in list(doc.iter_elements()):
        removed += sanitize_element(doc, nid)
    if removed: log_to(log, f"[policy] stripped {removed} attributes")
    return removed


def remove_denied_tags(doc: Document, ctx=None, styles=None, log=None) -> int:
    count = 0
    for nid in list(doc.iter_elements()):
        if nid in doc and doc.tag(nid) in DENIED_TAGS:
            doc.remove(nid)
            count += 1
    if count: log_to(log, f"[policy] removed {count} unsupported elements")
    return count


def replace_modern_tags(doc: Document, ctx=None, styles=None, log=None) -> int:
    """Rename HTML5 elements to legacy ones and turn form buttons into submit inputs."""
    count = 0
    for nid in list(doc.iter_elements()):
        if nid not in doc:
            continue
        tag = doc.tag(nid)
        if tag == "button" and doc.closest(nid, ("form",)) is not None:
            _button_to_submit(doc, nid)
        elif tag in MODERN_TAG_RENAMES:
            doc.rename(nid, MODERN_TAG_RENAMES[tag])
        elif tag in UNWRAP_TAGS:
            doc.unwrap(nid)
        else:
            continue
        count += 1
    return count


def _button_to_submit(doc: Document, nid: int):
    label = " ".join(doc.text_content(nid).split()) or "Submit"
    attrs = {"type": "submit", "value": label}
    for keep in ("name", "disabled"):
        if doc.has_attr(nid, keep):
            attrs[keep] = doc.get_attr(nid, keep)
    doc.replace(nid, doc.create_element("input", attrs))


def unwrap_disallowed(doc: Document, ctx=None, styles=None, log=None) -> int:
    """Reader mode: unwrap every element outside ``READER_ALLOWED_TAGS`` (denied ones are removed)."""
    count = 0
    for nid in list(doc.iter_elements()):
        if nid not in doc:
            continue
        tag = doc.tag(nid)
        if tag in READER_ALLOWED_TAGS:
            continue
        if tag in DENIED_TAGS:
            doc.remove(nid)
        else:
            doc.unwrap(nid)
        count += 1
    return count

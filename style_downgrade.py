"""Express computed style as HTML 3.2 presentational markup.

First pass reads each element's ComputedStyle and records what it needs as
attributes: ``bgcolor``/``border`` (and table spacing) directly, font,
emphasis and display as transient ``data-crashnet-*`` markers. The second
pass turns markers into ``<font>``, ``<b>``, ``<i>`` and ``<u>`` wrappers
(font innermost) and drops the markers.
"""
from __future__ import annotations

import re
from typing import Dict, Mapping, Optional

from crashnet_core import log_to
from dom_tree import Document

MARK_FONT_COLOR = "data-crashnet-font-color"
MARK_FONT_FACE = "data-crashnet-font-face"
MARK_FONT_SIZE = "data-crashnet-font-size"
MARK_FONT = "data-crashnet-font"
MARK_DISPLAY = "data-crashnet-display"
MARK_BOLD = "data-crashnet-bold"
MARK_ITALIC = "data-crashnet-italic"
MARK_UNDERLINE = "data-crashnet-underline"
MARKERS = (MARK_FONT_COLOR, MARK_FONT_FACE, MARK_FONT_SIZE, MARK_FONT, MARK_DISPLAY,
           MARK_BOLD, MARK_ITALIC, MARK_UNDERLINE)

# Not rendered, or rendered by the host itself; nothing inside them is decorated.
SKIP_SUBTREE_TAGS = frozenset({"head", "title", "script", "style", "noscript", "template", "option",
                               "optgroup", "select", "textarea", "meta", "link", "base", "svg"})
# Never decorated themselves, but their descendants are.
SKIP_SELF_TAGS = frozenset({"html"})
# Wrapping these would break their content model (rows inside tables, items inside lists).
NO_WRAP_TAGS = frozenset({"html", "body", "table", "thead", "tbody", "tfoot", "tr", "colgroup", "col",
                          "ul", "ol", "dl", "menu", "dir", "picture", "video", "audio", "br", "hr",
                          "img", "input"})
INLINE_DISPLAYS = frozenset({"inline", "inline-block", "inline-flex"})

SANS_RE = re.compile(r"arial|helvetica|sans-serif|system-ui|roboto|verdana|tahoma|trebuchet|calibri|segoe ui|open sans|noto sans|-apple-system", re.I)
MONO_RE = re.compile(r"monospace|courier|consolas|menlo|monaco|source code|fira code|ubuntu mono|andale|lucida console", re.I)
DISPLAY_RE = re.compile(r"impact|comic sans|futura|gill sans|optima|lucida grande|avenir|copperplate|palatino", re.I)

_RGB_RE = re.compile(r"rgba?\s*\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*(?:,\s*([\d.]+)\s*)?\)", re.I)
_NAMED_RE = re.compile(r"^[a-z]+$", re.I)
_INT_RE = re.compile(r"^\s*(-?\d+)")
_FLOAT_RE = re.compile(r"^\s*(-?\d*\.?\d+)")

DEFAULT_COLORS = ("#000000", "black")
DEFAULT_SIZE = "4"
DEFAULT_FACES = ("times", "times new roman", "serif")


def rgb_to_hex(value: str) -> str:
    """``rgb(255, 0, 0)`` -> ``#ff0000``; named colors and unknown syntax pass through."""
    v = (value or "").strip()
    if _NAMED_RE.match(v):
        return v
    m = _RGB_RE.search(v)
    if not m:
        return v
    r, g, b = (min(255, int(m.group(i))) for i in (1, 2, 3))
    return "#%02x%02x%02x" % (r, g, b)


def is_transparent(value: str) -> bool:
    v = (value or "").strip().lower()
    if not v or v == "transparent":
        return True
    m = _RGB_RE.search(v)
    return bool(m and m.group(4) is not None and float(m.group(4)) == 0.0)


def legacy_font_size(value: str) -> str:
    """CSS px size -> ``<font size>`` 1..7 ("" when not numeric)."""
    m = _FLOAT_RE.match(value or "")
    if not m:
        return ""
    px = float(m.group(1))
    if px <= 9: return "1"
    if px <= 11: return "2"
    if px <= 13: return "3"
    if px <= 16: return "4"
    if px <= 19: return "5"
    if px <= 24: return "6"
    return "7"


def legacy_font_face(family: str) -> str:
    first = (family or "").split(",")[0].strip().strip("\"'").lower()
    if SANS_RE.search(first): return "Geneva"
    if MONO_RE.search(first): return "Monaco"
    if DISPLAY_RE.search(first): return "Chicago"
    return "Times"


def _int_px(value: str) -> int:
    m = _INT_RE.match(value or "")
    return int(m.group(1)) if m else 0


def _float_px(value: str) -> float:
    m = _FLOAT_RE.match(value or "")
    return float(m.group(1)) if m else 0.0


def font_attributes(style) -> Optional[Dict[str, str]]:
    """Legacy font attributes for a style, or None when every value is a default."""
    attrs: Dict[str, str] = {}
    if style.color:
        attrs["color"] = rgb_to_hex(style.color)
    if style.font_family:
        attrs["face"] = legacy_font_face(style.font_family)
    size = legacy_font_size(style.font_size)
    if size:
        attrs["size"] = size
    default_color = attrs.get("color", "black").lower() in DEFAULT_COLORS
    default_size = attrs.get("size", DEFAULT_SIZE) == DEFAULT_SIZE
    default_face = attrs.get("face", "times").lower() in DEFAULT_FACES
    if not attrs or (default_color and default_size and default_face):
        return None
    return attrs


def _in_skipped_subtree(doc: Document, nid: int) -> bool:
    tag = doc.tag(nid)
    if tag in SKIP_SELF_TAGS or tag in SKIP_SUBTREE_TAGS:
        return True
    return doc.closest(nid, SKIP_SUBTREE_TAGS) is not None


def mark_element(doc: Document, nid: int, style) -> None:
    tag = doc.tag(nid)
    if doc.has_direct_text(nid):
        font = font_attributes(style)
        if font:
            doc.set_attr(nid, MARK_FONT, "true")
            doc.set_attr(nid, MARK_FONT_COLOR, font.get("color", ""))
            doc.set_attr(nid, MARK_FONT_FACE, font.get("face", ""))
            doc.set_attr(nid, MARK_FONT_SIZE, font.get("size", ""))
    if style.display:
        doc.set_attr(nid, MARK_DISPLAY, style.display)
    if not is_transparent(style.background_color):
        doc.set_attr(nid, "bgcolor", rgb_to_hex(style.background_color))
    widths = [_float_px(w) for w in (style.border_top_width, style.border_right_width,
                                     style.border_bottom_width, style.border_left_width)]
    if any(w > 0 for w in widths):
        doc.set_attr(nid, "border", str(max(1, int(max(widths)))))
        if tag == "table":
            if style.border_color:
                doc.set_attr(nid, "bordercolor", rgb_to_hex(style.border_color))
            if style.border_collapse == "separate":
                doc.set_attr(nid, "cellspacing", str(_int_px(style.border_spacing) or 2))
            else:
                doc.set_attr(nid, "cellspacing", "0")
            doc.set_attr(nid, "cellpadding", str(_int_px(style.padding) or 1))
    if _int_px(style.font_weight) >= 600 and tag not in ("b", "strong"):
        doc.set_attr(nid, MARK_BOLD, "true")
    if style.font_style in ("italic", "oblique") and tag not in ("i", "em"):
        doc.set_attr(nid, MARK_ITALIC, "true")
    # links are underlined by every legacy browser already
    if "underline" in (style.text_decoration or "") and tag not in ("u", "a"):
        doc.set_attr(nid, MARK_UNDERLINE, "true")


def _wrap_if_needed(doc: Document, nid: int, tag: str):
    if doc.tag(nid) in NO_WRAP_TAGS:
        return
    if not doc.text_content(nid).strip():
        return
    if doc.element_children(nid, tag):
        return
    doc.wrap_children(nid, tag)


def materialize_markers(doc: Document, log=None) -> int:
    """Second pass: markers -> wrapper elements, then drop every marker."""
    changed = 0
    for nid in list(doc.iter_elements()):
        if doc.get_attr(nid, MARK_FONT) != "true":
            continue
        attrs = {k: doc.get_attr(nid, m) for k, m in (("color", MARK_FONT_COLOR), ("face", MARK_FONT_FACE),
                                                     ("size", MARK_FONT_SIZE)) if (doc.get_attr(nid, m) or "").strip()}
        if doc.tag(nid) not in NO_WRAP_TAGS:
            doc.wrap_children(nid, "font", attrs)
            changed += 1
    for nid in list(doc.iter_elements()):
        if doc.tag(nid) == "div" and doc.get_attr(nid, MARK_DISPLAY) in INLINE_DISPLAYS:
            doc.rename(nid, "span")
            changed += 1
    for marker, wrapper in ((MARK_BOLD, "b"), (MARK_ITALIC, "i"), (MARK_UNDERLINE, "u")):
        for nid in list(doc.iter_elements()):
            if doc.get_attr(nid, marker) == "true":
                try:
                    _wrap_if_needed(doc, nid, wrapper)
                except Exception as e:
                    log_to(log, f"[style] could not wrap #{nid} in <{wrapper}>: {e}")
    for nid in doc.iter_elements():
        for m in MARKERS:
            doc.remove_attr(nid, m)
    return changed


def downgrade_styles(doc: Document, ctx=None, styles: Optional[Mapping[int, object]] = None, log=None) -> int:
    """Both passes over every element that has a snapshot entry."""
    if not styles:
        return 0
    marked = 0
    for nid in list(doc.iter_elements()):
        style = styles.get(nid)
        if style is None or _in_skipped_subtree(doc, nid):
            continue
        try:
            mark_element(doc, nid, style)
            marked += 1
        except Exception as e:
            log_to(log, f"[style] element #{nid} skipped: {e}")
    materialize_markers(doc, log)
    return marked

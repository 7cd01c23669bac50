"""Replace video, audio and inline SVG with things a vintage browser can show."""
from __future__ import annotations

import base64
from typing import Mapping, Optional

from crashnet_core import InputError, TransformContext, log_to
from dom_tree import Document
from image_rewrite import constrain_dimensions, parse_dimension
from proxy_links import image_proxy_url, resolve_url

VIDEO_DEFAULT_SIZE = (320, 240)
SVG_DEFAULT_SIZE = 100
SVG_NS = "http://www.w3.org/2000/svg"
FALLBACK_SVG = ('<svg width="100" height="100" xmlns="http://www.w3.org/2000/svg">'
                '<rect width="100%" height="100%" fill="#ddd"/></svg>')

# html.parser lowercases names; SVG is case sensitive once it becomes a standalone XML document.
SVG_TAG_CASE = {t.lower(): t for t in (
    "altGlyph", "altGlyphDef", "altGlyphItem", "animateColor", "animateMotion", "animateTransform",
    "clipPath", "feBlend", "feColorMatrix", "feComponentTransfer", "feComposite", "feConvolveMatrix",
    "feDiffuseLighting", "feDisplacementMap", "feDistantLight", "feDropShadow", "feFlood", "feFuncA",
    "feFuncB", "feFuncG", "feFuncR", "feGaussianBlur", "feImage", "feMerge", "feMergeNode",
    "feMorphology", "feOffset", "fePointLight", "feSpecularLighting", "feSpotLight", "feTile",
    "feTurbulence", "foreignObject", "glyphRef", "linearGradient", "radialGradient", "textPath",
)}
SVG_ATTR_CASE = {a.lower(): a for a in (
    "attributeName", "attributeType", "baseFrequency", "baseProfile", "calcMode", "clipPathUnits",
    "diffuseConstant", "edgeMode", "filterUnits", "glyphRef", "gradientTransform", "gradientUnits",
    "kernelMatrix", "kernelUnitLength", "keyPoints", "keySplines", "keyTimes", "lengthAdjust",
    "limitingConeAngle", "markerHeight", "markerUnits", "markerWidth", "maskContentUnits", "maskUnits",
    "numOctaves", "pathLength", "patternContentUnits", "patternTransform", "patternUnits", "pointsAtX",
    "pointsAtY", "pointsAtZ", "preserveAlpha", "preserveAspectRatio", "primitiveUnits", "refX", "refY",
    "repeatCount", "repeatDur", "requiredExtensions", "requiredFeatures", "specularConstant",
    "specularExponent", "spreadMethod", "startOffset", "stdDeviation", "stitchTiles", "surfaceScale",
    "systemLanguage", "tableValues", "targetX", "targetY", "textLength", "viewBox", "viewTarget",
    "xChannelSelector", "yChannelSelector", "zoomAndPan",
)}


def _size(attr_value: Optional[str], computed: Optional[str]) -> Optional[int]:
    return parse_dimension(attr_value) or parse_dimension(computed)


def video_placeholder(doc: Document, width: int, height: int) -> int:
    table = doc.create_element("table", {"width": str(width), "height": str(height), "bgcolor": "black"})
    tr = doc.append_child(table, doc.create_element("tr"))
    td = doc.append_child(tr, doc.create_element("td", {"align": "center", "valign": "middle"}))
    font = doc.append_child(td, doc.create_element("font", {"color": "white"}))
    doc.append_child(font, doc.create_text("Video is not supported"))
    return table


def replace_video(doc: Document, nid: int, style=None) -> int:
    cw = style.width if style is not None else None
    ch = style.height if style is not None else None
    width = _size(doc.get_attr(nid, "width"), cw) or VIDEO_DEFAULT_SIZE[0]
    height = _size(doc.get_attr(nid, "height"), ch) or VIDEO_DEFAULT_SIZE[1]
    width, height = constrain_dimensions(width, height)
    return doc.replace(nid, video_placeholder(doc, width, height))


def audio_source(doc: Document, nid: int) -> str:
    for source in doc.find_all("source", nid):
        src = (doc.get_attr(source, "src") or "").strip()
        if src:
            return src
    return (doc.get_attr(nid, "src") or "").strip()


def replace_audio(doc: Document, nid: int, ctx: TransformContext, log=None) -> Optional[int]:
    src = audio_source(doc, nid)
    if not src:
        doc.remove(nid)
        return None
    try:
        absolute = resolve_url(src, ctx.target_base_url)
    except InputError as e:
        log_to(log, f"[media] audio source unusable: {e}")
        return doc.replace(nid, doc.create_text("Audio not available"))
    link = doc.create_element("a", {"href": absolute})
    doc.append_child(link, doc.create_text("Download Audio"))
    return doc.replace(nid, link)


def serialize_svg(doc: Document, nid: int) -> str:
    """Standalone SVG document for the subtree at ``nid`` (names re-cased, namespace added)."""
    node = doc.node(nid)
    saved = []
    for cur in doc.iter_elements(nid, include_self=True):
        n = doc.node(cur)
        saved.append((n, n.tag, dict(n.attrs)))
        n.tag = SVG_TAG_CASE.get(n.tag, n.tag)
        n.attrs = {SVG_ATTR_CASE.get(k, k): v for k, v in n.attrs.items()}
    try:
        if "xmlns" not in node.attrs:
            node.attrs = {"xmlns": SVG_NS, **node.attrs}
        markup = doc.to_html(nid, doctype=False)
    finally:
        for n, tag, attrs in saved:
            n.tag, n.attrs = tag, attrs
    if not markup.strip():
        raise ValueError("empty svg")
    return markup


def svg_data_uri(markup: str) -> str:
    return "data:image/svg+xml;base64," + base64.b64encode(markup.encode("utf-8")).decode("ascii")


def replace_svg(doc: Document, nid: int, ctx: TransformContext, style=None, log=None) -> int:
    cw = style.width if style is not None else None
    ch = style.height if style is not None else None
    width = parse_dimension(cw) or parse_dimension(doc.get_attr(nid, "width")) or SVG_DEFAULT_SIZE
    height = parse_dimension(ch) or parse_dimension(doc.get_attr(nid, "height")) or SVG_DEFAULT_SIZE
    try:
        markup = serialize_svg(doc, nid)
    except Exception as e:
        log_to(log, f"[media] svg #{nid} replaced by placeholder: {e}")
        markup = FALLBACK_SVG
    width, height = constrain_dimensions(width, height)
    img = doc.create_element("img", {
        "src": image_proxy_url(ctx.proxy_base_url, svg_data_uri(markup)),
        "alt": "SVG Image",
        "width": str(width),
        "height": str(height),
    })
    return doc.replace(nid, img)


def substitute_media(doc: Document, ctx: TransformContext, styles: Optional[Mapping] = None, log=None) -> int:
    styles = styles or {}
    count = 0
    for nid in doc.find_all(("video", "audio", "svg")):
        if nid not in doc or not doc.is_attached(nid):
            continue
        tag = doc.tag(nid)
        try:
            if tag == "video":
                replace_video(doc, nid, styles.get(nid))
            elif tag == "audio":
                replace_audio(doc, nid, ctx, log)
            else:
                replace_svg(doc, nid, ctx, styles.get(nid), log)
            count += 1
        except Exception as e:
            log_to(log, f"[media] <{tag}> #{nid} left unchanged: {e}")
    return count

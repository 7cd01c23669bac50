"""Route ``<img>`` sources through the image proxy and bound their dimensions."""
from __future__ import annotations

import re
from typing import Mapping, Optional, Tuple

from crashnet_core import TARGET_WIDTH, InputError, TransformContext, log_to
from dom_tree import Document
from proxy_links import image_proxy_url, is_image_proxy_url, resolve_url
from srcset_resolver import select_from_srcset

WEB_IMAGE_ATTRS = ("src", "alt", "width", "height", "border")
LAZY_SRC_ATTRS = ("data-src", "data-original", "data-lazy-src")
_NUM_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:px)?\s*$", re.I)


def parse_dimension(value: Optional[str]) -> Optional[int]:
    """``"320"``/``"320px"`` -> 320; percentages and junk -> None."""
    m = _NUM_RE.match(value or "")
    return int(round(float(m.group(1)))) if m else None


def constrain_dimensions(width: Optional[int], height: Optional[int],
                         target: int = TARGET_WIDTH) -> Tuple[int, Optional[int]]:
    """Clamp width to ``target`` scaling height to match; a missing width becomes ``target``."""
    if width is None or width <= 0:
        return target, height
    if width > target:
        scaled = round(height * target / width) if height else height
        return target, scaled
    return width, height


def image_source(doc: Document, nid: int) -> str:
    src = (doc.get_attr(nid, "src") or "").strip()
    if not src:
        src = select_from_srcset(doc.get_attr(nid, "srcset") or "")
    if not src:
        src = next((doc.get_attr(nid, a).strip() for a in LAZY_SRC_ATTRS if (doc.get_attr(nid, a) or "").strip()), "")
    return src


def apply_size(doc: Document, nid: int, width: Optional[str], height: Optional[str]):
    w, h = constrain_dimensions(parse_dimension(width), parse_dimension(height))
    doc.set_attr(nid, "width", str(w))
    if h is not None:
        doc.set_attr(nid, "height", str(h))
    else:
        doc.remove_attr(nid, "height")


def _computed_size(style) -> Tuple[Optional[str], Optional[str]]:
    if style is None:
        return None, None
    return style.width or None, style.height or None


def rewrite_image(doc: Document, nid: int, ctx: TransformContext, style=None) -> bool:
    """Returns False when the image has no usable source."""
    src = image_source(doc, nid)
    if not src:
        return False
    if not is_image_proxy_url(src, ctx.proxy_base_url):
        src = image_proxy_url(ctx.proxy_base_url, resolve_url(src, ctx.target_base_url))
    doc.set_attr(nid, "src", src)
    cw, ch = _computed_size(style)
    width = doc.get_attr(nid, "width")
    height = doc.get_attr(nid, "height")
    if parse_dimension(width) is None:
        width = cw
    if parse_dimension(height) is None:
        height = ch
    apply_size(doc, nid, width, height)
    return True


def rebuild_image(doc: Document, nid: int) -> int:
    attrs = {k: doc.get_attr(nid, k) for k in WEB_IMAGE_ATTRS if doc.get_attr(nid, k)}
    return doc.replace(nid, doc.create_element("img", attrs))


def rewrite_images(doc: Document, ctx: TransformContext, styles: Optional[Mapping] = None, log=None) -> int:
    changed = 0
    styles = styles or {}
    for img in doc.find_all("img"):
        try:
            if not rewrite_image(doc, img, ctx, styles.get(img)):
                if not ctx.read:
                    doc.remove(img)
                    changed += 1
                continue
            changed += 1
        except InputError as e:
            log_to(log, f"[image] source left unchanged: {e}")
            apply_size(doc, img, doc.get_attr(img, "width"), doc.get_attr(img, "height"))
        if not ctx.read:
            rebuild_image(doc, img)
    return changed

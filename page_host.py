"""Page hosts: turn fetched HTML into rendered HTML plus per-element computed style.

Two providers share one async interface::

    snapshot = await host.snapshot(html, base_url)   # PageSnapshot
    png      = await host.rasterize_svg(svg_bytes)   # bytes
    await host.shutdown()

``PlaywrightPageHost`` keeps one Chromium instance for the life of the
service and opens an isolated browser context per call. ``InlineStylePageHost``
needs no browser: it derives style from inline ``style`` attributes, tag
defaults and inheritance, which is enough for static pages and for tests.

Every element of the returned HTML carries a ``data-crashnet-id`` stamp;
``PageSnapshot.styles`` is keyed by that stamp.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag
import tinycss2
from tinycss2.color3 import RGBA, parse_color
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from crashnet_core import (
    VIEWPORT_WIDTH, VIEWPORT_HEIGHT, DEFAULT_NAV_TIMEOUT_MS, DEFAULT_USER_AGENT,
    ImageError, ParseError, ServiceConfig, log_to,
)
from dom_tree import STAMP_ATTR


class ComputedStyle(BaseModel):
    """Resolved visual properties of one element, as strings in CSS computed-value syntax."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    color: str = ""
    background_color: str = ""
    font_family: str = ""
    font_size: str = ""
    font_weight: str = ""
    font_style: str = ""
    text_decoration: str = ""
    display: str = ""
    visibility: str = ""
    border_top_width: str = ""
    border_right_width: str = ""
    border_bottom_width: str = ""
    border_left_width: str = ""
    border_color: str = ""
    border_collapse: str = ""
    border_spacing: str = ""
    padding: str = ""
    width: str = ""
    height: str = ""


@dataclass(frozen=True)
class PageSnapshot:
    html: str
    styles: Mapping[str, ComputedStyle]


def _freeze(raw: Dict[str, dict]) -> Mapping[str, ComputedStyle]:
    return MappingProxyType({k: v if isinstance(v, ComputedStyle) else ComputedStyle.model_validate(v)
                             for k, v in raw.items()})


_BASE_RE = re.compile(r"<base\b", re.IGNORECASE)
_HEAD_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)


def with_base_href(html: str, base_url: str) -> str:
    """Insert ``<base href>`` so relative stylesheets resolve (pages with their own base are left alone)."""
    if not base_url or _BASE_RE.search(html):
        return html
    tag = '<base href="%s">' % base_url.replace('"', "%22")
    m = _HEAD_RE.search(html)
    if m:
        return html[:m.end()] + tag + html[m.end():]
    return tag + html


# Runs inside the page: stamp every element and collect its computed style.
_COLLECT_JS = """
(attr) => {
  const out = {};
  let n = 0;
  for (const el of document.querySelectorAll('*')) {
    const id = String(++n);
    el.setAttribute(attr, id);
    const cs = getComputedStyle(el);
    out[id] = {
      color: cs.color, backgroundColor: cs.backgroundColor,
      fontFamily: cs.fontFamily, fontSize: cs.fontSize, fontWeight: cs.fontWeight,
      fontStyle: cs.fontStyle, textDecoration: cs.textDecorationLine || cs.textDecoration,
      display: cs.display, visibility: cs.visibility,
      borderTopWidth: cs.borderTopWidth, borderRightWidth: cs.borderRightWidth,
      borderBottomWidth: cs.borderBottomWidth, borderLeftWidth: cs.borderLeftWidth,
      borderColor: cs.borderTopColor, borderCollapse: cs.borderCollapse,
      borderSpacing: cs.borderSpacing, padding: cs.paddingTop,
      width: cs.width, height: cs.height,
    };
  }
  return out;
}
"""

_BLOCKED_RESOURCES = {"image", "media", "font", "websocket", "eventsource", "manifest"}


class PlaywrightPageHost:
    """Pooled Chromium host. The browser is launched on first use and reused;
    each call gets its own context (640x480 mobile viewport)."""

    def __init__(self, javascript: bool = False, nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS,
                 user_agent: str = DEFAULT_USER_AGENT, log=None):
        self.javascript = javascript
        self.nav_timeout_ms = nav_timeout_ms
        self.user_agent = user_agent
        self.log = log
        self._lock = asyncio.Lock()
        self._playwright = None
        self._browser = None

    async def _ensure_browser(self):
        if self._browser is not None:
            return self._browser
        async with self._lock:
            if self._browser is None:
                try:
                    from playwright.async_api import async_playwright  # type: ignore
                except Exception as e:
                    raise ParseError(f"Playwright not installed: {e}")
                log_to(self.log, "[host] launching chromium")
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
        return self._browser

    async def _new_context(self):
        browser = await self._ensure_browser()
        return await browser.new_context(
            viewport={"width": VIEWPORT_WIDTH, "height": VIEWPORT_HEIGHT},
            device_scale_factor=1,
            is_mobile=True,
            has_touch=True,
            java_script_enabled=self.javascript,
            user_agent=self.user_agent,
        )

    async def snapshot(self, html: str, base_url: str) -> PageSnapshot:
        context = await self._new_context()
        try:
            page = await context.new_page()

            async def _filter(route):
                if route.request.resource_type in _BLOCKED_RESOURCES:
                    await route.abort()
                else:
                    await route.continue_()

            await page.route("**/*", _filter)
            try:
                await page.set_content(with_base_href(html, base_url), wait_until="load", timeout=self.nav_timeout_ms)
            except Exception as e:
                # slow subresources: whatever has loaded so far is still usable
                log_to(self.log, f"[host] load incomplete for {base_url}: {e}")
            raw = await page.evaluate(_COLLECT_JS, STAMP_ATTR)
            rendered = await page.content()
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Page host failed: {e}")
        finally:
            await context.close()
        return PageSnapshot(rendered, _freeze(raw))

    async def rasterize_svg(self, svg: bytes) -> bytes:
        markup = svg.decode("utf-8", errors="replace")
        markup = re.sub(r"^\s*<\?xml[^>]*\?>", "", markup)
        context = await self._new_context()
        try:
            page = await context.new_page()
            await page.set_content(f"<html><body style=\"margin:0;background:transparent\">{markup}</body></html>")
            el = await page.query_selector("svg")
            if el is None:
                raise ImageError("SVG payload has no <svg> element")
            return await el.screenshot(type="png", omit_background=True)
        except ImageError:
            raise
        except Exception as e:
            raise ImageError(f"SVG rasterization failed: {e}")
        finally:
            await context.close()

    async def shutdown(self):
        async with self._lock:
            if self._browser is not None:
                try: await self._browser.close()
                except Exception as e: log_to(self.log, f"[host] browser close failed: {e}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


# ---------------- static host ----------------
INHERITED = ("color", "font_family", "font_size", "font_weight", "font_style", "visibility")
ROOT_STYLE = {
    "color": "rgb(0, 0, 0)", "font_family": '"Times New Roman"', "font_size": "16px",
    "font_weight": "400", "font_style": "normal", "visibility": "visible",
}
BLOCK_TAGS = frozenset({
    "html", "body", "div", "p", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "dl", "dt", "dd",
    "blockquote", "pre", "form", "hr", "center", "address", "header", "footer", "nav", "section",
    "article", "aside", "main", "figure", "figcaption", "details", "summary", "fieldset", "menu",
})
DISPLAY_DEFAULTS = {
    "li": "list-item", "table": "table", "tr": "table-row", "td": "table-cell", "th": "table-cell",
    "thead": "table-header-group", "tbody": "table-row-group", "tfoot": "table-footer-group",
    "caption": "table-caption", "img": "inline-block", "input": "inline-block", "button": "inline-block",
    "select": "inline-block", "textarea": "inline-block", "video": "inline-block",
}
HIDDEN_TAGS = frozenset({"head", "title", "meta", "link", "style", "script", "noscript", "template", "base"})
HEADING_SIZES = {"h1": "32px", "h2": "24px", "h3": "18.72px", "h4": "16px", "h5": "13.28px", "h6": "10.72px",
                 "small": "13.33px", "big": "19.2px"}
BOLD_TAGS = frozenset({"b", "strong", "th", "h1", "h2", "h3", "h4", "h5", "h6"})
ITALIC_TAGS = frozenset({"i", "em", "cite", "var", "address", "dfn"})
UNDERLINE_TAGS = frozenset({"u", "ins", "a"})
MONOSPACE_TAGS = frozenset({"pre", "code", "tt", "kbd", "samp"})
KEYWORD_SIZES = {"xx-small": 9.0, "x-small": 10.0, "small": 13.0, "medium": 16.0, "large": 18.0,
                 "x-large": 24.0, "xx-large": 32.0}
_NUM_UNIT_RE = re.compile(r"^(-?\d*\.?\d+)(px|pt|em|rem|%)?$")
_BORDER_KEYWORDS = {"thin": "1px", "medium": "3px", "thick": "5px"}


def parse_inline_style(text: str) -> Dict[str, str]:
    """``"a: b; c: d"`` -> ``{"a": "b", "c": "d"}``; ``!important`` is dropped and later declarations win."""
    out: Dict[str, str] = {}
    for node in tinycss2.parse_blocks_contents(text or "", skip_comments=True, skip_whitespace=True):
        if not isinstance(node, tinycss2.ast.Declaration):
            continue
        value = tinycss2.serialize(node.value).strip()
        if value:
            out[node.lower_name] = value
    return out


def _tokens(value: str) -> list:
    return [t for t in tinycss2.parse_component_value_list(value or "", skip_comments=True)
            if t.type != "whitespace"]


def _font_px(value: str, parent_px: float) -> Optional[float]:
    v = value.strip().lower()
    if v in KEYWORD_SIZES:
        return KEYWORD_SIZES[v]
    if v == "smaller": return parent_px / 1.2
    if v == "larger": return parent_px * 1.2
    m = _NUM_UNIT_RE.match(v)
    if not m: return None
    num, unit = float(m.group(1)), m.group(2) or "px"
    if unit == "px": return num
    if unit == "pt": return num * 4 / 3
    if unit == "em": return num * parent_px
    if unit == "rem": return num * 16
    return num * parent_px / 100


def _fmt_px(v: float) -> str:
    return ("%.2f" % v).rstrip("0").rstrip(".") + "px"


def _attr_length(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    if v.endswith("%"): return v
    if v.endswith("px"): v = v[:-2]
    try:
        return _fmt_px(float(v))
    except ValueError:
        return ""


def _token_px(t) -> Optional[str]:
    if t.type == "dimension" and t.lower_unit == "px" and t.value >= 0:
        return _fmt_px(t.value)
    if t.type == "number" and t.value == 0:
        return "0px"
    return None


def _first_px(value: str) -> Optional[str]:
    for t in _tokens(value):
        px = _token_px(t)
        if px: return px
    return None


def _border_width(value: str) -> Optional[str]:
    for t in _tokens(value):
        if t.type == "ident":
            if t.lower_value in _BORDER_KEYWORDS: return _BORDER_KEYWORDS[t.lower_value]
            if t.lower_value in ("none", "hidden"): return "0px"
        px = _token_px(t)
        if px: return px
    return None


def _css_color(value: str) -> Optional[str]:
    """First color token of a shorthand such as ``border`` or ``background``."""
    for t in _tokens(value):
        if t.type in ("hash", "ident", "function") and isinstance(parse_color(t), RGBA):
            return t.serialize()
    return None


def compute_inline_style(tag: str, attrs: Mapping[str, str], parent: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Approximate computed style from tag defaults, presentational attributes, inline style and inheritance."""
    parent = parent or ROOT_STYLE
    s: Dict[str, str] = {k: parent.get(k, ROOT_STYLE[k]) for k in INHERITED}
    s.update(background_color="rgba(0, 0, 0, 0)", text_decoration="none", border_collapse="separate",
             border_spacing="2px" if tag == "table" else "0px", padding="0px", width="", height="",
             border_color=s["color"])
    for side in ("top", "right", "bottom", "left"):
        s[f"border_{side}_width"] = "0px"
    s["display"] = ("none" if tag in HIDDEN_TAGS else DISPLAY_DEFAULTS.get(tag)
                    or ("block" if tag in BLOCK_TAGS else "inline"))
    parent_px = _font_px(parent.get("font_size", "16px"), 16.0) or 16.0
    if tag in HEADING_SIZES: s["font_size"] = HEADING_SIZES[tag]
    if tag in BOLD_TAGS: s["font_weight"] = "700"
    if tag in ITALIC_TAGS: s["font_style"] = "italic"
    if tag in UNDERLINE_TAGS: s["text_decoration"] = "underline"
    if tag in MONOSPACE_TAGS: s["font_family"] = "monospace"
    if tag == "a" and attrs.get("href") is not None: s["color"] = "rgb(0, 0, 238)"
    # presentational attributes
    if attrs.get("bgcolor"): s["background_color"] = attrs["bgcolor"]
    s["width"] = _attr_length(attrs.get("width"))
    s["height"] = _attr_length(attrs.get("height"))
    if tag == "table" and attrs.get("border") not in (None, "", "0"):
        w = (attrs.get("border") or "1").strip()
        w = w if w.isdigit() else "1"
        for side in ("top", "right", "bottom", "left"):
            s[f"border_{side}_width"] = w + "px"
    if tag == "font":
        if attrs.get("color"): s["color"] = attrs["color"]
        if attrs.get("face"): s["font_family"] = attrs["face"]
    if "hidden" in attrs: s["display"] = "none"
    # inline style
    decls = parse_inline_style(attrs.get("style", ""))
    for prop, value in decls.items():
        low = value.lower()
        if prop == "color": s["color"] = value
        elif prop == "background-color": s["background_color"] = value
        elif prop == "background":
            c = _css_color(value)
            if c: s["background_color"] = c
        elif prop == "font-family": s["font_family"] = value
        elif prop == "font-size":
            px = _font_px(value, parent_px)
            if px is not None: s["font_size"] = _fmt_px(px)
        elif prop == "font-weight":
            s["font_weight"] = {"bold": "700", "bolder": "700", "normal": "400", "lighter": "300"}.get(low, value)
        elif prop == "font-style": s["font_style"] = low
        elif prop in ("text-decoration", "text-decoration-line"): s["text_decoration"] = low
        elif prop == "display": s["display"] = low
        elif prop == "visibility": s["visibility"] = low
        elif prop in ("width", "height"): s[prop] = value
        elif prop == "padding" or prop == "padding-top":
            s["padding"] = _first_px(value) or s["padding"]
        elif prop == "border-collapse": s["border_collapse"] = low
        elif prop == "border-spacing":
            s["border_spacing"] = _first_px(value) or s["border_spacing"]
        elif prop in ("border", "border-width"):
            w = _border_width(value)
            if w:
                for side in ("top", "right", "bottom", "left"):
                    s[f"border_{side}_width"] = w
            if prop == "border":
                c = _css_color(value)
                if c: s["border_color"] = c
        elif prop.startswith("border-") and prop[7:] in ("top", "right", "bottom", "left"):
            w = _border_width(value)
            if w: s[f"border_{prop[7:]}_width"] = w
        elif prop == "border-color":
            s["border_color"] = _css_color(value) or s["border_color"]
    if s["font_size"] and not s["font_size"].endswith("px"):
        px = _font_px(s["font_size"], parent_px)
        s["font_size"] = _fmt_px(px) if px is not None else parent.get("font_size", "16px")
    return s


class InlineStylePageHost:
    """Browser-free host: style comes from the markup alone (no stylesheets, no scripts)."""

    def __init__(self, log=None):
        self.log = log

    async def snapshot(self, html: str, base_url: str) -> PageSnapshot:
        try:
            soup = BeautifulSoup(html, "html.parser", multi_valued_attributes=None)
        except Exception as e:
            raise ParseError(f"Could not parse page: {e}")
        raw: Dict[str, dict] = {}
        counter = 0
        stack = [(soup, None)]
        while stack:
            node, parent_style = stack.pop()
            for child in node.contents:
                if not isinstance(child, Tag):
                    continue
                counter += 1
                stamp = str(counter)
                attrs = {k.lower(): (v if isinstance(v, str) else " ".join(v) if v else "") for k, v in child.attrs.items()}
                style = compute_inline_style(child.name.lower(), attrs, parent_style)
                child[STAMP_ATTR] = stamp
                raw[stamp] = style
                stack.append((child, style))
        return PageSnapshot(str(soup), _freeze(raw))

    async def rasterize_svg(self, svg: bytes) -> bytes:
        raise ImageError("SVG rasterization requires the playwright page host")

    async def shutdown(self):
        return None


def build_page_host(cfg: ServiceConfig, log=None):
    if cfg.host_kind == "inline":
        return InlineStylePageHost(log=log)
    return PlaywrightPageHost(javascript=cfg.host_javascript, nav_timeout_ms=cfg.nav_timeout_ms,
                              user_agent=cfg.user_agent, log=log)

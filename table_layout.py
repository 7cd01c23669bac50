"""Rewrite ``<table>`` trees into nested ``<div>`` containers.

Each table is first described as a TableLayoutNode (rows, cells, forwarded
attributes) and then materialised. Nested tables are converted before the
table that contains them, so they end up as nested containers inside the
moved cell content rather than being flattened.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from crashnet_core import log_to
from dom_tree import Document

CELL_TAGS = ("td", "th")
_PCT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%\s*$")


@dataclass
class CellLayout:
    node: int                     # the original td/th; its children are moved, never copied
    width: str
    is_header: bool = False
    align: Optional[str] = None
    valign: Optional[str] = None
    bgcolor: Optional[str] = None


@dataclass
class RowLayout:
    is_header: bool
    cells: List[CellLayout] = field(default_factory=list)
    align: Optional[str] = None
    valign: Optional[str] = None
    bgcolor: Optional[str] = None


@dataclass
class TableLayoutNode:
    attrs: Dict[str, str]         # forwarded container attributes (width, bgcolor, explicit align)
    has_border: bool
    cellspacing: int = 0
    cellpadding: int = 0
    caption: Optional[int] = None
    rows: List[RowLayout] = field(default_factory=list)

    @property
    def cell_counts(self) -> List[int]:
        return [len(r.cells) for r in self.rows]


def _int_attr(doc: Document, nid: int, name: str, default: int = 0) -> int:
    try:
        return int(float((doc.get_attr(nid, name) or "").strip()))
    except ValueError:
        return default


def table_rows(doc: Document, table: int) -> List[int]:
    """``<tr>`` elements owned by ``table`` (directly, via thead/tbody/tfoot or a stray wrapper), in order."""
    return [tr for tr in doc.find_all("tr", table) if doc.closest(tr, ("table",)) == table]


def cell_width(doc: Document, cell: int, cell_count: int) -> str:
    own = (doc.get_attr(cell, "width") or "").strip()
    width = own or ("100%" if cell_count == 1 else "%d%%" % (100 // cell_count))
    colspan = _int_attr(doc, cell, "colspan", 1)
    m = _PCT_RE.match(width)
    if colspan > 1 and m and cell_count > 1:
        width = "%d%%" % min(100, int(float(m.group(1))) * colspan)
    return width


def describe_table(doc: Document, table: int) -> TableLayoutNode:
    border = (doc.get_attr(table, "border") or "").strip()
    layout = TableLayoutNode(
        attrs={k: doc.get_attr(table, k) for k in ("width", "bgcolor", "align") if doc.get_attr(table, k)},
        has_border=doc.has_attr(table, "border") and border != "0",
        cellspacing=max(0, _int_attr(doc, table, "cellspacing")),
        cellpadding=max(0, _int_attr(doc, table, "cellpadding")),
    )
    captions = doc.element_children(table, "caption")
    if captions:
        layout.caption = captions[0]
    for tr in table_rows(doc, table):
        cells = doc.element_children(tr, *CELL_TAGS)
        row = RowLayout(
            is_header=any(doc.tag(c) == "th" for c in cells),
            align=doc.get_attr(tr, "align"),
            valign=doc.get_attr(tr, "valign"),
            bgcolor=doc.get_attr(tr, "bgcolor"),
        )
        for c in cells:
            row.cells.append(CellLayout(
                node=c,
                width=cell_width(doc, c, len(cells)),
                is_header=row.is_header or doc.tag(c) == "th",
                align=doc.get_attr(c, "align"),
                valign=doc.get_attr(c, "valign"),
                bgcolor=doc.get_attr(c, "bgcolor"),
            ))
        layout.rows.append(row)
    return layout


def _set_present(doc: Document, nid: int, **attrs):
    for k, v in attrs.items():
        if v: doc.set_attr(nid, k, v)


def _rule(doc: Document) -> int:
    return doc.create_element("hr", {"width": "100%", "size": "1"})


def build_container(doc: Document, layout: TableLayoutNode) -> int:
    container = doc.create_element("div", layout.attrs)
    if layout.caption is not None:
        cap = doc.create_element("div", {"align": "center"})
        bold = doc.append_child(cap, doc.create_element("b"))
        doc.move_children(layout.caption, bold)
        doc.append_child(container, cap)
    for i, row in enumerate(layout.rows):
        row_div = doc.create_element("div")
        _set_present(doc, row_div, align=row.align, valign=row.valign, bgcolor=row.bgcolor)
        for cell in row.cells:
            cell_div = doc.create_element("div", {"width": cell.width})
            _set_present(doc, cell_div, align=cell.align, valign=cell.valign, bgcolor=cell.bgcolor)
            target = cell_div
            if cell.is_header:
                holder = doc.append_child(cell_div, doc.create_element("div"))
                target = doc.append_child(holder, doc.create_element("b"))
            doc.move_children(cell.node, target)
            doc.append_child(row_div, cell_div)
        doc.append_child(container, row_div)
        if i < len(layout.rows) - 1:
            if layout.has_border:
                doc.append_child(container, _rule(doc))
            elif layout.cellspacing > 0:
                doc.append_child(container, doc.create_element(
                    "spacer", {"type": "vertical", "size": str(layout.cellspacing)}))
    if layout.has_border and layout.rows:
        doc.append_child(container, _rule(doc))
    return container


def convert_table(doc: Document, table: int) -> int:
    container = build_container(doc, describe_table(doc, table))
    doc.replace(table, container)
    return container


def _owned_tables(doc: Document, root: int) -> List[int]:
    """Tables under ``root`` whose nearest table ancestor is ``root`` (or none, at top level)."""
    root_is_table = doc.is_element(root, "table")
    out = []
    for t in doc.find_all("table", root):
        nearest = doc.closest(t, ("table",))
        if (root_is_table and nearest == root) or (not root_is_table and nearest is None):
            out.append(t)
    return out


def convert_tables(doc: Document, ctx=None, styles=None, log=None) -> int:
    """Convert every table, outermost discovered first, innermost converted first."""
    processed: Set[int] = set()
    converted = 0

    def _process(root: int):
        nonlocal converted
        for table in _owned_tables(doc, root):
            if table in processed or table not in doc:
                continue
            processed.add(table)
            _process(table)
            try:
                convert_table(doc, table)
                converted += 1
            except Exception as e:
                log_to(log, f"[tables] table #{table} left as-is: {e}")

    _process(doc.root)
    return converted

"""Arena document model used by every rewriting stage.

Nodes live in a single arena owned by a Document and are addressed by
integer ids. Parent and child links are stored as ids, so a subtree can be
detached and re-attached (moved) without copying and serialization never
has to follow object cycles.

Parsing goes through BeautifulSoup's ``html.parser`` tree builder; the
resulting soup is converted into the arena once and then discarded.
Comments, doctypes and processing instructions are not kept.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from html import escape
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from bs4 import BeautifulSoup
from bs4.element import CData, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

ELEMENT = "element"
TEXT = "text"
ROOT_TAG = "#document"
STAMP_ATTR = "data-crashnet-id"
DOCTYPE = '<!DOCTYPE HTML PUBLIC "-//W3C//DTD HTML 3.2 Final//EN">'

VOID_TAGS = frozenset({
    "area", "base", "basefont", "br", "col", "embed", "frame", "hr", "img", "input", "isindex",
    "keygen", "link", "meta", "param", "source", "spacer", "track", "wbr",
})
RAW_TEXT_TAGS = frozenset({"script", "style"})
HEAD_TAGS = frozenset({"title", "meta", "link", "style", "base", "script", "noscript", "template"})
_SKIPPED_STRINGS = (Comment, CData, Declaration, Doctype, ProcessingInstruction)


class DocumentError(ValueError):
    """Invalid tree operation (foreign node, cycle, text node used as parent)."""


@dataclass
class Node:
    id: int
    kind: str
    tag: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)

    @property
    def is_element(self) -> bool:
        return self.kind == ELEMENT


class Document:
    def __init__(self):
        self._nodes: Dict[int, Node] = {}
        self._next_id = 1
        self.stamps: Dict[str, int] = {}
        self.root = self.create_element(ROOT_TAG)

    # ---------------- node access ----------------
    def node(self, nid: int) -> Node:
        try:
            return self._nodes[nid]
        except KeyError:
            raise DocumentError(f"node {nid} is not part of this document") from None

    def __contains__(self, nid: int) -> bool:
        return nid in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def tag(self, nid: int) -> str:
        n = self.node(nid)
        return n.tag if n.is_element else ""

    def is_element(self, nid: int, *tags: str) -> bool:
        n = self._nodes.get(nid)
        if n is None or not n.is_element: return False
        return not tags or n.tag in tags

    def is_text(self, nid: int) -> bool:
        n = self._nodes.get(nid)
        return n is not None and n.kind == TEXT

    def is_attached(self, nid: int) -> bool:
        """True when ``nid`` is reachable from the document root."""
        cur: Optional[int] = nid
        while cur is not None:
            if cur == self.root: return True
            n = self._nodes.get(cur)
            if n is None: return False
            cur = n.parent
        return False

    def parent(self, nid: int) -> Optional[int]:
        return self.node(nid).parent

    def children(self, nid: int) -> List[int]:
        return list(self.node(nid).children)

    def element_children(self, nid: int, *tags: str) -> List[int]:
        return [c for c in self.node(nid).children if self.is_element(c, *tags)]

    # ---------------- creation ----------------
    def create_element(self, tag: str, attrs: Optional[Dict[str, str]] = None) -> int:
        nid = self._next_id
        self._next_id += 1
        node = Node(nid, ELEMENT, tag=tag.lower())
        self._nodes[nid] = node
        for k, v in (attrs or {}).items():
            self.set_attr(nid, k, v)
        return nid

    def create_text(self, text: str) -> int:
        nid = self._next_id
        self._next_id += 1
        self._nodes[nid] = Node(nid, TEXT, text=text)
        return nid

    # ---------------- mutation ----------------
    def _check_parent(self, parent: int, child: int):
        p = self.node(parent)
        self.node(child)
        if not p.is_element:
            raise DocumentError("text nodes cannot have children")
        cur: Optional[int] = parent
        while cur is not None:
            if cur == child:
                raise DocumentError(f"node {child} cannot become a descendant of itself")
            cur = self._nodes[cur].parent

    def detach(self, nid: int) -> int:
        """Unlink ``nid`` from its parent; the subtree stays in the arena."""
        n = self.node(nid)
        if n.parent is not None:
            siblings = self._nodes[n.parent].children
            siblings.remove(nid)
            n.parent = None
        return nid

    def append_child(self, parent: int, child: int) -> int:
        self._check_parent(parent, child)
        self.detach(child)
        self._nodes[parent].children.append(child)
        self._nodes[child].parent = parent
        return child

    def insert_child(self, parent: int, index: int, child: int) -> int:
        self._check_parent(parent, child)
        self.detach(child)
        self._nodes[parent].children.insert(index, child)
        self._nodes[child].parent = parent
        return child

    def insert_before(self, ref: int, new: int) -> int:
        parent = self.node(ref).parent
        if parent is None:
            raise DocumentError(f"node {ref} has no parent")
        self._check_parent(parent, new)
        self.detach(new)
        siblings = self._nodes[parent].children
        siblings.insert(siblings.index(ref), new)
        self._nodes[new].parent = parent
        return new

    def insert_after(self, ref: int, new: int) -> int:
        parent = self.node(ref).parent
        if parent is None:
            raise DocumentError(f"node {ref} has no parent")
        self._check_parent(parent, new)
        self.detach(new)
        siblings = self._nodes[parent].children
        siblings.insert(siblings.index(ref) + 1, new)
        self._nodes[new].parent = parent
        return new

    def remove(self, nid: int):
        """Detach ``nid`` and drop its whole subtree from the arena."""
        if nid == self.root:
            raise DocumentError("cannot remove the document root")
        self.detach(nid)
        stack = [nid]
        while stack:
            cur = self._nodes.pop(stack.pop(), None)
            if cur is not None:
                stack.extend(cur.children)

    def replace(self, old: int, new: int) -> int:
        """Put ``new`` where ``old`` is and drop ``old`` (its subtree included)."""
        self.insert_before(old, new)
        self.remove(old)
        return new

    def move_children(self, src: int, dst: int):
        for c in self.children(src):
            self.append_child(dst, c)

    def wrap_children(self, nid: int, tag: str, attrs: Optional[Dict[str, str]] = None) -> int:
        """Move every child of ``nid`` into a new ``tag`` element appended to ``nid``."""
        wrapper = self.create_element(tag, attrs)
        self.move_children(nid, wrapper)
        self.append_child(nid, wrapper)
        return wrapper

    def unwrap(self, nid: int):
        """Replace an element by its children."""
        for c in self.children(nid):
            self.insert_before(nid, c)
        self.remove(nid)

    def rename(self, nid: int, tag: str):
        n = self.node(nid)
        if not n.is_element:
            raise DocumentError("cannot rename a text node")
        n.tag = tag.lower()

    # ---------------- attributes ----------------
    def attrs(self, nid: int) -> Dict[str, str]:
        return self.node(nid).attrs

    def get_attr(self, nid: int, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.node(nid).attrs.get(name.lower(), default)

    def has_attr(self, nid: int, name: str) -> bool:
        return name.lower() in self.node(nid).attrs

    def set_attr(self, nid: int, name: str, value) -> None:
        n = self.node(nid)
        if not n.is_element:
            raise DocumentError("text nodes have no attributes")
        n.attrs[name.lower()] = "" if value is None else str(value)

    def remove_attr(self, nid: int, name: str) -> None:
        self.node(nid).attrs.pop(name.lower(), None)

    # ---------------- traversal ----------------
    def iter_descendants(self, start: Optional[int] = None, include_self: bool = False) -> Iterator[int]:
        """Pre-order walk in document order; snapshot children so callers may mutate what they visit."""
        start = self.root if start is None else start
        stack = [start] if include_self else list(reversed(self.node(start).children))
        while stack:
            nid = stack.pop()
            n = self._nodes.get(nid)
            if n is None:
                continue
            yield nid
            stack.extend(reversed(n.children))

    def iter_elements(self, start: Optional[int] = None, include_self: bool = False) -> Iterator[int]:
        for nid in self.iter_descendants(start, include_self):
            if self._nodes.get(nid) is not None and self._nodes[nid].is_element:
                yield nid

    def find_all(self, tags: Union[str, Sequence[str]], start: Optional[int] = None) -> List[int]:
        wanted = {tags} if isinstance(tags, str) else set(tags)
        return [nid for nid in self.iter_elements(start) if self._nodes[nid].tag in wanted]

    def find_first(self, tags: Union[str, Sequence[str]], start: Optional[int] = None) -> Optional[int]:
        wanted = {tags} if isinstance(tags, str) else set(tags)
        for nid in self.iter_elements(start):
            if self._nodes[nid].tag in wanted:
                return nid
        return None

    def ancestors(self, nid: int) -> Iterator[int]:
        cur = self.node(nid).parent
        while cur is not None:
            yield cur
            cur = self._nodes[cur].parent

    def closest(self, nid: int, tags: Iterable[str]) -> Optional[int]:
        wanted = set(tags)
        for a in self.ancestors(nid):
            if self._nodes[a].is_element and self._nodes[a].tag in wanted:
                return a
        return None

    def text_content(self, nid: int) -> str:
        n = self.node(nid)
        if n.kind == TEXT: return n.text
        return "".join(self._nodes[t].text for t in self.iter_descendants(nid) if self._nodes[t].kind == TEXT)

    def has_direct_text(self, nid: int) -> bool:
        return any(self._nodes[c].kind == TEXT and self._nodes[c].text.strip() for c in self.node(nid).children)

    # ---------------- well-known elements ----------------
    @property
    def html(self) -> Optional[int]:
        return next((c for c in self.node(self.root).children if self.is_element(c, "html")), None)

    @property
    def head(self) -> Optional[int]:
        h = self.html
        return None if h is None else next(iter(self.element_children(h, "head")), None)

    @property
    def body(self) -> Optional[int]:
        h = self.html
        return None if h is None else next(iter(self.element_children(h, "body")), None)

    @property
    def title(self) -> str:
        head = self.head
        t = self.find_first("title", head) if head is not None else None
        return self.text_content(t).strip() if t is not None else ""

    def set_title(self, title: str):
        head = self.head
        if head is None: return
        t = self.find_first("title", head)
        if t is None:
            t = self.insert_child(head, 0, self.create_element("title"))
        for c in self.children(t): self.remove(c)
        self.append_child(t, self.create_text(title))

    def ensure_skeleton(self):
        """Guarantee ``#document > html > (head, body)`` with loose content moved into body."""
        html = self.html
        if html is None:
            html = self.create_element("html")
            for c in self.children(self.root): self.append_child(html, c)
            self.append_child(self.root, html)
        for c in self.children(self.root):
            if c != html: self.append_child(html, c)
        head = self.head
        if head is None:
            head = self.insert_child(html, 0, self.create_element("head"))
        body = self.body
        if body is None:
            body = self.append_child(html, self.create_element("body"))
        for c in self.children(html):
            if c in (head, body): continue
            if self.is_element(c) and self.tag(c) in HEAD_TAGS and not self.node(body).children:
                self.append_child(head, c)
            elif self.is_text(c) and not self.node(c).text.strip():
                self.remove(c)
            else:
                self.append_child(body, c)
        # keep head before body
        kids = self.node(html).children
        if kids.index(head) > kids.index(body):
            self.insert_before(body, head)

    # ---------------- parsing / serialization ----------------
    def _import_soup(self, soup_node, parent: int):
        stack = [(soup_node, parent)]
        while stack:
            src, dst = stack.pop()
            for child in src.contents:
                if isinstance(child, Tag):
                    nid = self.create_element(child.name)
                    for k, v in child.attrs.items():
                        if isinstance(v, (list, tuple)): v = " ".join(v)
                        self.set_attr(nid, k, v)
                    stamp = self._nodes[nid].attrs.pop(STAMP_ATTR, None)
                    if stamp is not None:
                        self.stamps[stamp] = nid
                    self.append_child(dst, nid)
                    stack.append((child, nid))
                elif isinstance(child, _SKIPPED_STRINGS):
                    continue
                elif isinstance(child, NavigableString):
                    self.append_child(dst, self.create_text(str(child)))

    def parse_fragment(self, markup: str) -> List[int]:
        """Parse ``markup`` into detached nodes owned by this document (returned in order)."""
        holder = self.create_element("div")
        self._import_soup(BeautifulSoup(markup, "html.parser", multi_valued_attributes=None), holder)
        nodes = self.children(holder)
        for c in nodes: self.detach(c)
        self.remove(holder)
        return nodes

    def to_html(self, nid: Optional[int] = None, doctype: bool = True) -> str:
        start = self.root if nid is None else nid
        out: List[str] = [DOCTYPE + "\n"] if (doctype and start == self.root) else []
        # explicit stack of (node id, closing?) keeps deep trees off the recursion limit
        stack: List[tuple] = [(start, False)]
        while stack:
            cur, closing = stack.pop()
            n = self._nodes[cur]
            if closing:
                out.append(f"</{n.tag}>")
                continue
            if n.kind == TEXT:
                parent = self._nodes.get(n.parent) if n.parent is not None else None
                if parent is not None and parent.tag in RAW_TEXT_TAGS:
                    out.append(n.text)
                else:
                    out.append(escape(n.text, quote=False).replace("\xa0", "&nbsp;"))
                continue
            if n.tag == ROOT_TAG:
                stack.extend((c, False) for c in reversed(n.children))
                continue
            out.append(_open_tag(n.tag, n.attrs))
            if n.tag in VOID_TAGS:
                continue
            stack.append((cur, True))
            stack.extend((c, False) for c in reversed(n.children))
        return "".join(out)


def _open_tag(tag: str, attrs: Dict[str, str]) -> str:
    parts = [tag]
    for k, v in attrs.items():
        if v == "":
            parts.append(k)
        else:
            parts.append(f'{k}="{escape(v, quote=True)}"')
    return "<" + " ".join(parts) + ">"


def parse_html(markup: Union[str, bytes]) -> Document:
    """Parse a complete page into a Document with an html/head/body skeleton.

    Elements carrying the ``data-crashnet-id`` stamp written by a page host
    are indexed in ``Document.stamps`` and the stamp attribute is dropped.
    """
    doc = Document()
    soup = BeautifulSoup(markup, "html.parser", multi_valued_attributes=None)
    doc._import_soup(soup, doc.root)
    doc.ensure_skeleton()
    return doc

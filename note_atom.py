"""
note_atom.py — NoteAtom Document Node Builders
================================================
Mowen stores note bodies as a small JSON document tree ("NoteAtom").
Every function here builds ONE kind of node, in the exact shape the
open API accepts, so the rest of the code never writes node dicts by hand.

NODE KINDS:
- doc        → root, owns block nodes
- paragraph  → owns text nodes; no "content" key means an intentional blank line
- quote      → owns text nodes; multi-line quotes use literal "\n" text runs
- image      → attrs: uuid (uploaded asset id), align, optional alt caption
- text       → text string + optional marks

MARKS:
  bold, italic, highlight, code → {"type": "<kind>"}
  link                          → {"type": "link", "attrs": {"href": "..."}}

EXAMPLE:
    doc_node([
        paragraph_node([text_node("Hello ", [bold_mark()]), text_node("world")]),
        paragraph_node(),
        image_node("aBcD1234xyz", alt="Figure 1"),
    ])
"""

from __future__ import annotations

import copy
from typing import Any

# Type alias for NoteAtom node dictionaries
NoteAtom = dict[str, Any]
Mark = dict[str, Any]

MARK_TYPES = ("bold", "italic", "highlight", "link", "code")
BLOCK_TYPES = ("paragraph", "quote", "image")


# ══════════════════════════════════════════════════════════════
# MARKS
# ══════════════════════════════════════════════════════════════

def bold_mark() -> Mark:
    return {"type": "bold"}


def italic_mark() -> Mark:
    return {"type": "italic"}


def highlight_mark() -> Mark:
    return {"type": "highlight"}


def code_mark() -> Mark:
    return {"type": "code"}


def link_mark(href: str | None) -> Mark:
    """Link mark; an anchor without href keeps the mark but carries no attrs."""
    if href is None:
        return {"type": "link"}
    return {"type": "link", "attrs": {"href": href}}


def dedupe_marks(marks: list[Mark] | None) -> list[Mark]:
    """
    Keep the first mark of each kind, preserving order.

    Returns fresh copies so the result never aliases the input list.
    """
    seen: set[str] = set()
    unique: list[Mark] = []
    for mark in marks or []:
        kind = mark.get("type")
        if kind in seen:
            continue
        seen.add(kind)
        unique.append(copy.deepcopy(mark))
    return unique


def has_mark(node: NoteAtom, kind: str) -> bool:
    return any(m.get("type") == kind for m in node.get("marks") or [])


# ══════════════════════════════════════════════════════════════
# NODES
# ══════════════════════════════════════════════════════════════

def text_node(text: str, marks: list[Mark] | None = None) -> NoteAtom:
    """Create a text run. The "marks" key is omitted when there are none."""
    node: NoteAtom = {"type": "text", "text": text}
    unique = dedupe_marks(marks)
    if unique:
        node["marks"] = unique
    return node


def paragraph_node(content: list[NoteAtom] | None = None) -> NoteAtom:
    """Create a paragraph. With no content this is an empty (spacer) paragraph."""
    if not content:
        return {"type": "paragraph"}
    return {"type": "paragraph", "content": list(content)}


def quote_node(content: list[NoteAtom]) -> NoteAtom:
    return {"type": "quote", "content": list(content)}


def image_node(uuid: str, alt: str | None = None, align: str = "center") -> NoteAtom:
    attrs: dict[str, Any] = {"uuid": uuid, "align": align}
    if alt:
        attrs["alt"] = alt
    return {"type": "image", "attrs": attrs}


def doc_node(content: list[NoteAtom]) -> NoteAtom:
    return {"type": "doc", "content": list(content)}


def text_paragraph(text: str, bold: bool = False) -> NoteAtom:
    """Shortcut for a paragraph holding a single, optionally bold, text run."""
    return paragraph_node([text_node(text, [bold_mark()] if bold else None)])


def link_paragraph(prefix: str, label: str, href: str) -> NoteAtom:
    """A paragraph like '📄 来源：<link>' used in headers and index notes."""
    return paragraph_node([text_node(prefix), text_node(label, [link_mark(href)])])


# ══════════════════════════════════════════════════════════════
# INSPECTION HELPERS
# ══════════════════════════════════════════════════════════════

def get_text(node: NoteAtom) -> str:
    """Concatenate all text below a node in reading order."""
    if node.get("type") == "text":
        return node.get("text") or ""
    return "".join(get_text(child) for child in node.get("content") or [])


def is_empty_paragraph(node: NoteAtom) -> bool:
    return node.get("type") == "paragraph" and not node.get("content")


def ensure_doc(node: NoteAtom) -> NoteAtom:
    """Wrap a bare block in a doc node; docs pass through untouched."""
    if node.get("type") == "doc":
        return node
    return doc_node([node])


def structure_summary(doc: NoteAtom) -> dict[str, int]:
    """Count block kinds in a doc, used for debug logging."""
    counts = {"total": 0, "paragraph": 0, "empty": 0, "quote": 0, "image": 0}
    for block in doc.get("content") or []:
        counts["total"] += 1
        kind = block.get("type")
        if kind in counts:
            counts[kind] += 1
        if is_empty_paragraph(block):
            counts["empty"] += 1
    return counts

"""
mark_parser.py — Inline Markup → Text Runs with Marks
=======================================================
Turns an inline markup fragment (the inside of one paragraph) into an
ordered list of NoteAtom text nodes carrying formatting marks.

HOW IT WORKS:
1. Internal placeholders (<!--IMG:n--> etc.) are removed.
2. The fragment is streamed tag by tag. Opening an inline tag pushes a
   frame with the marks it implies; closing a tag pops the most recent
   frame opened by the same tag. Unmatched closing tags are ignored.
3. Text between tags is stripped of any other tags, entity-decoded and
   whitespace-normalized, then split on bare URLs so every plain URL
   becomes its own run with a link mark (unless a link is already active).

TAG → MARK:
  strong, b → bold        em, i → italic        mark → highlight
  a         → link(href)  code  → code          span → style only

STYLE HEURISTICS (any recognized tag):
  font-weight: bold / 700-999 → bold
  font-style: italic          → italic
"""

from __future__ import annotations

import html
import re

from note_atom import (
    Mark,
    NoteAtom,
    bold_mark,
    code_mark,
    dedupe_marks,
    highlight_mark,
    italic_mark,
    link_mark,
    text_node,
)

_INLINE_TAG_RE = re.compile(
    r"<(strong|b|em|i|mark|a|code|span)(\s[^>]*)?>|</(strong|b|em|i|mark|a|code|span)\s*>",
    re.IGNORECASE,
)
_PLACEHOLDER_RE = re.compile(r"<!--(?:IMG|QUOTE|CODE):\d+-->")
_ANY_TAG_RE = re.compile(r"<[^>]+>")
_HREF_RE = re.compile(r"""href\s*=\s*["']([^"']*)["']""", re.IGNORECASE)
_STYLE_RE = re.compile(r"""style\s*=\s*["']([^"']*)["']""", re.IGNORECASE)
_BOLD_STYLE_RE = re.compile(r"font-weight\s*:\s*(bold|[7-9]\d{2})")
_ITALIC_STYLE_RE = re.compile(r"font-style\s*:\s*italic")

# Bare URLs stop at whitespace, quotes, angle brackets and closing brackets
URL_RE = re.compile(r"(https?://[^\s<>\"')\]]+)", re.IGNORECASE)

_SEMANTIC_MARKS = {
    "strong": bold_mark,
    "b": bold_mark,
    "em": italic_mark,
    "i": italic_mark,
    "mark": highlight_mark,
    "code": code_mark,
}


def decode_entities(text: str) -> str:
    """Decode HTML entities; non-breaking spaces become plain spaces."""
    return html.unescape(text).replace("\xa0", " ")


def clean_text(fragment: str) -> str:
    """
    Strip tags, decode entities and normalize whitespace.

    Runs of tab/CR/LF become a single space and runs of spaces collapse,
    but the result is NOT trimmed: a lone space between two marked spans
    is meaningful.
    """
    text = _ANY_TAG_RE.sub("", fragment)
    text = decode_entities(text)
    text = re.sub(r"[\t\r\n]+", " ", text)
    return re.sub(r" {2,}", " ", text)


def style_marks(attributes: str) -> list[Mark]:
    """Marks implied by an inline style attribute."""
    match = _STYLE_RE.search(attributes or "")
    if not match:
        return []
    style = match.group(1).lower()
    marks = []
    if _BOLD_STYLE_RE.search(style):
        marks.append(bold_mark())
    if _ITALIC_STYLE_RE.search(style):
        marks.append(italic_mark())
    return marks


def _marks_for_tag(tag: str, attributes: str) -> list[Mark]:
    marks = []
    if tag == "a":
        href = _HREF_RE.search(attributes)
        marks.append(link_mark(decode_entities(href.group(1)) if href else None))
    elif tag in _SEMANTIC_MARKS:
        marks.append(_SEMANTIC_MARKS[tag]())
    marks.extend(style_marks(attributes))
    return marks


def auto_link(text: str, marks: list[Mark]) -> list[NoteAtom]:
    """
    Split text on bare URLs, giving each URL its own linked run.

    When the active marks already include a link the text is returned
    as a single run, so links never nest.
    """
    if any(m.get("type") == "link" for m in marks):
        return [text_node(text, marks)]

    nodes = []
    for i, part in enumerate(URL_RE.split(text)):
        if not part:
            continue
        # re.split with one capture group puts matches at odd indices
        if i % 2 == 1:
            nodes.append(text_node(part, marks + [link_mark(part)]))
        else:
            nodes.append(text_node(part, marks))
    return nodes or [text_node(text, marks)]


def _pop_frame(frames: list[tuple[str, list[Mark]]], tag: str) -> None:
    for i in range(len(frames) - 1, -1, -1):
        if frames[i][0] == tag:
            del frames[i]
            return


def _active_marks(frames: list[tuple[str, list[Mark]]]) -> list[Mark]:
    return dedupe_marks([mark for _, marks in frames for mark in marks])


def parse_inline(fragment: str) -> list[NoteAtom]:
    """
    Convert an inline markup fragment into text nodes.

    Args:
        fragment: Markup such as 'Read <b>this</b> at https://example.com'

    Returns:
        Text nodes in reading order. Empty when the fragment has no text.
    """
    fragment = _PLACEHOLDER_RE.sub("", fragment)
    nodes: list[NoteAtom] = []
    frames: list[tuple[str, list[Mark]]] = []
    last = 0

    def emit(raw: str) -> None:
        text = clean_text(raw)
        if text:
            nodes.extend(auto_link(text, _active_marks(frames)))

    for match in _INLINE_TAG_RE.finditer(fragment):
        if match.start() > last:
            emit(fragment[last:match.start()])
        closing = match.group(3)
        if closing:
            _pop_frame(frames, closing.lower())
        else:
            tag = match.group(1).lower()
            frames.append((tag, _marks_for_tag(tag, match.group(2) or "")))
        last = match.end()

    if last < len(fragment):
        emit(fragment[last:])

    if not nodes:
        plain = clean_text(fragment)
        if plain.strip():
            nodes = auto_link(plain, [])
    return nodes

"""
post_processor.py — Layout Heuristics for Parsed Blocks
=========================================================
Runs once over the raw block list produced by block_parser and cleans up
what a regex-based parser inevitably gets wrong on real articles
(WeChat official-account posts in particular).

RULES, in order:
  1. Metadata quotes      quote containing "来源：" / "作者/公众号：" → paragraph
  2. Keyword split        "提示词：", "适用：", "——" each start a new paragraph
  3. Heading heuristic    "一、", "3. ", "——" lead-ins and short label lines → bold
  4. Mark de-duplication  at most one mark of each kind per text run
  5. Noise filter         subscribe/follow prompts and bare "N." items dropped
  6. Bullet merge         a paragraph holding only "•" / "·" / "-" is folded
                          into the next paragraph as a prefix
  7. Spacer collapse      one empty paragraph at most, none touching images,
                          none at the start or end

The pass is idempotent and never mutates the list or nodes it is given.
"""

from __future__ import annotations

import copy
import re

from note_atom import (
    NoteAtom,
    bold_mark,
    dedupe_marks,
    get_text,
    has_mark,
    is_empty_paragraph,
    paragraph_node,
    text_node,
)

METADATA_LABELS = ("来源：", "作者/公众号：")

SPLIT_KEYWORDS = ("提示词：", "适用：", "——")
_SPLIT_RE = re.compile("(" + "|".join(re.escape(kw) for kw in SPLIT_KEYWORDS) + ")")

_HEADING_RE = re.compile(r"^(一|二|三|四|五|六|七|八|九|十|\d+)(\.|、|\s)")
_DASH_LEAD_RE = re.compile(r"^——")
_LABEL_RE = re.compile(r"^(提示词|适用|核心问题)")
SHORT_LABEL_LENGTH = 30

NOISE_PATTERNS = [
    re.compile(r"^订阅$"),
    re.compile(r"^点击\s*订阅\s*到"),
    re.compile(r"^Subscribe$", re.IGNORECASE),
    re.compile(r"^Click.*subscribe", re.IGNORECASE),
    re.compile(r"^Follow$", re.IGNORECASE),
    re.compile(r"^\d+\.\s*$"),
]

BULLET_ONLY_PATTERNS = [
    re.compile(r"^•\s*$"),
    re.compile(r"^·\s*$"),
    re.compile(r"^[-–—]\s*$"),
]


def is_heading_text(text: str) -> bool:
    """True for enumeration lead-ins, em-dash lead-ins and short label lines."""
    return bool(
        _HEADING_RE.match(text)
        or _DASH_LEAD_RE.match(text)
        or (len(text) < SHORT_LABEL_LENGTH and _LABEL_RE.match(text))
    )


def _has_text(block: NoteAtom) -> bool:
    return bool(get_text(block).strip())


def _is_noise(block: NoteAtom) -> bool:
    if block.get("type") != "paragraph" or not block.get("content"):
        return False
    text = get_text(block).strip()
    return any(p.search(text) for p in NOISE_PATTERNS)


def _bullet_glyph(block: NoteAtom) -> str | None:
    if block.get("type") != "paragraph" or not block.get("content"):
        return None
    text = get_text(block).strip()
    if any(p.search(text) for p in BULLET_ONLY_PATTERNS):
        return text + " "
    return None


def split_by_keywords(block: NoteAtom) -> list[NoteAtom]:
    """
    Split a paragraph so every keyword starts a new paragraph.

    Marks of the run that contained the keyword are kept on both halves.
    """
    if block.get("type") != "paragraph" or not block.get("content"):
        return [block]

    result: list[NoteAtom] = []
    current: list[NoteAtom] = []
    for node in block["content"]:
        if node.get("type") != "text" or not node.get("text"):
            current.append(node)
            continue
        for part in _SPLIT_RE.split(node["text"]):
            if not part:
                continue
            if part in SPLIT_KEYWORDS and current:
                result.append(paragraph_node(current))
                current = []
            current.append(text_node(part, node.get("marks")))
    if current:
        result.append(paragraph_node(current))
    return result or [block]


def _format_block(block: NoteAtom) -> NoteAtom:
    """
    Apply the heading heuristic and mark de-duplication to one block.

    A paragraph holding nothing but whitespace comes back as a spacer.
    """
    content = block.get("content")
    if not content:
        return block
    if block["type"] == "paragraph" and not _has_text(block):
        return paragraph_node()

    make_bold = block["type"] == "paragraph" and is_heading_text(get_text(block).strip())
    formatted = []
    for node in content:
        if node.get("type") != "text":
            formatted.append(node)
            continue
        marks = list(node.get("marks") or [])
        if make_bold and not has_mark(node, "bold"):
            marks.append(bold_mark())
        formatted.append(text_node(node.get("text", ""), dedupe_marks(marks)))
    return {**block, "content": formatted}


def _prepend_bullet(block: NoteAtom, glyph: str) -> NoteAtom:
    content = list(block["content"])
    first = content[0]
    if first.get("type") == "text" and first.get("text"):
        content[0] = text_node(glyph + first["text"], first.get("marks"))
    else:
        content.insert(0, text_node(glyph))
    return {**block, "content": content}


def _next_kept_is_image(blocks: list[NoteAtom], start: int) -> bool:
    """Look ahead past blocks that will not survive filtering."""
    for block in blocks[start:]:
        if is_empty_paragraph(block) or _is_noise(block) or _bullet_glyph(block):
            continue
        return block.get("type") == "image"
    return False


def filter_and_collapse(blocks: list[NoteAtom]) -> list[NoteAtom]:
    """Noise filter, bullet merge and spacer collapse (rules 5-7)."""
    kept: list[NoteAtom] = []
    pending_bullet: str | None = None

    for i, block in enumerate(blocks):
        if _is_noise(block):
            continue

        glyph = _bullet_glyph(block)
        if glyph:
            pending_bullet = glyph
            continue

        if block.get("type") != "paragraph":
            pending_bullet = None
        elif pending_bullet and _has_text(block):
            block = _prepend_bullet(block, pending_bullet)
            pending_bullet = None

        if is_empty_paragraph(block):
            if kept and is_empty_paragraph(kept[-1]):
                continue
            if kept and kept[-1].get("type") == "image":
                continue
            if _next_kept_is_image(blocks, i + 1):
                continue

        kept.append(block)

    while kept and is_empty_paragraph(kept[0]):
        kept.pop(0)
    while kept and is_empty_paragraph(kept[-1]):
        kept.pop()
    return kept


def post_process_blocks(blocks: list[NoteAtom]) -> list[NoteAtom]:
    """
    Run every layout rule over a block list.

    Args:
        blocks: Raw blocks from block_parser.parse_blocks()

    Returns:
        A new list; the input is left untouched
    """
    blocks = copy.deepcopy(blocks)
    formatted: list[NoteAtom] = []

    for block in blocks:
        if block.get("type") == "quote" and block.get("content"):
            text = get_text(block)
            if any(label in text for label in METADATA_LABELS):
                block = paragraph_node(block["content"])

        for piece in split_by_keywords(block):
            formatted.append(_format_block(piece))

    return filter_and_collapse(formatted)

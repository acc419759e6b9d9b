"""
block_parser.py — Markup Document → NoteAtom Blocks
=====================================================
Segments a full markup document (the cleaned article HTML from the page)
into ordered NoteAtom block nodes: paragraphs, quotes and images.

HOW IT WORKS:
There is no DOM here, so nesting is tamed with placeholder substitution:

  1. Clean:        script/style/comments removed, source line breaks collapsed
  2. Side-tables:  <pre> → <!--CODE:n-->, <img> → <!--IMG:n-->,
                   <blockquote> → <!--QUOTE:n-->
  3. Headings:     <h1>-<h6> → bold paragraphs (only five node kinds exist)
  4. Lists:        every <li> → its own <p> prefixed with "• " or "N. "
  5. Boundaries:   block tags → BLOCK_START/BLOCK_END markers,
                   <br> → EMPTY_LINE marker, <hr> → boundary
  6. Segmentation: split on boundaries, then line by line; blank lines
                   become empty paragraphs (never leading ones)
  7. Resolution:   each placeholder line becomes its quote/code/image node;
                   every other line goes through the mark parser

Images only become nodes when an uploaded asset id is attached to the
<img> tag (data-mowen-uid / data-mowen-id / Mowen CDN URL). Anything
else is silently dropped: a broken image reference is worse than none.

html_to_note_atom() runs the whole thing plus post-processing and NEVER
raises; a conversion failure degrades to one plain-text paragraph.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from image_matcher import tag_attributes
from mark_parser import clean_text, decode_entities, parse_inline
from note_atom import (
    NoteAtom,
    doc_node,
    image_node,
    paragraph_node,
    quote_node,
    structure_summary,
    text_node,
)
from post_processor import post_process_blocks

logger = logging.getLogger("clipper.parser")

FALLBACK_TEXT = "Error converting content."

_BLOCK_START = "<!--BLOCK_START-->"
_BLOCK_END = "<!--BLOCK_END-->"
_EMPTY_LINE = "<!--EMPTY_LINE-->"
_HR = "<!--HR-->"

_BLOCK_TAGS = "p|div|section|article|main|aside|header|footer|figure|figcaption|tr|td|th"

_SCRIPT_RE = re.compile(r"<script\b[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_PRE_RE = re.compile(r"<pre\b[^>]*>([\s\S]*?)</pre>", re.IGNORECASE)
_CODE_TAG_RE = re.compile(r"</?code[^>]*>", re.IGNORECASE)
_IMG_RE = re.compile(r"<img\b[^>]+>", re.IGNORECASE)
_HEADING_RE = re.compile(r"<h([1-6])\b[^>]*>([\s\S]*?)</h\1\s*>", re.IGNORECASE)
_BLOCKQUOTE_RE = re.compile(r"<blockquote\b[^>]*>([\s\S]*?)</blockquote>", re.IGNORECASE)
_UL_RE = re.compile(r"<ul\b[^>]*>([\s\S]*?)</ul>", re.IGNORECASE)
_OL_RE = re.compile(r"<ol\b[^>]*>([\s\S]*?)</ol>", re.IGNORECASE)
_LI_RE = re.compile(r"<li\b[^>]*>([\s\S]*?)</li>", re.IGNORECASE)
_P_TAG_RE = re.compile(r"</?p\b[^>]*>", re.IGNORECASE)
_BLOCK_CLOSE_RE = re.compile(rf"</({_BLOCK_TAGS})\s*>", re.IGNORECASE)
_BLOCK_OPEN_RE = re.compile(rf"<({_BLOCK_TAGS})\b[^>]*>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_HR_RE = re.compile(r"<hr\b[^>]*>", re.IGNORECASE)
_SEGMENT_SPLIT_RE = re.compile(r"<!--(?:BLOCK_START|BLOCK_END|HR)-->")
_SOURCE_NEWLINE_RE = re.compile(r"[ \t]*[\r\n]+[ \t]*")

_IMG_PLACEHOLDER_RE = re.compile(r"<!--IMG:(\d+)-->")
_QUOTE_PLACEHOLDER_RE = re.compile(r"<!--QUOTE:(\d+)-->")
_CODE_PLACEHOLDER_RE = re.compile(r"<!--CODE:(\d+)-->")
_IMG_SPLIT_RE = re.compile(r"(<!--IMG:\d+-->)")

_ASSET_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_MOWEN_CDN_RE = re.compile(r"(?:mowen\.cn|mw-assets)/([A-Za-z0-9_-]{10,})")


@dataclass
class ImageRef:
    """An <img> pulled out of the markup, with its asset id if one is attached."""
    src: str
    alt: str = ""
    uuid: str | None = None


def extract_image_ref(tag: str) -> ImageRef | None:
    """
    Read src, caption and asset id from one <img> tag.

    Asset id precedence: data-mowen-uid, data-mowen-id, then an id embedded
    in a Mowen CDN URL. Lazy images fall back to data-src / data-original;
    tags with no source at all yield None.
    """
    attrs = tag_attributes(tag)
    src = attrs.get("src") or attrs.get("data-src") or attrs.get("data-original")
    if not src:
        return None

    uuid = None
    for name in ("data-mowen-uid", "data-mowen-id"):
        value = attrs.get(name)
        if value and _ASSET_ID_RE.match(value):
            uuid = value
            break
    if uuid is None:
        cdn = _MOWEN_CDN_RE.search(src)
        if cdn:
            uuid = cdn.group(1)

    return ImageRef(src=src, alt=attrs.get("alt", ""), uuid=uuid)


def _convert_list_items(list_html: str, ordered: bool) -> str:
    """Expand one list body into compact <p> items with bullet/ordinal prefixes."""
    items = []
    for match in _LI_RE.finditer(list_html):
        content = _P_TAG_RE.sub("", match.group(1)).strip()
        if not content:
            continue
        prefix = f"{len(items) + 1}. " if ordered else "• "
        items.append(f"<p>{prefix}{content}</p>")
    return "".join(items)


def _has_real_content(nodes: list[NoteAtom]) -> bool:
    return any(n.get("type") == "text" and (n.get("text") or "").strip() for n in nodes)


# ══════════════════════════════════════════════════════════════
# PLACEHOLDER RESOLUTION
# ══════════════════════════════════════════════════════════════

def _quote_block(content: str) -> NoteAtom | None:
    """
    Build one quote node whose lines are joined by literal "\\n" runs.

    Paragraph/div/br boundaries inside the quote all count as line breaks.
    """
    content = _BR_RE.sub("\n", content)
    content = re.sub(r"</p>\s*<p[^>]*>", "\n", content, flags=re.IGNORECASE)
    content = re.sub(r"</div>\s*<div[^>]*>", "\n", content, flags=re.IGNORECASE)
    content = re.sub(r"</?(?:p|div)\b[^>]*>", "\n", content, flags=re.IGNORECASE)
    lines = [line.strip() for line in content.split("\n") if line.strip()]

    nodes: list[NoteAtom] = []
    for line in lines:
        inline = parse_inline(line)
        if not inline:
            continue
        if nodes:
            nodes.append(text_node("\n"))
        nodes.extend(inline)
    return quote_node(nodes) if nodes else None


def _code_block(content: str) -> NoteAtom | None:
    """Code renders as a quote with one tag-free run, line breaks kept."""
    text = _BR_RE.sub("\n", content)
    text = re.sub(r"<[^>]+>", "", text)
    text = decode_entities(text).strip()
    return quote_node([text_node(text)]) if text else None


def _image_block(images: list[ImageRef], index: int) -> NoteAtom | None:
    if index >= len(images):
        return None
    ref = images[index]
    if not ref.uuid:
        logger.debug(f"Skipping image without asset id: {ref.src[:60]}")
        return None
    return image_node(ref.uuid, alt=ref.alt or None)


# ══════════════════════════════════════════════════════════════
# MAIN PARSER
# ══════════════════════════════════════════════════════════════

def parse_blocks(markup: str) -> list[NoteAtom]:
    """
    Segment markup into raw block nodes (before post-processing).

    Args:
        markup: Full HTML document or fragment

    Returns:
        Ordered list of paragraph/quote/image nodes
    """
    processed = _SCRIPT_RE.sub("", markup)
    processed = _STYLE_RE.sub("", processed)
    processed = _COMMENT_RE.sub("", processed)

    # Code keeps its own line breaks, so it leaves before newlines collapse
    code_blocks: list[str] = []

    def stash_code(match: re.Match) -> str:
        code_blocks.append(_CODE_TAG_RE.sub("", match.group(1)))
        return f"\n<!--CODE:{len(code_blocks) - 1}-->\n"

    processed = _PRE_RE.sub(stash_code, processed)
    processed = _collapse_outside_code(processed)

    images: list[ImageRef] = []

    def stash_image(match: re.Match) -> str:
        ref = extract_image_ref(match.group(0))
        if ref is None:
            return ""
        images.append(ref)
        return f"\n<!--IMG:{len(images) - 1}-->\n"

    processed = _IMG_RE.sub(stash_image, processed)

    processed = _HEADING_RE.sub(
        lambda m: f"\n<p><strong>{m.group(2)}</strong></p>\n", processed
    )

    quote_blocks: list[str] = []

    def stash_quote(match: re.Match) -> str:
        quote_blocks.append(match.group(1))
        return f"\n<!--QUOTE:{len(quote_blocks) - 1}-->\n"

    processed = _BLOCKQUOTE_RE.sub(stash_quote, processed)

    processed = _UL_RE.sub(lambda m: _convert_list_items(m.group(1), ordered=False), processed)
    processed = _OL_RE.sub(lambda m: _convert_list_items(m.group(1), ordered=True), processed)

    processed = _BLOCK_CLOSE_RE.sub(f"\n{_BLOCK_END}\n", processed)
    processed = _BLOCK_OPEN_RE.sub(f"\n{_BLOCK_START}\n", processed)
    processed = _BR_RE.sub(f"\n{_EMPTY_LINE}\n", processed)
    processed = _HR_RE.sub(f"\n{_HR}\n", processed)

    blocks: list[NoteAtom] = []
    for segment in _SEGMENT_SPLIT_RE.split(processed):
        for line in segment.split("\n"):
            _parse_line(line.strip(), blocks, images, quote_blocks, code_blocks)
    return blocks


def _collapse_outside_code(processed: str) -> str:
    """Collapse source line breaks everywhere except inside code placeholders."""
    pieces = re.split(r"(\n<!--CODE:\d+-->\n)", processed)
    return "".join(
        piece if _CODE_PLACEHOLDER_RE.search(piece) else _SOURCE_NEWLINE_RE.sub(" ", piece)
        for piece in pieces
    )


def _parse_line(
    line: str,
    blocks: list[NoteAtom],
    images: list[ImageRef],
    quote_blocks: list[str],
    code_blocks: list[str],
) -> None:
    """Resolve one segmented line into zero or more blocks, appended in place."""
    if not line:
        if blocks:
            blocks.append(paragraph_node())
        return

    placeholder = _IMG_PLACEHOLDER_RE.fullmatch(line)
    if placeholder:
        block = _image_block(images, int(placeholder.group(1)))
        if block:
            blocks.append(block)
        return

    placeholder = _QUOTE_PLACEHOLDER_RE.fullmatch(line)
    if placeholder:
        index = int(placeholder.group(1))
        block = _quote_block(quote_blocks[index]) if index < len(quote_blocks) else None
        if block:
            blocks.append(block)
        return

    placeholder = _CODE_PLACEHOLDER_RE.fullmatch(line)
    if placeholder:
        index = int(placeholder.group(1))
        block = _code_block(code_blocks[index]) if index < len(code_blocks) else None
        if block:
            blocks.append(block)
        return

    # Text and an image on the same line: the image becomes its own node
    if "<!--IMG:" in line:
        for part in _IMG_SPLIT_RE.split(line):
            part = part.strip()
            if not part:
                continue
            placeholder = _IMG_PLACEHOLDER_RE.fullmatch(part)
            if placeholder:
                block = _image_block(images, int(placeholder.group(1)))
                if block:
                    blocks.append(block)
                continue
            inline = parse_inline(part)
            if inline and _has_real_content(inline):
                blocks.append(paragraph_node(inline))
        return

    parts = [part.strip() for part in line.split(_EMPTY_LINE)]
    for index, part in enumerate(parts):
        inline = parse_inline(part) if part else []
        if inline and _has_real_content(inline):
            blocks.append(paragraph_node(inline))
            continue
        # Blank or &nbsp;-only part: a spacer when it sits between content
        if index < len(parts) - 1 or any(parts[:index]) or (len(parts) == 1 and blocks):
            blocks.append(paragraph_node())


def html_to_note_atom(markup: str) -> NoteAtom:
    """
    Convert markup into a complete NoteAtom doc. Never raises.

    Args:
        markup: Article HTML (images already tagged with asset ids upstream)

    Returns:
        {"type": "doc", "content": [...]} with at least one block
    """
    try:
        blocks = post_process_blocks(parse_blocks(markup or ""))
    except Exception as e:
        logger.error(f"❌ Conversion failed, falling back to plain text: {e}")
        logger.debug("Conversion traceback", exc_info=True)
        try:
            plain = clean_text(markup or "").strip()
        except Exception:
            plain = ""
        return doc_node([paragraph_node([text_node(plain or FALLBACK_TEXT)])])

    if not blocks:
        blocks = [paragraph_node([text_node(" ")])]

    doc = doc_node(blocks)
    logger.debug(f"Converted document structure: {structure_summary(doc)}")
    return doc

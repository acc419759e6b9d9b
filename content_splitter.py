"""
content_splitter.py — Split Oversized Content into Note Parts
===============================================================
Mowen rejects notes whose text is longer than ~20000 characters, so long
articles are published as several notes ("parts").

HOW IT WORKS:
- Length is measured on VISIBLE text (tags stripped, entities decoded),
  never on markup length — a table-heavy page has far more markup than text.
- Under budget → exactly one part whose content is the input, untouched.
- Over budget → the markup is cut after block-closing tags
  (</p>, </div>, </h1-6>, </blockquote>, </ul>, </ol>, </table>), and blocks
  are packed into parts until the next block would overflow. A part is never
  closed while empty, so the blocks of all parts concatenate back to the input.
- A single block that alone exceeds the budget is re-cut between tokens
  (<br>, inline tags) with its markup kept; open elements are closed and
  re-opened around each cut, and every <img> stays whole. Only a text run
  that is itself too long is cut at sentence end, comma or space.
- With more than one part, every title gets a "（i/n）" suffix.
"""

from __future__ import annotations

import html
import logging
import re

from mark_parser import decode_entities
from models import NotePart

logger = logging.getLogger("clipper.splitter")

_BLOCK_CLOSE_SPLIT_RE = re.compile(
    r"(</p>|</div>|</h[1-6]>|</blockquote>|</ul>|</ol>|</table>)", re.IGNORECASE
)
_TAG_RE = re.compile(r"<[^>]*>")
_TOKEN_RE = re.compile(r"<[^>]*>|[^<]+|<")
_TAG_NAME_RE = re.compile(r"<\s*(/)?\s*([a-zA-Z][\w:-]*)")
_BR_TAG_RE = re.compile(r"<br\b[^>]*>", re.IGNORECASE)

VOID_TAGS = {
    "area", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
}


def visible_text(markup: str) -> str:
    """Human-readable text of a markup string."""
    return decode_entities(_TAG_RE.sub("", markup))


def visible_length(markup: str) -> int:
    return len(visible_text(markup))


def part_title(title: str, index: int, total: int) -> str:
    """Title for part `index` (0-based) of `total`, using full-width parentheses."""
    if total <= 1:
        return title
    return f"{title}（{index + 1}/{total}）"


def _split_text(text: str, limit: int) -> list[str]:
    """
    Split plain text into chunks of at most `limit` characters.

    Prefers sentence ends, then commas, then spaces; hard-cuts only when
    none of those appear in the second half of the window.
    """
    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        window = remaining[:limit]
        break_point = -1
        for separator in ("。", ". ", "，", ", ", " "):
            found = window.rfind(separator)
            if found >= limit // 2:
                break_point = found + len(separator)
                break
        if break_point <= 0:
            break_point = limit
        chunks.append(remaining[:break_point])
        remaining = remaining[break_point:]
    return chunks


def _blocks(content: str) -> list[str]:
    """Cut markup after every block-closing tag, keeping the tag with its block."""
    pieces = _BLOCK_CLOSE_SPLIT_RE.split(content)
    blocks = []
    # re.split with one capture group alternates text, separator, text, ...
    for i in range(0, len(pieces), 2):
        block = pieces[i] + (pieces[i + 1] if i + 1 < len(pieces) else "")
        if block:
            blocks.append(block)
    return blocks


def _tag_name(tag: str) -> tuple[str, bool] | None:
    """(lower-cased name, is_closing) for an element tag; None for comments and doctypes."""
    match = _TAG_NAME_RE.match(tag)
    if not match:
        return None
    return match.group(2).lower(), bool(match.group(1))


def _fit_block(block: str, limit: int) -> list[str]:
    """
    Re-cut one oversized block into chunks that each fit.

    Cuts fall between tokens (<br>, inline tags), so links, emphasis and
    line breaks survive, and every <img> becomes a chunk of its own.
    Elements still open at a cut are closed at the end of the chunk and
    re-opened at the start of the next one. Text is cut only when a single
    run does not fit on its own.
    """
    if visible_length(block) <= limit:
        return [block]
    logger.debug(f"Block of {visible_length(block)} chars exceeds {limit}, cutting at tag boundaries")

    chunks: list[str] = []
    open_tags: list[tuple[str, str]] = []
    current: list[str] = []
    length = 0
    has_content = False

    def flush() -> None:
        nonlocal current, length, has_content
        if not has_content:
            return
        while current and _BR_TAG_RE.fullmatch(current[-1]):
            current.pop()
        closing = "".join(f"</{name}>" for name, _ in reversed(open_tags))
        chunks.append("".join(current) + closing)
        current = [tag for _, tag in open_tags]
        length, has_content = 0, False

    for token in _TOKEN_RE.findall(block):
        if not token.startswith("<") or token == "<":
            text = decode_entities(token)
            if has_content and length + len(text) > limit:
                flush()
            was_cut = False
            while len(text) > limit - length:
                piece = _split_text(text, max(1, limit - length))[0]
                current.append(html.escape(piece, quote=False))
                length, has_content = length + len(piece), True
                text = text[len(piece):]
                was_cut = True
                flush()
            if text:
                current.append(html.escape(text, quote=False) if was_cut else token)
                length += len(text)
                has_content = has_content or bool(text.strip())
            continue

        info = _tag_name(token)
        if info is None:
            current.append(token)
            continue
        name, closing = info
        if name == "br" and chunks and not has_content:
            # The cut already ends the line
            continue
        if name == "img" and not closing:
            flush()
            current.append(token)
            has_content = True
            flush()
            continue

        current.append(token)
        if closing:
            for position in range(len(open_tags) - 1, -1, -1):
                if open_tags[position][0] == name:
                    del open_tags[position:]
                    break
        elif name not in VOID_TAGS and not token.endswith("/>"):
            open_tags.append((name, token))

    if has_content:
        chunks.append("".join(current))
    return chunks


def split_content(title: str, content: str, limit: int) -> list[NotePart]:
    """
    Partition content into length-bounded parts.

    Args:
        title:   Note title (parts get a "（i/n）" suffix when split)
        content: Article markup
        limit:   Maximum visible characters per part

    Returns:
        One or more NoteParts, in reading order, all sharing the same total
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    if visible_length(content) <= limit:
        return [NotePart(index=0, total=1, title=title, content=content)]

    chunks: list[str] = []
    current = ""
    current_length = 0
    for raw_block in _blocks(content):
        for block in _fit_block(raw_block, limit):
            block_length = visible_length(block)
            if current and current_length + block_length > limit:
                chunks.append(current)
                current, current_length = "", 0
            current += block
            current_length += block_length
    if current:
        chunks.append(current)

    total = len(chunks)
    logger.info(f"   ✂️  Content split into {total} parts (limit {limit} chars)")
    return [
        NotePart(index=i, total=total, title=part_title(title, i, total), content=chunk)
        for i, chunk in enumerate(chunks)
    ]


def resplit_part(part: NotePart, limit: int) -> list[NotePart]:
    """
    Split a part the server rejected as too long, with a tighter budget.

    Sub-part titles extend the part's own title, e.g. "X（2/3）（1/2）".
    """
    return split_content(part.title, part.content, limit)

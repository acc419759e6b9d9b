"""
image_matcher.py — Re-associating Uploaded Images with the Markup
==================================================================
After upload, each ImageProcessResult only knows the URL the image was
discovered under. The clipped markup may reference the same image through
src, data-src or data-original, with different query strings, size
suffixes or CDN path variants. This module finds the <img> tags belonging
to each result and:

  success → injects data-mowen-uid="<asset id>" (the block parser turns
            that into an image node)
  failure → replaces the tag with a plain <a href> link to the original

MATCHING:
Strategies are tried in MATCH_STRATEGIES order; the first one that hits at
least one not-yet-tagged <img> wins for that result. Tags that already carry
data-mowen-uid are never touched again.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Callable
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from image_normalizer import normalize_image_url
from models import ImageCandidate, ImageKind, ImageProcessResult

logger = logging.getLogger("clipper.images")

DEGRADED_LINK_TEXT = "[图片]"

_IMG_TAG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_WIDTH_SUFFIX_RE = re.compile(r"/\d{1,4}$")
_MEDIUM_ID_RE = re.compile(r"(\d\*[A-Za-z0-9_-]+)")

URL_ATTRIBUTES = ("src", "data-src", "data-original")
WECHAT_HOSTS = ("mmbiz.qpic.cn", "mmbiz.qlogo.cn")


def _soup(markup: str) -> BeautifulSoup:
    # class stays one string; a repeated attribute keeps its first value
    return BeautifulSoup(markup, "html.parser", multi_valued_attributes=None, on_duplicate_attribute="ignore")


def tag_attributes(tag: str) -> dict[str, str]:
    """
    Lower-cased attribute name → entity-decoded value for one <img> tag.

    Quoted, single-quoted and unquoted values are all read; a bare
    attribute maps to "".
    """
    img = _soup(tag).find("img")
    return dict(img.attrs) if img is not None else {}


def _tag_urls(attrs: dict[str, str], include_srcset: bool = False) -> list[str]:
    urls = [attrs[name] for name in URL_ATTRIBUTES if attrs.get(name)]
    if include_srcset and attrs.get("srcset"):
        urls.append(attrs["srcset"])
    return urls


# ══════════════════════════════════════════════════════════════
# STRATEGIES
# ══════════════════════════════════════════════════════════════
# Each takes the result URL and returns a predicate over one tag's
# attributes, or None when the strategy does not apply to that URL.

TagPredicate = Callable[[dict[str, str]], bool]


def match_exact(url: str) -> TagPredicate | None:
    return lambda attrs: url in _tag_urls(attrs)


def match_base_url(url: str) -> TagPredicate | None:
    base = url.split("?", 1)[0]
    if not base:
        return None
    return lambda attrs: any(base in value for value in _tag_urls(attrs))


def match_tail_identifier(url: str) -> TagPredicate | None:
    """Last 50 chars of the base URL with a trailing /640-style size removed."""
    identifier = _WIDTH_SUFFIX_RE.sub("", url.split("?", 1)[0])[-50:]
    if not identifier:
        return None
    return lambda attrs: any(identifier in value for value in _tag_urls(attrs))


def match_filename(url: str) -> TagPredicate | None:
    try:
        filename = urlparse(url).path.rsplit("/", 1)[-1]
    except ValueError:
        return None
    if len(filename) <= 5:
        return None
    return lambda attrs: any(filename in value for value in _tag_urls(attrs))


def match_cdn_id(url: str) -> TagPredicate | None:
    """Known CDNs whose stable id is one path segment (WeChat, Medium)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    identifier = None
    if parsed.netloc in WECHAT_HOSTS:
        segments = [s for s in parsed.path.split("/") if len(s) > 10]
        if segments:
            identifier = max(segments, key=len)
    elif parsed.netloc == "miro.medium.com":
        found = _MEDIUM_ID_RE.search(parsed.path)
        identifier = found.group(1) if found else None
    if not identifier:
        return None
    return lambda attrs: any(identifier in value for value in _tag_urls(attrs, include_srcset=True))


MATCH_STRATEGIES: list[tuple[str, Callable[[str], TagPredicate | None]]] = [
    ("exact", match_exact),
    ("base-url", match_base_url),
    ("identifier", match_tail_identifier),
    ("filename", match_filename),
    ("cdn-id", match_cdn_id),
]


def _rewrite_matching(markup: str, url: str, rewrite: Callable[[str, dict[str, str]], str]) -> tuple[str, str | None]:
    """Apply `rewrite` to the untagged <img> tags matched by the first hitting strategy."""
    for name, strategy in MATCH_STRATEGIES:
        predicate = strategy(url)
        if predicate is None:
            continue
        hits = 0

        def replace(match: re.Match) -> str:
            nonlocal hits
            tag = match.group(0)
            attrs = tag_attributes(tag)
            if "data-mowen-uid" in attrs or not predicate(attrs):
                return tag
            hits += 1
            return rewrite(tag, attrs)

        rewritten = _IMG_TAG_RE.sub(replace, markup)
        if hits:
            return rewritten, name
    return markup, None


def _inject_uid(asset_id: str) -> Callable[[str, dict[str, str]], str]:
    def rewrite(tag: str, attrs: dict[str, str]) -> str:
        body = tag[:-2].rstrip() if tag.endswith("/>") else tag[:-1]
        return f'{body} data-mowen-uid="{html.escape(asset_id)}">'
    return rewrite


def _as_link(url: str) -> Callable[[str, dict[str, str]], str]:
    def rewrite(tag: str, attrs: dict[str, str]) -> str:
        label = (attrs.get("alt") or "").strip() or DEGRADED_LINK_TEXT
        return f'<a href="{html.escape(url)}">{html.escape(label)}</a>'
    return rewrite


# ══════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════

def inject_asset_ids(markup: str, results: list[ImageProcessResult]) -> str:
    """Tag every <img> that belongs to a successful result with its asset id."""
    matched = 0
    for result in results:
        if not (result.success and result.asset_id):
            continue
        markup, strategy = _rewrite_matching(markup, result.original_url, _inject_uid(result.asset_id))
        if strategy:
            matched += 1
            logger.debug(f"Matched image {result.id} by {strategy}")
        else:
            logger.debug(f"Uploaded image {result.id} not found in content")
    logger.debug(f"Injected {matched} asset ids")
    return markup


def degrade_failed_images(markup: str, results: list[ImageProcessResult]) -> str:
    """Replace <img> tags of failed results with a link to the original URL."""
    for result in results:
        if result.success:
            continue
        markup, strategy = _rewrite_matching(markup, result.original_url, _as_link(result.original_url))
        if strategy:
            reason = result.failure_reason.value if result.failure_reason else "UNKNOWN"
            logger.debug(f"Degraded image {result.id} to link ({reason})")
    return markup


def remove_images(markup: str) -> str:
    """Strip every <img> tag."""
    return _IMG_TAG_RE.sub("", markup)


def _largest_srcset_url(srcset: str) -> str | None:
    best_url, best_size = None, -1.0
    for entry in srcset.split(","):
        pieces = entry.strip().split()
        if not pieces:
            continue
        size = 1.0
        if len(pieces) > 1 and pieces[1][-1:] in ("w", "x"):
            try:
                size = float(pieces[1][:-1])
            except ValueError:
                size = 1.0
        if size > best_size:
            best_url, best_size = pieces[0], size
    return best_url


def _int_attr(value: str | None) -> int | None:
    return int(value) if value and value.isdigit() else None


def extract_candidates(markup: str, base_url: str | None = None) -> list[ImageCandidate]:
    """
    Build ImageCandidates from the <img> tags of a markup string.

    url keeps the attribute value as written so it can be matched back to
    its tag; normalized_url prefers the largest srcset entry, is absolute,
    and has CDN resize parameters removed (see image_normalizer).
    """
    candidates: list[ImageCandidate] = []
    seen: set[str] = set()
    for img in _soup(markup).find_all("img"):
        attrs = img.attrs
        if "data-mowen-uid" in attrs:
            continue
        src = attrs.get("src")
        lazy_url = attrs.get("data-src") or attrs.get("data-original")
        # Lazy loaders park a data: placeholder in src
        if lazy_url and (not src or src.startswith("data:")):
            url, kind = lazy_url, ImageKind.LAZY
        else:
            url, kind = src, ImageKind.IMG
        if not url or url in seen:
            continue
        seen.add(url)

        if url.startswith("blob:"):
            kind = ImageKind.BLOB
        elif url.startswith("data:"):
            kind = ImageKind.DATA
        normalized = url
        if attrs.get("srcset") and kind is ImageKind.IMG:
            best = _largest_srcset_url(attrs["srcset"])
            if best:
                normalized, kind = best, ImageKind.SRCSET
        if kind not in (ImageKind.BLOB, ImageKind.DATA):
            normalized = normalize_image_url(normalized, base_url)

        candidates.append(
            ImageCandidate(
                id=f"img-{len(candidates)}",
                url=url,
                normalized_url=normalized,
                kind=kind,
                order=len(candidates),
                width=_int_attr(attrs.get("width")),
                height=_int_attr(attrs.get("height")),
                alt=attrs.get("alt") or None,
            )
        )
    return candidates

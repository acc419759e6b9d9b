"""
image_normalizer.py — Best-Quality URL for a Clipped Image
============================================================
Pages rarely point at the original image: CDNs and optimization proxies
serve resized, re-encoded copies behind rewritten URLs. normalize_image_url()
turns such a URL back into the one for the original file, which is what
the fetcher tries first.

STEPS:
  1. Resolve a relative URL against the page URL
  2. Protocol-relative "//host/..." → "https://host/..."
  3. Unwrap known CDNs, in UNWRAPPERS order:
       Substack    /image/fetch/<opts>/<encoded original>  → original
       Twitter     ?name=small|medium|...                  → name=large
       Next.js     /_next/image?url=<original>&w=...       → original
       Cloudflare  /cdn-cgi/image/<opts>/<path or url>     → path or url
       Imgix       w, h, fit, crop, auto, q, dpr, blur params dropped
       Cloudinary  /image/upload/<transforms>/v123/...     → /image/upload/v123/...
       WordPress   name-300x200.jpg                        → name.jpg
       Medium      /v2/resize:fit:720/format:webp/<id>     → /v2/<id>
       Shopify     width/height/crop params, _500x suffix  dropped

An unwrapper that cannot parse its URL leaves it unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Callable
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit, urlunsplit

logger = logging.getLogger("clipper.images")

_SUBSTACK_ENCODED_RE = re.compile(r"/image/fetch/[^/]+/(https?%3A%2F%2F[^?#]+)", re.IGNORECASE)
_SUBSTACK_PLAIN_RE = re.compile(r"/image/fetch/[^/]+/(https?://[^?#]+)", re.IGNORECASE)
_CLOUDFLARE_RE = re.compile(r"/cdn-cgi/image/[^/]+/(.+)")
_CLOUDINARY_RE = re.compile(r"^(https?://res\.cloudinary\.com/[^/]+/image/upload/)(.+)$")
_CLOUDINARY_VERSION_RE = re.compile(r"^v\d+$")
_CLOUDINARY_TRANSFORM_RE = re.compile(r"^(?:w|h|c|q|f|g|x|y|r|e|fl|dpr|ar)_[^/]+$")
_WORDPRESS_SIZE_RE = re.compile(r"-\d+x\d+(\.[a-zA-Z]+)$")
_MEDIUM_RESIZE_RE = re.compile(r"/resize:[^/]+")
_MEDIUM_FORMAT_RE = re.compile(r"/format:[^/]+")
_MEDIUM_V2_RE = re.compile(r"/v2/+")
_SHOPIFY_SIZE_RE = re.compile(r"_\d+x(\d+)?(\.[a-zA-Z]+)$")

IMGIX_PARAMS = ("w", "h", "fit", "crop", "auto", "q", "dpr", "blur")
SHOPIFY_PARAMS = ("width", "height", "crop")


def resolve_url(url: str, base_url: str | None = None) -> str:
    """Absolute form of `url`; left alone without a base or when already absolute."""
    if not base_url or url.startswith(("http://", "https://", "//", "data:", "blob:")):
        return url
    return urljoin(base_url, url)


def normalize_protocol(url: str) -> str:
    return "https:" + url if url.startswith("//") else url


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _without_params(url: str, names: tuple[str, ...]) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in names]
    return urlunsplit(parts._replace(query=urlencode(query)))


# ══════════════════════════════════════════════════════════════
# CDN UNWRAPPERS
# ══════════════════════════════════════════════════════════════

def unwrap_substack(url: str) -> str:
    if "substackcdn.com/image/fetch" not in url:
        return url
    encoded = _SUBSTACK_ENCODED_RE.search(url)
    if encoded:
        return unquote(encoded.group(1))
    plain = _SUBSTACK_PLAIN_RE.search(url)
    return plain.group(1) if plain else url


def unwrap_twitter(url: str) -> str:
    if "pbs.twimg.com" not in url:
        return url
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    name = dict(params).get("name")
    if not name or name in ("orig", "large"):
        return url
    params = [(k, "large" if k == "name" else v) for k, v in params]
    return urlunsplit(parts._replace(query=urlencode(params)))


def unwrap_nextjs(url: str) -> str:
    if "_next/image" not in url:
        return url
    real = dict(parse_qsl(urlsplit(url).query)).get("url")
    if not real:
        return url
    return real if real.startswith("http") else urljoin(_origin(url), real)


def unwrap_cloudflare(url: str) -> str:
    if "/cdn-cgi/image/" not in url:
        return url
    match = _CLOUDFLARE_RE.search(urlsplit(url).path)
    if not match:
        return url
    real = match.group(1)
    if real.startswith("http"):
        return unquote(real)
    return f"{_origin(url)}/{real}"


def unwrap_imgix(url: str) -> str:
    if ".imgix.net" not in url and "imgix.com" not in url:
        return url
    return _without_params(url, IMGIX_PARAMS)


def unwrap_cloudinary(url: str) -> str:
    """Drop the transformation segments between /image/upload/ and the version."""
    match = _CLOUDINARY_RE.match(url)
    if not match:
        return url
    base, rest = match.groups()
    segments = rest.split("/")
    versions = [i for i, segment in enumerate(segments[:-1]) if _CLOUDINARY_VERSION_RE.match(segment)]
    if versions:
        segments = segments[versions[0]:]
    else:
        while len(segments) > 1 and _CLOUDINARY_TRANSFORM_RE.match(segments[0]):
            segments.pop(0)
    return base + "/".join(segments)


def unwrap_wordpress(url: str) -> str:
    if "wp-content/uploads" not in url and "/uploads/" not in url:
        return url
    return _WORDPRESS_SIZE_RE.sub(r"\1", url)


def unwrap_medium(url: str) -> str:
    if "miro.medium.com" not in url:
        return url
    url = _MEDIUM_RESIZE_RE.sub("", url, count=1)
    url = _MEDIUM_FORMAT_RE.sub("", url, count=1)
    return _MEDIUM_V2_RE.sub("/v2/", url, count=1)


def unwrap_shopify(url: str) -> str:
    if "cdn.shopify.com" not in url and "shopify.com/s/files" not in url:
        return url
    parts = urlsplit(_without_params(url, SHOPIFY_PARAMS))
    return urlunsplit(parts._replace(path=_SHOPIFY_SIZE_RE.sub(r"\2", parts.path)))


UNWRAPPERS: list[tuple[str, Callable[[str], str]]] = [
    ("substack", unwrap_substack),
    ("twitter", unwrap_twitter),
    ("nextjs", unwrap_nextjs),
    ("cloudflare", unwrap_cloudflare),
    ("imgix", unwrap_imgix),
    ("cloudinary", unwrap_cloudinary),
    ("wordpress", unwrap_wordpress),
    ("medium", unwrap_medium),
    ("shopify", unwrap_shopify),
]


def normalize_image_url(url: str, base_url: str | None = None) -> str:
    """
    Best-quality absolute URL for an image reference.

    Args:
        url:      src / data-src / srcset value as found in the page
        base_url: Page URL used to resolve relative references

    Returns:
        The normalized URL; data: and blob: URLs come back unchanged
    """
    if not url or url.startswith(("data:", "blob:")):
        return url
    url = normalize_protocol(resolve_url(url, base_url))
    for name, unwrap in UNWRAPPERS:
        try:
            unwrapped = unwrap(url)
        except ValueError:
            logger.debug(f"Could not parse {name} image URL: {url[:80]}")
            continue
        if unwrapped != url:
            logger.debug(f"Unwrapped {name} image URL: {unwrapped[:80]}")
            url = unwrapped
    return url

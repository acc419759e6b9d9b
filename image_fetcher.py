"""
image_fetcher.py — Image Acquisition Pipeline
===============================================
Gets the raw bytes of an image found on the page, trying progressively
more privileged strategies and stopping at the first success.

STRATEGIES, in order:
  1. Direct fetch of the normalized (highest quality) URL with no Referer.
     Many anti-hotlinking CDNs (WeChat, Zhihu, ...) reject foreign
     referrers but happily serve referrer-less requests.
  2. Delegated fetch through the page's own execution context, which has
     the cookies/session the direct fetch lacks. Bounded by a timeout race;
     normalized URL first, then the original URL.
  3. Last resort: direct fetch of the original URL, first strict
     (2xx + image content) then lenient (any non-empty 2xx body).

data: URLs are decoded locally. blob: URLs only exist inside the page, so
only the delegated strategy can read them.

Failures raise ImageFetchError carrying an ImageFailureReason; they are
never fatal to the clip — the caller degrades the image to a link.

PREFETCH:
Prefetcher runs a fixed number of workers pulling indices from ONE shared
cursor, so downloads run ahead of the strictly serial, rate-limited
uploads that consume them in order.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import unquote_to_bytes

import httpx
from filetype import guess

from cancellation import CancellationToken, CancelledByUser
from config import Config
from models import ImageCandidate, ImageFailureReason

logger = logging.getLogger("clipper.images")

FETCH_IMAGE = "FETCH_IMAGE"

_DATA_URL_RE = re.compile(r"^data:([^;,]*)((?:;[^,]*)*),(.*)$", re.DOTALL)

# When several strategies fail, the most specific reason wins
_REASON_PRIORITY = [
    ImageFailureReason.NOT_FOUND,
    ImageFailureReason.AUTH_OR_HOTLINK,
    ImageFailureReason.CORS_OR_BLOCKED,
    ImageFailureReason.TIMEOUT_OR_NET,
    ImageFailureReason.INVALID_URL,
    ImageFailureReason.UNKNOWN,
]


class PageContext(Protocol):
    """The page's execution context (content script / headless page)."""

    async def send(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer {"type": "FETCH_IMAGE", "url": ...} with
        {"success": True, "data": {"base64", "mimeType"}} or {"success": False, "error"}."""
        ...


class ImageFetchError(Exception):
    def __init__(self, reason: ImageFailureReason, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


@dataclass
class FetchedImage:
    data: bytes
    mime_type: str
    source: str

    @property
    def size(self) -> int:
        return len(self.data)


def detect_mime_type(data: bytes) -> str | None:
    """Sniff an image MIME type from the file signature."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        return kind.mime
    return None


def decode_data_url(url: str) -> FetchedImage:
    """Decode a data: URL into bytes. Raises ImageFetchError(INVALID_URL)."""
    match = _DATA_URL_RE.match(url)
    if not match:
        raise ImageFetchError(ImageFailureReason.INVALID_URL, "Malformed data URL")
    declared, params, payload = match.groups()
    try:
        if ";base64" in params.lower():
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except (binascii.Error, ValueError) as e:
        raise ImageFetchError(ImageFailureReason.INVALID_URL, f"Undecodable data URL: {e}") from e
    if not data:
        raise ImageFetchError(ImageFailureReason.INVALID_URL, "Empty data URL")
    mime_type = detect_mime_type(data) or declared or "application/octet-stream"
    return FetchedImage(data=data, mime_type=mime_type, source="data-url")


def _status_reason(status: int) -> ImageFailureReason:
    if status in (401, 403):
        return ImageFailureReason.AUTH_OR_HOTLINK
    if status in (404, 410):
        return ImageFailureReason.NOT_FOUND
    if status in (408, 504):
        return ImageFailureReason.TIMEOUT_OR_NET
    return ImageFailureReason.UNKNOWN


def pick_reason(reasons: list[ImageFailureReason]) -> ImageFailureReason:
    for reason in _REASON_PRIORITY:
        if reason in reasons:
            return reason
    return ImageFailureReason.UNKNOWN


class ImageFetcher:
    """
    Layered image downloader.

    Args:
        http:              Shared httpx.AsyncClient
        page:              Optional PageContext for delegated fetches
        delegated_timeout: Seconds to wait for the page to answer
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        page: PageContext | None = None,
        delegated_timeout: float | None = None,
    ) -> None:
        self.http = http
        self.page = page
        self.delegated_timeout = (
            delegated_timeout if delegated_timeout is not None else Config.DELEGATED_FETCH_TIMEOUT
        )

    async def fetch(self, candidate: ImageCandidate) -> FetchedImage:
        """Run the strategies in order. Raises ImageFetchError when all fail."""
        url = candidate.url
        normalized = candidate.normalized_url or url

        if normalized.startswith("data:"):
            return decode_data_url(normalized)

        reasons: list[ImageFailureReason] = []
        is_blob = normalized.startswith("blob:") or url.startswith("blob:")

        if not is_blob:
            try:
                return await self.fetch_direct(normalized, strict=True)
            except ImageFetchError as e:
                logger.debug(f"Direct fetch failed ({e.reason.value}): {normalized[:80]}")
                reasons.append(e.reason)

        for target in dict.fromkeys([normalized, url]):
            try:
                return await self.fetch_delegated(target)
            except ImageFetchError as e:
                logger.debug(f"Delegated fetch failed ({e.reason.value}): {target[:80]}")
                reasons.append(e.reason)

        if not is_blob:
            # A strict GET of the normalized URL already ran above
            modes = (False,) if url == normalized else (True, False)
            for strict in modes:
                try:
                    return await self.fetch_direct(url, strict=strict)
                except ImageFetchError as e:
                    reasons.append(e.reason)
        else:
            reasons.append(ImageFailureReason.CORS_OR_BLOCKED)

        raise ImageFetchError(pick_reason(reasons), f"All fetch strategies failed for {url[:80]}")

    async def fetch_direct(self, url: str, strict: bool = True) -> FetchedImage:
        """
        Referrer-less GET.

        strict: require a 2xx with image content (header or file signature).
        lenient: accept any non-empty 2xx body.
        """
        if not url.startswith(("http://", "https://")):
            raise ImageFetchError(ImageFailureReason.INVALID_URL, f"Unsupported URL: {url[:40]}")
        try:
            response = await self.http.get(
                url,
                headers={"Accept": "image/avif,image/webp,image/*,*/*;q=0.8"},
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            raise ImageFetchError(ImageFailureReason.TIMEOUT_OR_NET, str(e)) from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise ImageFetchError(ImageFailureReason.INVALID_URL, str(e)) from e
        except httpx.TransportError as e:
            raise ImageFetchError(ImageFailureReason.TIMEOUT_OR_NET, str(e)) from e

        if not response.is_success:
            raise ImageFetchError(_status_reason(response.status_code), f"HTTP {response.status_code}")

        data = response.content
        if not data:
            raise ImageFetchError(ImageFailureReason.CORS_OR_BLOCKED, "Empty response body")

        header_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        sniffed = detect_mime_type(data)
        if strict and not (sniffed or header_type.startswith("image/")):
            raise ImageFetchError(
                ImageFailureReason.CORS_OR_BLOCKED, f"Not an image ({header_type or 'unknown type'})"
            )
        mime_type = sniffed or (header_type if header_type.startswith("image/") else "application/octet-stream")
        return FetchedImage(data=data, mime_type=mime_type, source="direct" if strict else "lenient")

    async def fetch_delegated(self, url: str) -> FetchedImage:
        """Ask the page to fetch the image, racing a timeout."""
        if self.page is None:
            raise ImageFetchError(ImageFailureReason.CORS_OR_BLOCKED, "No page context")
        try:
            reply = await asyncio.wait_for(
                self.page.send({"type": FETCH_IMAGE, "url": url}), timeout=self.delegated_timeout
            )
        except asyncio.TimeoutError as e:
            raise ImageFetchError(ImageFailureReason.TIMEOUT_OR_NET, "Delegated fetch timeout") from e

        if not isinstance(reply, dict) or not reply.get("success"):
            error = reply.get("error") if isinstance(reply, dict) else None
            raise ImageFetchError(ImageFailureReason.CORS_OR_BLOCKED, str(error or "Delegated fetch failed"))

        payload = reply.get("data") or {}
        try:
            data = base64.b64decode(payload.get("base64") or "", validate=False)
        except (binascii.Error, ValueError) as e:
            raise ImageFetchError(ImageFailureReason.UNKNOWN, f"Bad base64 from page: {e}") from e
        if not data:
            raise ImageFetchError(ImageFailureReason.CORS_OR_BLOCKED, "Empty data from page")
        mime_type = payload.get("mimeType") or detect_mime_type(data) or "application/octet-stream"
        return FetchedImage(data=data, mime_type=mime_type, source="delegated")


# ══════════════════════════════════════════════════════════════
# PREFETCH
# ══════════════════════════════════════════════════════════════

class Prefetcher:
    """
    Bounded-concurrency download pool feeding an in-order consumer.

    Usage:
        prefetch = Prefetcher(fetcher, candidates, concurrency=3, token=token)
        prefetch.start()
        for i in range(len(candidates)):
            image = await prefetch.get(i)   # raises ImageFetchError
        await prefetch.aclose()
    """

    def __init__(
        self,
        fetcher: ImageFetcher,
        candidates: list[ImageCandidate],
        concurrency: int = 3,
        token: CancellationToken | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.candidates = candidates
        self.concurrency = max(1, concurrency)
        self.token = token
        self._cursor = 0
        self._futures: list[asyncio.Future] = []
        self._workers: list[asyncio.Task] = []

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._futures = [loop.create_future() for _ in self.candidates]
        worker_count = min(self.concurrency, len(self.candidates))
        self._workers = [asyncio.create_task(self._worker()) for _ in range(worker_count)]

    async def _worker(self) -> None:
        while not (self.token and self.token.cancelled):
            # Claim an index before the first await
            index = self._cursor
            self._cursor += 1
            if index >= len(self.candidates):
                return
            candidate = self.candidates[index]
            try:
                outcome: FetchedImage | ImageFetchError = await self.fetcher.fetch(candidate)
            except ImageFetchError as e:
                outcome = e
            except Exception as e:
                logger.debug(f"Unexpected fetch error for image {index + 1}: {e}", exc_info=True)
                outcome = ImageFetchError(ImageFailureReason.UNKNOWN, str(e))
            if not self._futures[index].done():
                self._futures[index].set_result(outcome)

    async def get(self, index: int) -> FetchedImage:
        """Wait for image `index`. Raises ImageFetchError or CancelledByUser."""
        future = self._futures[index]
        if not future.done() and self.token is not None:
            waiter = asyncio.ensure_future(self.token.wait())
            try:
                await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
            if not future.done():
                raise CancelledByUser(self.token.reason or "cancelled")
        outcome = await future
        if isinstance(outcome, ImageFetchError):
            raise outcome
        return outcome

    async def aclose(self) -> None:
        """Stop workers that are still running and wait for them to exit."""
        for task in self._workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)


def prefetch_images(
    fetcher: ImageFetcher,
    candidates: list[ImageCandidate],
    concurrency: int | None = None,
    token: CancellationToken | None = None,
) -> Prefetcher:
    """Start downloading `candidates` in the background and return the pool."""
    prefetcher = Prefetcher(
        fetcher,
        candidates,
        concurrency=concurrency if concurrency is not None else Config.FETCH_CONCURRENCY,
        token=token,
    )
    prefetcher.start()
    return prefetcher

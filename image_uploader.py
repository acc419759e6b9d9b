"""
image_uploader.py — Image Upload Pipeline
===========================================
Turns fetched image bytes into Mowen assets.

HOW IT WORKS:
1. Size check: anything over 50 MB is rejected before any API call
2. Authorize: POST /upload/prepare → signed form (rate-limited, via the client)
3. Deliver:   multipart POST of the form fields + "file" to the storage host
4. The returned file record's uid/fileId becomes the image node's uuid

Every attempt is bounded by asyncio.wait_for(IMAGE_UPLOAD_TIMEOUT).

When an image could not be fetched at all, the server is asked to fetch it
itself (POST /upload/url) before giving up.

process_images() pipelines it all: a Prefetcher downloads ahead with a few
workers while uploads run strictly one at a time, in page order. Failures
come back as ImageProcessResult(success=False, failure_reason=...) and are
never raised.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from api_client import ApiRequestError, MowenClient, UploadedFile, generate_file_name, get_error_code
from cancellation import CancellationToken, CancelledByUser
from config import Config
from image_fetcher import FetchedImage, ImageFetcher, ImageFetchError, prefetch_images
from models import ErrorCode, ImageCandidate, ImageFailureReason, ImageProcessResult

logger = logging.getLogger("clipper.upload")

ProgressCallback = Callable[[int, int], Any]


class ImageUploadError(Exception):
    def __init__(self, reason: ImageFailureReason, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


def _upload_failure_reason(error: Exception) -> ImageFailureReason:
    if isinstance(error, ApiRequestError):
        if get_error_code(error) in (ErrorCode.TIMEOUT, ErrorCode.NETWORK):
            return ImageFailureReason.TIMEOUT_OR_NET
    return ImageFailureReason.UNKNOWN


class ImageUploader:
    """
    Uploads images through a MowenClient.

    Args:
        client:    MowenClient (its RateLimiter gates the prepare/url calls)
        timeout:   Seconds allowed per upload attempt
        max_bytes: Largest image accepted for local upload
    """

    def __init__(
        self,
        client: MowenClient,
        timeout: float | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self.client = client
        self.timeout = timeout if timeout is not None else Config.IMAGE_UPLOAD_TIMEOUT
        self.max_bytes = max_bytes if max_bytes is not None else Config.MAX_IMAGE_BYTES

    async def upload_bytes(self, image: FetchedImage, source_url: str) -> UploadedFile:
        """Prepare + deliver. Raises ImageUploadError or ApiRequestError."""
        if image.size > self.max_bytes:
            raise ImageUploadError(
                ImageFailureReason.UNKNOWN,
                f"Image is {image.size / 1024 / 1024:.1f} MB, limit is {self.max_bytes // (1024 * 1024)} MB",
            )
        file_name = generate_file_name(source_url, image.mime_type)
        form = await self.client.prepare_upload(file_name)
        return await self.client.deliver_upload(
            form, image.data, file_name, mime_type=image.mime_type, timeout=self.timeout
        )

    async def process(self, candidate: ImageCandidate, image: FetchedImage) -> ImageProcessResult:
        """Upload one fetched image. Never raises."""
        try:
            uploaded = await asyncio.wait_for(
                self.upload_bytes(image, candidate.normalized_url or candidate.url), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return self._failed(candidate, ImageFailureReason.TIMEOUT_OR_NET, "upload timeout")
        except ImageUploadError as e:
            return self._failed(candidate, e.reason, str(e))
        except ApiRequestError as e:
            return self._failed(candidate, _upload_failure_reason(e), str(e))
        return self._succeeded(candidate, uploaded)

    async def process_remote(
        self, candidate: ImageCandidate, fetch_reason: ImageFailureReason
    ) -> ImageProcessResult:
        """Have the server fetch the image by URL. Never raises."""
        url = candidate.url if candidate.url.startswith(("http://", "https://")) else candidate.normalized_url
        if not url.startswith(("http://", "https://")):
            return self._failed(candidate, fetch_reason, "not fetchable by URL")
        try:
            uploaded = await asyncio.wait_for(self.client.upload_by_url(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failed(candidate, fetch_reason, "remote upload timeout")
        except ApiRequestError as e:
            return self._failed(candidate, fetch_reason, f"remote upload failed: {e}")
        if not uploaded.asset_id:
            return self._failed(candidate, fetch_reason, "remote upload returned no file id")
        return self._succeeded(candidate, uploaded)

    @staticmethod
    def _succeeded(candidate: ImageCandidate, uploaded: UploadedFile) -> ImageProcessResult:
        return ImageProcessResult(
            id=candidate.id,
            original_url=candidate.url,
            success=True,
            asset_url=uploaded.url,
            file_id=uploaded.file_id,
            uid=uploaded.uid,
        )

    @staticmethod
    def _failed(candidate: ImageCandidate, reason: ImageFailureReason, detail: str) -> ImageProcessResult:
        logger.debug(f"Image {candidate.id} failed ({reason.value}): {detail}")
        return ImageProcessResult(
            id=candidate.id,
            original_url=candidate.url,
            success=False,
            failure_reason=reason,
        )


async def _report(on_progress: ProgressCallback | None, done: int, total: int) -> None:
    if on_progress is None:
        return
    outcome = on_progress(done, total)
    if inspect.isawaitable(outcome):
        await outcome


async def process_images(
    candidates: list[ImageCandidate],
    client: MowenClient,
    fetcher: ImageFetcher,
    max_images: int | None = None,
    token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
    concurrency: int | None = None,
    uploader: ImageUploader | None = None,
) -> list[ImageProcessResult]:
    """
    Fetch and upload images in page order.

    Returns one ImageProcessResult per candidate processed. On cancellation
    the loop stops before the next upload and returns what it has.
    """
    limit = Config.MAX_IMAGES if max_images is None else max_images
    selected = candidates[: max(0, limit)]
    if len(candidates) > len(selected):
        logger.info(f"🖼️  Processing first {len(selected)} of {len(candidates)} images")
    if not selected:
        return []

    uploader = uploader or ImageUploader(client)
    prefetcher = prefetch_images(fetcher, selected, concurrency=concurrency, token=token)
    results: list[ImageProcessResult] = []
    total = len(selected)

    try:
        for index, candidate in enumerate(selected):
            if token is not None and token.cancelled:
                logger.info("⏹️  Image processing cancelled")
                break
            try:
                image = await prefetcher.get(index)
            except CancelledByUser:
                logger.info("⏹️  Image processing cancelled")
                break
            except ImageFetchError as e:
                logger.debug(f"Fetch failed for image {index + 1} ({e.reason.value}), trying remote upload")
                result = await uploader.process_remote(candidate, e.reason)
            else:
                result = await uploader.process(candidate, image)

            results.append(result)
            status = "✅" if result.success else f"⚠️  {result.failure_reason.value}"
            logger.info(f"   Image {index + 1}/{total}: {status}")
            await _report(on_progress, index + 1, total)
    finally:
        await prefetcher.aclose()

    uploaded = sum(1 for r in results if r.success)
    logger.info(f"🖼️  Images: {uploaded} uploaded, {len(results) - uploaded} failed")
    return results

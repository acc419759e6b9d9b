"""
test_image_uploader.py — Unit tests for image_uploader.py
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from api_client import MowenClient
from cancellation import CancellationToken
from image_fetcher import FetchedImage, ImageFetcher
from image_uploader import ImageUploader, process_images
from models import ImageCandidate, ImageFailureReason

from conftest import API_BASE, PNG_BYTES, make_http


def _candidate(url, index=0):
    return ImageCandidate(id=f"img-{index}", url=url, normalized_url=url, order=index)


def _setup(server):
    http = make_http(server)
    return MowenClient("test-key", base_url=API_BASE, http=http), ImageFetcher(http)


PNG = FetchedImage(data=PNG_BYTES, mime_type="image/png", source="direct")


class TestImageUploader:
    """Test single-image upload paths."""

    @pytest.mark.asyncio
    async def test_upload_success(self, server):
        client, _ = _setup(server)
        result = await ImageUploader(client).process(_candidate("https://x.com/photo.png"), PNG)
        assert result.success
        assert result.uid == "uid1"
        assert result.file_id == "file1"
        assert result.asset_id == "uid1"
        assert result.original_url == "https://x.com/photo.png"
        assert server.calls("/upload/prepare") == [{"fileType": 1, "fileName": "photo.png"}]

    @pytest.mark.asyncio
    async def test_oversized_image_rejected_before_any_call(self, server):
        client, _ = _setup(server)
        result = await ImageUploader(client, max_bytes=10).process(_candidate("https://x.com/a.png"), PNG)
        assert not result.success
        assert result.failure_reason is ImageFailureReason.UNKNOWN
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_remote_upload(self, server):
        server.remote_upload_ok.add("https://x.com/a.png")
        client, _ = _setup(server)
        result = await ImageUploader(client).process_remote(
            _candidate("https://x.com/a.png"), ImageFailureReason.AUTH_OR_HOTLINK
        )
        assert result.success
        assert result.asset_id == "uid1"

    @pytest.mark.asyncio
    async def test_remote_upload_failure_keeps_fetch_reason(self, server):
        client, _ = _setup(server)
        result = await ImageUploader(client).process_remote(
            _candidate("https://x.com/a.png"), ImageFailureReason.AUTH_OR_HOTLINK
        )
        assert not result.success
        assert result.failure_reason is ImageFailureReason.AUTH_OR_HOTLINK

    @pytest.mark.asyncio
    async def test_remote_upload_skipped_for_blob(self, server):
        client, _ = _setup(server)
        result = await ImageUploader(client).process_remote(
            _candidate("blob:https://x.com/1"), ImageFailureReason.CORS_OR_BLOCKED
        )
        assert result.failure_reason is ImageFailureReason.CORS_OR_BLOCKED
        assert server.requests == []


class TestProcessImages:
    """Test the fetch → upload pipeline."""

    @pytest.mark.asyncio
    async def test_mixed_results_in_page_order(self, server):
        server.images["https://x.com/ok.png"] = PNG_BYTES
        server.remote_upload_ok.add("https://x.com/remote.png")
        client, fetcher = _setup(server)
        candidates = [
            _candidate("https://x.com/ok.png", 0),
            _candidate("https://x.com/remote.png", 1),
            _candidate("https://x.com/missing.png", 2),
        ]
        progress = []

        results = await process_images(
            candidates, client, fetcher, on_progress=lambda done, total: progress.append((done, total))
        )

        assert [r.id for r in results] == ["img-0", "img-1", "img-2"]
        assert [r.success for r in results] == [True, True, False]
        assert results[2].failure_reason is ImageFailureReason.NOT_FOUND
        assert progress == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_max_images_cap(self, server):
        for i in range(3):
            server.images[f"https://x.com/{i}.png"] = PNG_BYTES
        client, fetcher = _setup(server)
        candidates = [_candidate(f"https://x.com/{i}.png", i) for i in range(3)]
        results = await process_images(candidates, client, fetcher, max_images=2)
        assert len(results) == 2
        assert len(server.calls("/upload/prepare")) == 2

    @pytest.mark.asyncio
    async def test_zero_cap_does_nothing(self, server):
        client, fetcher = _setup(server)
        assert await process_images([_candidate("https://x.com/a.png")], client, fetcher, max_images=0) == []
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, server):
        server.images["https://x.com/a.png"] = PNG_BYTES
        client, fetcher = _setup(server)
        seen = []

        async def on_progress(done, total):
            seen.append(done)

        await process_images([_candidate("https://x.com/a.png")], client, fetcher, on_progress=on_progress)
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, server):
        server.images["https://x.com/a.png"] = PNG_BYTES
        client, fetcher = _setup(server)
        token = CancellationToken()
        token.cancel()
        results = await process_images([_candidate("https://x.com/a.png")], client, fetcher, token=token)
        assert results == []
        assert server.calls("/upload/prepare") == []


def _slow_http(server, path, delay=1.0):
    """Like make_http, but requests to `path` stall for `delay` seconds first."""

    async def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url).endswith(path):
            await asyncio.sleep(delay)
        return server.handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestUploadTimeouts:
    """Test that a stalled upload is cut off and classified."""

    @pytest.mark.asyncio
    async def test_slow_delivery_times_out(self, server):
        client = MowenClient("test-key", base_url=API_BASE, http=_slow_http(server, "/upload"))
        result = await ImageUploader(client, timeout=0.05).process(_candidate("https://x.com/a.png"), PNG)
        assert not result.success
        assert result.failure_reason is ImageFailureReason.TIMEOUT_OR_NET
        assert len(server.calls("/upload/prepare")) == 1

    @pytest.mark.asyncio
    async def test_slow_remote_upload_keeps_fetch_reason(self, server):
        server.remote_upload_ok.add("https://x.com/a.png")
        client = MowenClient("test-key", base_url=API_BASE, http=_slow_http(server, "/upload/url"))
        result = await ImageUploader(client, timeout=0.05).process_remote(
            _candidate("https://x.com/a.png"), ImageFailureReason.AUTH_OR_HOTLINK
        )
        assert not result.success
        assert result.failure_reason is ImageFailureReason.AUTH_OR_HOTLINK

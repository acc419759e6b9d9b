"""
conftest.py — Shared fixtures for Mowen Clipper unit tests
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest

# Add project root to sys.path so tests can import the clipper modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import ClipSettings  # noqa: E402

API_BASE = "https://open.mowen.cn/api/open/api/v1"
STORAGE_ENDPOINT = "https://storage.mowen.test/upload"

# Smallest byte string that sniffs as image/png
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + b"\x00" * 17


class FakeMowenServer:
    """
    Scripted stand-in for the Mowen open API and the storage host,
    served through httpx.MockTransport.

    - create_responses: queued httpx.Response objects for /note/create
      (each call pops one; when empty, creation succeeds)
    - images: URL → bytes served for plain GET requests
    - image_status: URL → HTTP status for GET requests that should fail
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict | None]] = []
        self.create_responses: list[httpx.Response] = []
        self.edit_responses: list[httpx.Response] = []
        self.remote_upload_ok: set[str] = set()
        self.images: dict[str, bytes] = {}
        self.image_status: dict[str, int] = {}
        self._notes = 0
        self._files = 0

    # ── Recorded traffic ──

    def calls(self, path: str) -> list[dict]:
        return [body for method, url, body in self.requests if url.endswith(path)]

    @property
    def created_bodies(self) -> list[dict]:
        return [call["body"] for call in self.calls("/note/create")]

    # ── Handler ──

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        body = None
        if request.method == "POST" and request.headers.get("content-type", "").startswith("application/json"):
            body = json.loads(request.content)
        self.requests.append((request.method, url, body))

        if request.method == "GET":
            if url in self.images:
                return httpx.Response(200, content=self.images[url], headers={"content-type": "image/png"})
            return httpx.Response(self.image_status.get(url, 404))

        if url == STORAGE_ENDPOINT:
            self._files += 1
            return httpx.Response(
                200,
                json={"file": {"fileId": f"file{self._files}", "uid": f"uid{self._files}",
                               "url": f"https://cdn.mowen.test/uid{self._files}.png"}},
            )
        if url.endswith("/note/create"):
            if self.create_responses:
                return self.create_responses.pop(0)
            self._notes += 1
            return httpx.Response(200, json={"code": 0, "data": {"noteId": f"note{self._notes}"}})
        if url.endswith("/note/edit"):
            if self.edit_responses:
                return self.edit_responses.pop(0)
            return httpx.Response(200, json={"code": 0, "data": {"noteId": body["noteId"]}})
        if url.endswith("/note/set"):
            return httpx.Response(200, json={"code": 0, "data": {}})
        if url.endswith("/upload/prepare"):
            return httpx.Response(
                200,
                json={"code": 0, "data": {"form": {"endpoint": STORAGE_ENDPOINT, "key": "k", "policy": "p"}}},
            )
        if url.endswith("/upload/url"):
            if body["url"] in self.remote_upload_ok:
                self._files += 1
                return httpx.Response(
                    200,
                    json={"code": 0, "data": {"file": {"fileId": f"file{self._files}", "uid": f"uid{self._files}",
                                                       "url": "https://cdn.mowen.test/remote.png"}}},
                )
            return httpx.Response(200, json={"code": 500, "message": "remote fetch failed"})
        return httpx.Response(404, json={"message": "unknown endpoint"})


def too_long_response() -> httpx.Response:
    return httpx.Response(200, json={"code": 400, "message": "内容字数超出限制"})


def make_http(server: FakeMowenServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(server.handler))


@pytest.fixture
def server() -> FakeMowenServer:
    return FakeMowenServer()


@pytest.fixture
def settings() -> ClipSettings:
    return ClipSettings(apiKey="test-key", maxImages=50, createIndexNote=True)


@pytest.fixture
def sample_article_html() -> str:
    """A typical clipped article: heading, paragraphs, list, quote, image."""
    return """\
<article>
  <h2>一、为什么要做笔记</h2>
  <p>好的笔记能帮你<strong>记住</strong>重要的东西。参考 https://example.com/notes 这篇文章。</p>
  <ul><li>第一点</li><li>第二点</li></ul>
  <blockquote>引用第一行<br>引用第二行</blockquote>
  <p><img src="https://img.example.com/a.png" alt="示意图"></p>
  <p>结尾段落，<em>完</em>。</p>
</article>
"""

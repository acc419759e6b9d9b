"""
test_api_client.py — Unit tests for api_client.py against a mocked transport
"""

from __future__ import annotations

import httpx
import pytest

from api_client import (
    ApiRequestError,
    MowenClient,
    file_name_from_url,
    generate_file_name,
    get_error_code,
    note_urls,
)
from models import ErrorCode
from note_atom import doc_node, text_paragraph
from rate_limiter import RateLimiter

from conftest import API_BASE, STORAGE_ENDPOINT, make_http, too_long_response


BODY = doc_node([text_paragraph("hello")])


def _client(server, **kwargs) -> MowenClient:
    return MowenClient("test-key", base_url=API_BASE, http=make_http(server), **kwargs)


def _raising_client(error: Exception) -> MowenClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MowenClient("test-key", base_url=API_BASE, http=http)


# ══════════════════════════════════════════════════════════════
# Error classification
# ══════════════════════════════════════════════════════════════

class TestGetErrorCode:
    """Test get_error_code() mapping."""

    def test_explicit_error_code_wins(self):
        assert get_error_code(ApiRequestError("x", status=401, error_code=ErrorCode.TIMEOUT)) is ErrorCode.TIMEOUT

    def test_status_mapping(self):
        assert get_error_code(ApiRequestError("x", status=401)) is ErrorCode.UNAUTHORIZED
        assert get_error_code(ApiRequestError("x", status=429)) is ErrorCode.RATE_LIMIT
        assert get_error_code(ApiRequestError("x", status=503)) is ErrorCode.SERVICE_UNAVAILABLE
        assert get_error_code(ApiRequestError("x", status=413)) is ErrorCode.CONTENT_TOO_LONG
        assert get_error_code(ApiRequestError("x", status=404)) is ErrorCode.NOTE_NOT_FOUND

    def test_envelope_code_mapping(self):
        assert get_error_code(ApiRequestError("x", code=401)) is ErrorCode.UNAUTHORIZED
        assert get_error_code(ApiRequestError("x", code="RATE_LIMITED")) is ErrorCode.RATE_LIMIT

    def test_transport_errors(self):
        assert get_error_code(httpx.ReadTimeout("slow")) is ErrorCode.TIMEOUT
        assert get_error_code(httpx.ConnectError("refused")) is ErrorCode.NETWORK

    def test_message_fallback(self):
        assert get_error_code(ApiRequestError("内容字数超出限制", code=400)) is ErrorCode.CONTENT_TOO_LONG
        assert get_error_code(ApiRequestError("something odd", code=7)) is ErrorCode.UNKNOWN


class TestFileNames:
    """Test upload file naming."""

    def test_name_from_url(self):
        assert file_name_from_url("https://x.com/img/photo.jpg?w=1") == "photo.jpg"

    def test_no_name_in_url(self):
        assert file_name_from_url("https://x.com/img/12345") is None

    def test_generated_name_uses_mime_extension(self):
        name = generate_file_name("https://x.com/img/12345", "image/webp")
        assert name.startswith("image_")
        assert name.endswith(".webp")

    def test_generated_name_defaults_to_jpg(self):
        assert generate_file_name("blob:https://x.com/1").endswith(".jpg")

    def test_note_urls(self):
        assert note_urls("abc", is_public=True) == (
            "https://note.mowen.cn/detail/abc", "https://note.mowen.cn/detail/abc"
        )
        assert note_urls("abc", is_public=False)[0] == "https://note.mowen.cn/editor/abc"


# ══════════════════════════════════════════════════════════════
# Notes
# ══════════════════════════════════════════════════════════════

class TestCreateNote:
    """Test create_note() against the fake server."""

    @pytest.mark.asyncio
    async def test_success(self, server):
        result = await _client(server).create_note(BODY, is_public=False)
        assert result.success
        assert result.note_id == "note1"
        assert result.note_url == "https://note.mowen.cn/editor/note1"
        assert result.share_url == "https://note.mowen.cn/detail/note1"
        assert server.calls("/note/create") == [{"body": BODY, "settings": {"autoPublish": False}}]

    @pytest.mark.asyncio
    async def test_public_with_auto_tag(self, server):
        result = await _client(server).create_note(BODY, is_public=True, enable_auto_tag=True)
        assert result.note_url == result.share_url
        settings = server.calls("/note/create")[0]["settings"]
        assert settings == {"autoPublish": True, "tags": ["墨问剪藏"]}

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"code": 0, "data": {"noteId": "n"}})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        await MowenClient("secret", base_url=API_BASE, http=http).create_note(BODY)
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_nonzero_code_on_http_200_is_failure(self, server):
        server.create_responses.append(httpx.Response(200, json={"code": 500, "message": "server exploded"}))
        result = await _client(server).create_note(BODY)
        assert not result.success
        assert result.error == "server exploded"

    @pytest.mark.asyncio
    async def test_missing_code_is_success(self, server):
        server.create_responses.append(httpx.Response(200, json={"data": {"noteId": "plain"}}))
        result = await _client(server).create_note(BODY)
        assert result.success
        assert result.note_id == "plain"

    @pytest.mark.asyncio
    async def test_too_long(self, server):
        server.create_responses.append(too_long_response())
        result = await _client(server).create_note(BODY)
        assert result.error_code is ErrorCode.CONTENT_TOO_LONG

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (401, ErrorCode.UNAUTHORIZED),
        (429, ErrorCode.RATE_LIMIT),
        (503, ErrorCode.SERVICE_UNAVAILABLE),
    ])
    async def test_http_status_mapping(self, server, status, expected):
        server.create_responses.append(httpx.Response(status))
        result = await _client(server).create_note(BODY)
        assert not result.success
        assert result.error_code is expected

    @pytest.mark.asyncio
    async def test_failure_with_note_id_is_salvaged(self, server):
        server.create_responses.append(
            httpx.Response(200, json={"code": 1, "message": "partial", "data": {"noteId": "saved"}})
        )
        result = await _client(server).create_note(BODY)
        assert result.success
        assert result.note_id == "saved"

    @pytest.mark.asyncio
    async def test_non_json_body_is_failure(self, server):
        server.create_responses.append(httpx.Response(200, text="<html>oops</html>"))
        result = await _client(server).create_note(BODY)
        assert not result.success
        assert "INVALID_RESPONSE" in result.error

    @pytest.mark.asyncio
    async def test_missing_note_id_is_failure(self, server):
        server.create_responses.append(httpx.Response(200, json={"code": 0, "data": {}}))
        result = await _client(server).create_note(BODY)
        assert not result.success
        assert result.error_code is ErrorCode.UNKNOWN

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await _raising_client(httpx.ReadTimeout("slow")).create_note(BODY)
        assert result.error_code is ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_network_error(self):
        result = await _raising_client(httpx.ConnectError("refused")).create_note(BODY)
        assert result.error_code is ErrorCode.NETWORK


class TestEditAndVisibility:
    """Test edit_note() and set_visibility()."""

    @pytest.mark.asyncio
    async def test_edit_sends_whole_body(self, server):
        result = await _client(server).edit_note("n1", BODY, is_public=True)
        assert result.success
        assert result.note_url == "https://note.mowen.cn/detail/n1"
        assert server.calls("/note/edit") == [{"noteId": "n1", "body": BODY}]

    @pytest.mark.asyncio
    async def test_edit_missing_note(self, server):
        server.edit_responses.append(httpx.Response(404, json={"message": "note not found"}))
        result = await _client(server).edit_note("gone", BODY)
        assert not result.success
        assert result.error_code is ErrorCode.NOTE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_set_visibility_body(self, server):
        result = await _client(server).set_visibility("n1", is_public=False)
        assert result.success
        assert server.calls("/note/set") == [{
            "noteId": "n1",
            "section": 1,
            "settings": {"privacy": {"type": "normal", "rule": {"noShare": True}}},
        }]


class TestRateLimitedClient:
    """Test that API calls go through the limiter."""

    @pytest.mark.asyncio
    async def test_calls_are_spaced(self, server):
        waits = []

        async def sleep(seconds):
            waits.append(seconds)

        limiter = RateLimiter(min_interval=1.1, clock=lambda: 50.0, sleep=sleep)
        client = _client(server, limiter=limiter)
        await client.create_note(BODY)
        await client.create_note(BODY)
        assert waits == [pytest.approx(1.1)]


# ══════════════════════════════════════════════════════════════
# Uploads
# ══════════════════════════════════════════════════════════════

class TestUploads:
    """Test the upload endpoints."""

    @pytest.mark.asyncio
    async def test_upload_by_url(self, server):
        server.remote_upload_ok.add("https://x.com/a.png")
        uploaded = await _client(server).upload_by_url("https://x.com/a.png")
        assert uploaded.asset_id == "uid1"
        assert server.calls("/upload/url") == [
            {"fileType": 1, "url": "https://x.com/a.png", "fileName": "a.png"}
        ]

    @pytest.mark.asyncio
    async def test_upload_by_url_failure_raises(self, server):
        with pytest.raises(ApiRequestError):
            await _client(server).upload_by_url("https://x.com/b.png")

    @pytest.mark.asyncio
    async def test_prepare_and_deliver(self, server):
        client = _client(server)
        form = await client.prepare_upload("a.png")
        assert form == {"endpoint": STORAGE_ENDPOINT, "key": "k", "policy": "p"}
        uploaded = await client.deliver_upload(form, b"bytes", "a.png", mime_type="image/png")
        assert uploaded.uid == "uid1"
        assert uploaded.file_id == "file1"

    @pytest.mark.asyncio
    async def test_deliver_sends_form_fields_and_file(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content
            return httpx.Response(200, json={"data": {"file": {"fileId": "f", "uid": "u"}}})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = MowenClient("k", base_url=API_BASE, http=http)
        uploaded = await client.deliver_upload(
            {"endpoint": STORAGE_ENDPOINT, "policy": "signed"}, b"PNGDATA", "a.png", mime_type="image/png"
        )
        assert uploaded.uid == "u"
        assert b'name="policy"' in captured["body"]
        assert b"signed" in captured["body"]
        assert b'name="file"; filename="a.png"' in captured["body"]
        assert b"PNGDATA" in captured["body"]

    @pytest.mark.asyncio
    async def test_deliver_accepts_flat_record(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"uid": "flat", "url": "https://cdn/x.png"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        uploaded = await MowenClient("k", base_url=API_BASE, http=http).deliver_upload(
            {"endpoint": STORAGE_ENDPOINT}, b"x", "x.png"
        )
        assert uploaded.asset_id == "flat"

    @pytest.mark.asyncio
    async def test_deliver_without_file_id_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ApiRequestError):
            await MowenClient("k", base_url=API_BASE, http=http).deliver_upload(
                {"endpoint": STORAGE_ENDPOINT}, b"x", "x.png"
            )

    @pytest.mark.asyncio
    async def test_deliver_http_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="denied")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ApiRequestError) as excinfo:
            await MowenClient("k", base_url=API_BASE, http=http).deliver_upload(
                {"endpoint": STORAGE_ENDPOINT}, b"x", "x.png"
            )
        assert excinfo.value.status == 403

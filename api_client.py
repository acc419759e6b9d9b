"""
api_client.py — Mowen Open API Client
=======================================
Async HTTP client (httpx) for the Mowen open API.

ENDPOINTS USED:
  POST /note/create      {body, settings}            → {noteId}
  POST /note/edit        {noteId, body}              → replaces the whole body
  POST /note/set         {noteId, section, settings} → visibility
  POST /upload/url       {fileType, url, fileName}   → {file}
  POST /upload/prepare   {fileType, fileName}        → {form: {endpoint, ...}}
  POST <form.endpoint>   multipart form + "file"     → {file} (storage host)

RESPONSE ENVELOPE:
  {code, message, data}. A present, non-zero numeric code is a failure
  even on HTTP 200. No code at all on a 2xx means success.

ERROR HANDLING:
- _request() raises ApiRequestError; get_error_code() maps it onto ErrorCode.
- Note-level methods (create/edit/set) never raise: they return a
  NoteCreateResult. A failed create whose error payload still carries a
  noteId is salvaged as a success.
- If a RateLimiter is given, every API call (not the storage delivery)
  is scheduled through it.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from config import Config
from models import ErrorCode, NoteCreateResult
from note_atom import NoteAtom, doc_node, text_paragraph
from rate_limiter import RateLimiter

logger = logging.getLogger("clipper.api")

NOTE_SHARE_URL = "https://note.mowen.cn/detail/{note_id}"
NOTE_EDITOR_URL = "https://note.mowen.cn/editor/{note_id}"

AUTO_TAG = "墨问剪藏"
FILE_TYPE_IMAGE = 1

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/bmp": ".bmp",
}


class ApiRequestError(Exception):
    """A failed API call, with whatever the server told us."""

    def __init__(
        self,
        message: str,
        status: int = 0,
        code: int | str | None = None,
        data: Any = None,
        raw_body: str = "",
        error_code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.data = data
        self.raw_body = raw_body
        self.error_code = error_code


@dataclass
class UploadedFile:
    """File record returned by the upload endpoints."""
    url: str | None = None
    file_id: str | None = None
    uid: str | None = None

    @property
    def asset_id(self) -> str | None:
        return self.uid or self.file_id

    @classmethod
    def from_dict(cls, data: dict) -> "UploadedFile":
        return cls(
            url=data.get("url"),
            file_id=data.get("fileId"),
            uid=data.get("uid"),
        )


# ══════════════════════════════════════════════════════════════
# ERROR CLASSIFICATION
# ══════════════════════════════════════════════════════════════

def error_code_from_message(message: str) -> ErrorCode:
    """Last-resort classification from an error message."""
    msg = message.lower()
    if "401" in msg or "unauthorized" in msg or "invalid key" in msg:
        return ErrorCode.UNAUTHORIZED
    if "timeout" in msg or "timed out" in msg or "超时" in msg:
        return ErrorCode.TIMEOUT
    if "too long" in msg or "too large" in msg or "字数" in msg or "超" in msg:
        return ErrorCode.CONTENT_TOO_LONG
    if "429" in msg or "rate" in msg or "limit" in msg:
        return ErrorCode.RATE_LIMIT
    if "network" in msg or "connect" in msg:
        return ErrorCode.NETWORK
    if "not found" in msg or "不存在" in msg:
        return ErrorCode.NOTE_NOT_FOUND
    return ErrorCode.UNKNOWN


def get_error_code(error: Exception) -> ErrorCode:
    """Map any exception raised by the client onto the closed ErrorCode set."""
    if isinstance(error, ApiRequestError):
        if error.error_code is not None:
            return error.error_code
        code_text = str(error.code).upper() if isinstance(error.code, str) else ""
        if error.status == 401 or error.code == 401 or "UNAUTHORIZED" in code_text:
            return ErrorCode.UNAUTHORIZED
        if error.status == 429 or error.code == 429 or "RATE" in code_text:
            return ErrorCode.RATE_LIMIT
        if error.status == 503 or error.code == 503 or "SERVICE" in code_text:
            return ErrorCode.SERVICE_UNAVAILABLE
        if error.status == 413 or "TOO LARGE" in code_text:
            return ErrorCode.CONTENT_TOO_LONG
        if error.status == 404:
            return ErrorCode.NOTE_NOT_FOUND
    if isinstance(error, httpx.TimeoutException):
        return ErrorCode.TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ErrorCode.NETWORK
    return error_code_from_message(str(error))


def _salvage_note_id(error: ApiRequestError) -> str | None:
    """Some failures still created the note; its id rides along in data."""
    data = error.data
    if not isinstance(data, dict):
        return None
    note_id = data.get("noteId")
    if not note_id and isinstance(data.get("data"), dict):
        note_id = data["data"].get("noteId")
    return str(note_id) if note_id else None


# ══════════════════════════════════════════════════════════════
# FILE NAMES
# ══════════════════════════════════════════════════════════════

def file_name_from_url(url: str) -> str | None:
    """Last path segment of a URL, if it looks like a file name."""
    try:
        last = urlparse(url).path.rsplit("/", 1)[-1]
    except ValueError:
        return None
    if last and "." in last:
        return last
    return None


def generate_file_name(url: str, mime_type: str | None = None) -> str:
    """File name for an upload: from the URL, else image_<ms><ext> by MIME type."""
    name = file_name_from_url(url)
    if name:
        return name
    ext = MIME_EXTENSIONS.get((mime_type or "").lower(), ".jpg")
    return f"image_{int(time.time() * 1000)}{ext}"


def note_urls(note_id: str, is_public: bool) -> tuple[str, str]:
    """Return (note_url, share_url); private notes open in the editor."""
    share_url = NOTE_SHARE_URL.format(note_id=note_id)
    editor_url = NOTE_EDITOR_URL.format(note_id=note_id)
    return (share_url if is_public else editor_url), share_url


# ══════════════════════════════════════════════════════════════
# CLIENT
# ══════════════════════════════════════════════════════════════

class MowenClient:
    """
    Thin async wrapper over the open API.

    Usage:
        async with MowenClient(api_key, limiter=limiter) as client:
            result = await client.create_note(body, is_public=False)
    """

    def __init__(
        self,
        api_key: str,
        limiter: RateLimiter | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.limiter = limiter
        self.base_url = (base_url or Config.MOWEN_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else Config.API_TIMEOUT
        self._http = http or httpx.AsyncClient(timeout=self.timeout)
        self._owns_http = http is None

    async def __aenter__(self) -> "MowenClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── Transport ──

    async def _post(self, endpoint: str, body: dict) -> Any:
        try:
            response = await self._http.post(
                f"{self.base_url}{endpoint}",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ApiRequestError("Request timeout", error_code=ErrorCode.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ApiRequestError(f"Network error: {e}", error_code=ErrorCode.NETWORK) from e

        raw_body = response.text
        status = response.status_code
        if status == 401:
            raise ApiRequestError("UNAUTHORIZED: Invalid API key", status=status, raw_body=raw_body)
        if status == 429:
            raise ApiRequestError("RATE_LIMIT: Too many requests", status=status, raw_body=raw_body)
        if status == 503:
            raise ApiRequestError("SERVICE_UNAVAILABLE", status=status, raw_body=raw_body)

        try:
            payload = json.loads(raw_body) if raw_body else {}
        except ValueError:
            payload = None

        if not response.is_success:
            data = payload.get("data") if isinstance(payload, dict) else None
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ApiRequestError(
                f"NETWORK: HTTP {status}" + (f" {message}" if message else ""),
                status=status,
                code=payload.get("code") if isinstance(payload, dict) else None,
                data=data,
                raw_body=raw_body,
            )

        if not isinstance(payload, dict):
            raise ApiRequestError(
                "INVALID_RESPONSE: response is not a JSON object",
                status=status,
                raw_body=raw_body,
            )

        if "code" not in payload or payload["code"] is None:
            return payload.get("data", payload)

        try:
            code = int(payload["code"])
        except (TypeError, ValueError):
            code = None
        if code is not None and code != 0:
            raise ApiRequestError(
                payload.get("message") or f"API error code {code}",
                status=status,
                code=code,
                data=payload.get("data"),
                raw_body=raw_body,
            )
        return payload.get("data", payload)

    async def _request(self, endpoint: str, body: dict) -> Any:
        """POST one API call, through the rate limiter when one is set."""
        logger.debug(f"API request {endpoint}")
        if self.limiter is None:
            return await self._post(endpoint, body)
        return await self.limiter.schedule(self._post, endpoint, body)

    # ── Notes ──

    async def create_note(
        self,
        body: NoteAtom,
        is_public: bool = False,
        enable_auto_tag: bool = False,
    ) -> NoteCreateResult:
        """Create a note from a NoteAtom doc. Never raises."""
        settings: dict[str, Any] = {"autoPublish": is_public}
        if enable_auto_tag:
            settings["tags"] = [AUTO_TAG]
        try:
            data = await self._request("/note/create", {"body": body, "settings": settings})
        except (ApiRequestError, httpx.HTTPError) as e:
            note_id = _salvage_note_id(e) if isinstance(e, ApiRequestError) else None
            if note_id:
                logger.warning(f"⚠️  Create reported an error but returned note {note_id}; keeping it")
                return self._note_result(note_id, is_public)
            code = get_error_code(e)
            logger.debug(f"Create note failed ({code.value}): {e}")
            return NoteCreateResult(success=False, error=str(e), error_code=code)

        note_id = data.get("noteId") if isinstance(data, dict) else None
        if not note_id:
            return NoteCreateResult(
                success=False, error="No noteId in response", error_code=ErrorCode.UNKNOWN
            )
        return self._note_result(str(note_id), is_public)

    async def edit_note(self, note_id: str, body: NoteAtom, is_public: bool = False) -> NoteCreateResult:
        """Replace a note's whole body. Never raises."""
        try:
            await self._request("/note/edit", {"noteId": note_id, "body": body})
        except (ApiRequestError, httpx.HTTPError) as e:
            code = get_error_code(e)
            logger.debug(f"Edit note {note_id} failed ({code.value}): {e}")
            return NoteCreateResult(success=False, note_id=note_id, error=str(e), error_code=code)
        return self._note_result(note_id, is_public)

    async def set_visibility(self, note_id: str, is_public: bool) -> NoteCreateResult:
        """Switch a note between public and private. Never raises."""
        body = {
            "noteId": note_id,
            "section": 1,
            "settings": {"privacy": {"type": "normal", "rule": {"noShare": not is_public}}},
        }
        try:
            await self._request("/note/set", body)
        except (ApiRequestError, httpx.HTTPError) as e:
            return NoteCreateResult(success=False, note_id=note_id, error=str(e), error_code=get_error_code(e))
        return self._note_result(note_id, is_public)

    async def test_connection(self) -> tuple[bool, str]:
        """Check the key by creating a small private note."""
        body = doc_node([text_paragraph("墨问剪藏连接测试", bold=True), text_paragraph("This note can be deleted.")])
        result = await self.create_note(body, is_public=False)
        if result.success:
            return True, f"Connected. Test note: {result.note_url}"
        return False, f"{result.error_code.value if result.error_code else 'UNKNOWN'}: {result.error}"

    @staticmethod
    def _note_result(note_id: str, is_public: bool) -> NoteCreateResult:
        note_url, share_url = note_urls(note_id, is_public)
        return NoteCreateResult(success=True, note_id=note_id, note_url=note_url, share_url=share_url)

    # ── Uploads ──

    async def upload_by_url(self, url: str, file_name: str | None = None) -> UploadedFile:
        """Let the server fetch an image itself. Raises ApiRequestError."""
        data = await self._request(
            "/upload/url",
            {"fileType": FILE_TYPE_IMAGE, "url": url, "fileName": file_name or generate_file_name(url)},
        )
        record = (data or {}).get("file") if isinstance(data, dict) else None
        if not isinstance(record, dict):
            raise ApiRequestError("INVALID_RESPONSE: no file in upload response", data=data)
        return UploadedFile.from_dict(record)

    async def prepare_upload(self, file_name: str) -> dict[str, str]:
        """Ask for a signed upload form. Raises ApiRequestError."""
        data = await self._request(
            "/upload/prepare", {"fileType": FILE_TYPE_IMAGE, "fileName": file_name}
        )
        form = data.get("form") if isinstance(data, dict) else None
        if not isinstance(form, dict) or not form.get("endpoint"):
            raise ApiRequestError("INVALID_RESPONSE: missing endpoint in upload form", data=data)
        return {str(k): str(v) for k, v in form.items()}

    async def deliver_upload(
        self,
        form: dict[str, str],
        content: bytes,
        file_name: str,
        mime_type: str = "application/octet-stream",
        timeout: float | None = None,
    ) -> UploadedFile:
        """
        POST the bytes to the storage endpoint from prepare_upload().

        Every form field is sent first, then the "file" part. Not rate-limited:
        the storage host is not the API.
        """
        endpoint = form["endpoint"]
        fields = {k: v for k, v in form.items() if k != "endpoint"}
        try:
            response = await self._http.post(
                endpoint,
                data=fields,
                files={"file": (file_name, content, mime_type)},
                timeout=timeout or Config.IMAGE_DELIVER_TIMEOUT,
            )
        except httpx.TimeoutException as e:
            raise ApiRequestError("Upload timeout", error_code=ErrorCode.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ApiRequestError(f"Upload network error: {e}", error_code=ErrorCode.NETWORK) from e

        if not response.is_success:
            raise ApiRequestError(
                f"HTTP {response.status_code}: {response.text[:100]}",
                status=response.status_code,
                raw_body=response.text,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        record = None
        if isinstance(payload, dict):
            if isinstance(payload.get("file"), dict):
                record = payload["file"]
            elif isinstance(payload.get("data"), dict) and isinstance(payload["data"].get("file"), dict):
                record = payload["data"]["file"]
            elif payload.get("uid") and payload.get("url"):
                record = payload

        uploaded = UploadedFile.from_dict(record or {})
        if not uploaded.asset_id:
            raise ApiRequestError(
                "INVALID_RESPONSE: upload succeeded but no file id returned",
                status=response.status_code,
                raw_body=response.text,
            )
        return uploaded

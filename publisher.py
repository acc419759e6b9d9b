"""
publisher.py — Clip Publish Orchestrator
==========================================
Takes a clipped page (title + markup + image candidates) all the way to one
or more Mowen notes.

HOW IT WORKS:
1. Validate: non-empty content, API key present
2. Images (if enabled): fetch + upload up to max_images, tag the matching
   <img> tags with their asset ids, degrade failures to plain links.
   Images disabled → every <img> is stripped.
3. Split the markup into parts of at most SAFE_CONTENT_LENGTH visible chars
4. Per part: build the note body (title heading, source link, content as
   NoteAtom) and create it, retrying with an increasing delay.
   CONTENT_TOO_LONG → the part is re-split at 70% of its budget and each
   sub-part published the same way, up to MAX_RESPLIT_ROUNDS levels deep.
   A failed part never stops its siblings.
5. More than one part saved → an index note linking every part
6. Progress goes to the SessionStore (keyed by tab id); the final SaveResult
   says which parts made it.

HIGHLIGHTS:
save_highlight() keeps one note per page. The first highlight creates it;
later ones (within 24h) append a timestamped section and re-submit the
whole body with /note/edit. A per-page asyncio.Lock keeps two highlights on
the same page from both creating a note.
"""

from __future__ import annotations

import asyncio
import copy
import html
import inspect
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_incrementing

from api_client import MowenClient
from block_parser import html_to_note_atom
from cancellation import CancellationToken
from config import ClipSettings, Config
from content_splitter import resplit_part, split_content, visible_length
from image_fetcher import ImageFetcher, PageContext
from image_matcher import degrade_failed_images, inject_asset_ids, remove_images
from image_uploader import process_images
from models import (
    CreatedNote,
    ErrorCode,
    HighlightSaveResult,
    ImageCandidate,
    NoteCreateResult,
    NotePart,
    SaveResult,
)
from note_atom import (
    NoteAtom,
    doc_node,
    link_mark,
    link_paragraph,
    paragraph_node,
    quote_node,
    text_node,
    text_paragraph,
)
from session_store import SessionStore, page_key

logger = logging.getLogger("clipper.publisher")

SOURCE_ICON = "📄"
SOURCE_LABEL = f"{SOURCE_ICON} 来源："
SOURCE_LINK_TEXT = "查看原文"
HIGHLIGHT_MARKER = "📌"
RESPLIT_FACTOR = 0.7

# Retrying these cannot help
_NOT_RETRYABLE = (ErrorCode.UNAUTHORIZED, ErrorCode.CONTENT_TOO_LONG)

_TITLE_NOISE_RE = re.compile(r"[\s.,;:!?。，；：！？\u200b]")
_LEADING_H1_RE = re.compile(r"^\s*<h1[^>]*>([\s\S]*?)</h1>\s*", re.IGNORECASE)
_LEADING_BLOCK_RE = re.compile(r"^\s*<(p|div|section|header)[^>]*>([\s\S]*?)</\1>\s*", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")

ProgressCallback = Callable[[dict], Any]


@dataclass
class ClipRequest:
    """
    One clip to publish.

    Attributes left as None fall back to the ClipSettings defaults.
    """
    title: str
    content: str
    source_url: str = ""
    images: list[ImageCandidate] = field(default_factory=list)
    tab_id: str | None = None
    is_public: bool | None = None
    include_images: bool | None = None
    max_images: int | None = None
    create_index_note: bool | None = None


# ══════════════════════════════════════════════════════════════
# NOTE BODIES
# ══════════════════════════════════════════════════════════════

def _normalize_title(text: str) -> str:
    return _TITLE_NOISE_RE.sub("", text).lower()


def remove_duplicate_title(content: str, title: str) -> str:
    """Drop a leading <h1> (or short leading block) that just repeats the title."""
    if not content or not title:
        return content
    trimmed = content.strip()
    wanted = _normalize_title(title.strip())

    h1 = _LEADING_H1_RE.match(trimmed)
    if h1 and _normalize_title(_TAG_RE.sub("", h1.group(1)).strip()) == wanted:
        logger.debug("Removed duplicate h1 title from content")
        return trimmed[h1.end():]

    block = _LEADING_BLOCK_RE.match(trimmed)
    if block:
        text = _TAG_RE.sub("", block.group(2)).strip()
        if len(text) <= len(title.strip()) * 1.5 and _normalize_title(text) == wanted:
            logger.debug("Removed duplicate block title from content")
            return trimmed[block.end():]

    return content


def source_link_html(source_url: str) -> str:
    if not source_url:
        return ""
    return f'<p>{SOURCE_LABEL}<a href="{html.escape(source_url)}">{SOURCE_LINK_TEXT}</a></p>'


def build_note_body(title: str, content: str, source_url: str = "") -> NoteAtom:
    """Title heading + source link + the content, converted to a NoteAtom doc."""
    cleaned = remove_duplicate_title(content, title)
    full_html = f"<h1>{html.escape(title)}</h1>{source_link_html(source_url)}{cleaned}"
    return html_to_note_atom(full_html)


def source_quote(source_url: str) -> NoteAtom:
    return quote_node([text_node(SOURCE_LABEL), text_node(source_url, [link_mark(source_url)])])


def build_index_body(title: str, source_url: str, notes: list[CreatedNote]) -> NoteAtom:
    """The 合集 note: one linked paragraph per saved part, in reading order."""
    content: list[NoteAtom] = [text_paragraph(f"{title}（合集）", bold=True), paragraph_node()]
    if source_url:
        content += [source_quote(source_url), paragraph_node()]
    content.append(text_paragraph(f"由于文章过长，已自动拆分为 {len(notes)} 个部分："))
    content.append(paragraph_node())
    for position, note in enumerate(notes, start=1):
        content.append(link_paragraph(f"{position}. ", note.title or note.share_url, note.share_url))
    return doc_node(content)


def timestamp_paragraph(now: datetime | None = None) -> NoteAtom:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M")
    return text_paragraph(f"{HIGHLIGHT_MARKER} {stamp}")


def build_highlight_body(
    page_title: str, source_url: str, fragment: list[NoteAtom], now: datetime | None = None
) -> NoteAtom:
    content: list[NoteAtom] = [text_paragraph(page_title or source_url, bold=True)]
    if source_url:
        content.append(source_quote(source_url))
    content += [paragraph_node(), timestamp_paragraph(now), *fragment]
    return doc_node(content)


# ══════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ══════════════════════════════════════════════════════════════

def _should_retry(result: NoteCreateResult) -> bool:
    return not result.success and result.error_code not in _NOT_RETRYABLE


def _stop_when_cancelled(token: CancellationToken | None):
    def stop(retry_state) -> bool:
        return token is not None and token.cancelled
    return stop


class Publisher:
    """
    Publishes clips and highlights through one MowenClient.

    Usage:
        async with MowenClient(key, limiter=RateLimiter()) as client:
            publisher = Publisher(client, Config.settings(), store=SessionStore())
            result = await publisher.save_note(ClipRequest(title, html, url))
    """

    def __init__(
        self,
        client: MowenClient,
        settings: ClipSettings,
        store: SessionStore | None = None,
        fetcher: ImageFetcher | None = None,
        page: PageContext | None = None,
        safe_length: int | None = None,
        max_retry_rounds: int | None = None,
        retry_delay: float | None = None,
        max_resplit_rounds: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.page = page
        self.safe_length = safe_length or Config.SAFE_CONTENT_LENGTH
        self.max_retry_rounds = max_retry_rounds or Config.MAX_RETRY_ROUNDS
        self.retry_delay = retry_delay if retry_delay is not None else Config.PUBLISH_RETRY_DELAY
        self.max_resplit_rounds = (
            max_resplit_rounds if max_resplit_rounds is not None else Config.MAX_RESPLIT_ROUNDS
        )
        self._sleep = sleep
        self._page_locks: dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each page lock
        self._page_lock_users: dict[str, int] = {}

    # ── Progress ──

    async def _progress(
        self, tab_id: str | None, on_progress: ProgressCallback | None, **progress: Any
    ) -> None:
        if self.store and tab_id:
            self.store.update_progress(tab_id, **progress)
        if on_progress is not None:
            outcome = on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome

    # ── Clip ──

    async def save_note(
        self,
        request: ClipRequest,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SaveResult:
        """Publish one clip. Never raises for API or image failures."""
        token = token or CancellationToken()

        if not request.content or not request.content.strip():
            return SaveResult(success=False, error="Content is empty", error_code=ErrorCode.UNKNOWN)
        if not self.settings.api_key:
            return SaveResult(success=False, error="API key is not configured", error_code=ErrorCode.UNAUTHORIZED)

        is_public = self.settings.default_public if request.is_public is None else request.is_public
        include_images = (
            self.settings.default_include_images if request.include_images is None else request.include_images
        )
        max_images = self.settings.max_images if request.max_images is None else request.max_images
        create_index = (
            self.settings.create_index_note if request.create_index_note is None else request.create_index_note
        )

        if self.store and request.tab_id:
            self.store.init_session(request.tab_id, title=request.title)

        result = SaveResult(success=False)
        content = request.content

        # Step 1: Images
        if include_images and request.images:
            logger.info(f"🖼️  Found {len(request.images)} images, processing...")

            async def report_images(done: int, total: int) -> None:
                await self._progress(
                    request.tab_id, on_progress,
                    stage="uploading_images", uploaded_images=done, total_images=total,
                )

            image_results = await self._process_images(request.images, max_images, token, report_images)
            content = inject_asset_ids(content, image_results)
            content = degrade_failed_images(content, image_results)
            result.uploaded_images = sum(1 for r in image_results if r.success)
            result.failed_images = len(image_results) - result.uploaded_images
        elif not include_images:
            content = remove_images(content)
            if request.images:
                logger.info(f"🚫 Images disabled, removed {len(request.images)} images")

        # Step 2: Split
        parts = split_content(request.title, content, self.safe_length)
        logger.info(f"📝 Creating {len(parts)} note(s) for \"{request.title[:40]}\"")

        # Step 3: Create notes
        for part in parts:
            if token.cancelled:
                result.cancelled = True
                break
            await self._progress(
                request.tab_id, on_progress,
                stage="creating_note", current_part=part.index + 1, total_parts=len(parts),
            )
            notes, failed, last_error = await self._publish_part(
                part, request.source_url, is_public, token, self.safe_length, depth=0
            )
            result.notes.extend(notes)
            if failed:
                result.failed_parts.append(part.index)
                if last_error is not None:
                    result.error, result.error_code = last_error.error, last_error.error_code
            if token.cancelled:
                result.cancelled = True

        # Step 4: Index note
        part_notes = result.part_notes
        if create_index and len(part_notes) > 1 and not result.cancelled:
            index_note = await self._create_index(request, part_notes, is_public)
            if index_note is not None:
                result.notes.insert(0, index_note)

        result.success = bool(result.part_notes)
        if result.cancelled and not result.error:
            result.error = token.reason or "cancelled"
        if not result.success and not result.error:
            result.error, result.error_code = "No notes were created", ErrorCode.UNKNOWN

        if result.success:
            logger.info(
                f"✅ Saved {len(result.part_notes)} note(s)"
                + (f", {len(result.failed_parts)} part(s) failed" if result.failed_parts else "")
            )
        else:
            logger.error(f"❌ Clip failed: {result.error}")

        if self.store and request.tab_id:
            self.store.complete_session(
                request.tab_id,
                success=result.success,
                result=_result_summary(result),
                error=result.error if not result.success else None,
            )
        return result

    async def _process_images(self, images, max_images, token, report):
        if self.fetcher is not None:
            return await process_images(
                images, self.client, self.fetcher, max_images=max_images, token=token, on_progress=report
            )
        async with httpx.AsyncClient(timeout=Config.IMAGE_UPLOAD_TIMEOUT) as http:
            fetcher = ImageFetcher(http, page=self.page)
            return await process_images(
                images, self.client, fetcher, max_images=max_images, token=token, on_progress=report
            )

    async def _create_with_retry(
        self, body: NoteAtom, is_public: bool, token: CancellationToken
    ) -> NoteCreateResult:
        """create_note with up to max_retry_rounds attempts, waiting delay × attempt between them."""

        def log_retry(retry_state) -> None:
            outcome = retry_state.outcome.result()
            logger.warning(
                f"⚠️  Attempt {retry_state.attempt_number} failed: {outcome.error}; "
                f"retrying in {retry_state.next_action.sleep:.0f}s"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retry_rounds) | _stop_when_cancelled(token),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_result(_should_retry),
            sleep=self._sleep,
            before_sleep=log_retry,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return await retrying(
            self.client.create_note, body, is_public=is_public, enable_auto_tag=self.settings.enable_auto_tag
        )

    async def _publish_part(
        self,
        part: NotePart,
        source_url: str,
        is_public: bool,
        token: CancellationToken,
        limit: int,
        depth: int,
    ) -> tuple[list[CreatedNote], bool, NoteCreateResult | None]:
        """
        Publish one part, re-splitting it when the server says it is too long.

        Returns:
            (notes created, whether anything failed, last failed result)
        """
        if token.cancelled:
            return [], True, None

        body = build_note_body(part.title, part.content, source_url)
        created = await self._create_with_retry(body, is_public, token)
        if created.success:
            logger.info(f"   ✅ {part.title}: {created.note_url}")
            return [
                CreatedNote(
                    part_index=part.index,
                    note_id=created.note_id,
                    note_url=created.note_url,
                    share_url=created.share_url,
                    title=part.title,
                )
            ], False, None

        if created.error_code is ErrorCode.CONTENT_TOO_LONG and depth < self.max_resplit_rounds:
            new_limit = int(min(limit, visible_length(part.content)) * RESPLIT_FACTOR)
            sub_parts = resplit_part(part, new_limit) if new_limit > 0 else []
            if len(sub_parts) > 1:
                logger.info(f"✂️  {part.title} too long, re-splitting into {len(sub_parts)} parts")
                notes: list[CreatedNote] = []
                failed, last_error = False, None
                for sub in sub_parts:
                    sub_notes, sub_failed, sub_error = await self._publish_part(
                        sub, source_url, is_public, token, new_limit, depth + 1
                    )
                    for note in sub_notes:
                        note.part_index = part.index
                    notes.extend(sub_notes)
                    failed = failed or sub_failed
                    last_error = sub_error or last_error
                return notes, failed, last_error

        logger.error(f"   ❌ {part.title} failed: {created.error}")
        return [], True, created

    async def _create_index(
        self, request: ClipRequest, part_notes: list[CreatedNote], is_public: bool
    ) -> CreatedNote | None:
        logger.info("📚 Creating index note...")
        body = build_index_body(request.title, request.source_url, part_notes)
        created = await self.client.create_note(
            body, is_public=is_public, enable_auto_tag=self.settings.enable_auto_tag
        )
        if not created.success:
            logger.warning(f"⚠️  Index note failed: {created.error}")
            return None
        return CreatedNote(
            part_index=-1,
            note_id=created.note_id,
            note_url=created.note_url,
            share_url=created.share_url,
            title=f"{request.title}（合集）",
            is_index=True,
        )

    # ── Highlights ──

    async def save_highlight(
        self,
        page_url: str,
        page_title: str,
        fragment_html: str,
        is_public: bool | None = None,
        now: datetime | None = None,
    ) -> HighlightSaveResult:
        """Append a highlight to the page's note, creating the note if needed."""
        if not self.settings.api_key:
            return HighlightSaveResult(
                success=False, error="API key is not configured", error_code=ErrorCode.UNAUTHORIZED
            )
        is_public = self.settings.default_public if is_public is None else is_public
        fragment = html_to_note_atom(fragment_html)["content"]
        key = page_key(page_url)
        lock = self._page_locks.setdefault(key, asyncio.Lock())
        self._page_lock_users[key] = self._page_lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._save_highlight_locked(page_url, page_title, fragment, is_public, now)
        finally:
            self._page_lock_users[key] -= 1
            if not self._page_lock_users[key]:
                del self._page_lock_users[key]
                del self._page_locks[key]

    async def _save_highlight_locked(
        self,
        page_url: str,
        page_title: str,
        fragment: list[NoteAtom],
        is_public: bool,
        now: datetime | None,
    ) -> HighlightSaveResult:
        cached = self.store.get_highlight_note(page_url) if self.store else None
        if cached:
            body = copy.deepcopy(cached["body"])
            body["content"] = body.get("content", []) + [
                paragraph_node(), timestamp_paragraph(now), *fragment
            ]
            edited = await self.client.edit_note(cached["note_id"], body, is_public=is_public)
            if edited.success:
                self.store.save_highlight_note(
                    page_url, cached["note_id"], edited.note_url or cached["note_url"], body,
                    highlight_count=cached["highlight_count"] + 1,
                )
                logger.info(f"📌 Highlight appended to {edited.note_url}")
                return HighlightSaveResult(
                    success=True, note_id=cached["note_id"], note_url=edited.note_url,
                    is_append=True, body=body,
                )
            if edited.error_code is not ErrorCode.NOTE_NOT_FOUND:
                return HighlightSaveResult(
                    success=False, note_id=cached["note_id"], is_append=True,
                    error=edited.error, error_code=edited.error_code,
                )
            logger.warning("⚠️  Cached highlight note is gone; creating a new one")
            self.store.clear_highlight_note(page_url)

        body = build_highlight_body(page_title, page_url, fragment, now)
        created = await self.client.create_note(
            body, is_public=is_public, enable_auto_tag=self.settings.enable_auto_tag
        )
        if not created.success:
            return HighlightSaveResult(success=False, error=created.error, error_code=created.error_code)
        if self.store:
            self.store.save_highlight_note(page_url, created.note_id, created.note_url, body)
        logger.info(f"📌 Highlight saved to new note {created.note_url}")
        return HighlightSaveResult(
            success=True, note_id=created.note_id, note_url=created.note_url, body=body
        )


def _result_summary(result: SaveResult) -> dict:
    return {
        "notes": [asdict(n) for n in result.notes],
        "failed_parts": result.failed_parts,
        "uploaded_images": result.uploaded_images,
        "failed_images": result.failed_images,
        "cancelled": result.cancelled,
    }


async def save_note(
    request: ClipRequest,
    settings: ClipSettings,
    client: MowenClient,
    store: SessionStore | None = None,
    fetcher: ImageFetcher | None = None,
    token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> SaveResult:
    """Convenience wrapper: publish one clip with a throwaway Publisher."""
    publisher = Publisher(client, settings, store=store, fetcher=fetcher)
    return await publisher.save_note(request, token=token, on_progress=on_progress)

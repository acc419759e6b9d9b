"""
models.py — Mowen Clipper Shared Data Models
==============================================
Contains the data models passed between the pipeline stages.

  ImageCandidate      → input from the page extraction step (read-only)
  ImageProcessResult  → one per candidate, produced by the upload pipeline
  NotePart            → one length-bounded slice of a clipped document
  NoteCreateResult    → outcome of a single create/edit call against the API
  SaveResult          → aggregate outcome of a whole clip session

Document nodes themselves are plain dicts in the API wire shape; see
note_atom.py for the builders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ImageKind(Enum):
    """Where on the page an image candidate was found."""
    IMG = "img"
    SRCSET = "srcset"
    LAZY = "lazy"
    BACKGROUND = "background"
    DATA = "data"
    BLOB = "blob"
    OG = "og"
    PRELOAD = "preload"


class ImageFailureReason(Enum):
    """Closed set of reasons an image could not be turned into an asset."""
    AUTH_OR_HOTLINK = "AUTH_OR_HOTLINK"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT_OR_NET = "TIMEOUT_OR_NET"
    CORS_OR_BLOCKED = "CORS_OR_BLOCKED"
    INVALID_URL = "INVALID_URL"
    UNKNOWN = "UNKNOWN"


class ErrorCode(Enum):
    """Closed set of publish-API failure categories."""
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMIT = "RATE_LIMIT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONTENT_TOO_LONG = "CONTENT_TOO_LONG"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    NOTE_NOT_FOUND = "NOTE_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


class SessionStatus(Enum):
    """Lifecycle of a clip session in the session store."""
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ImageCandidate:
    """
    An image discovered on the page.

    Attributes:
        id:              Stable identifier assigned by the extractor
        url:             The URL as it appeared in the page
        normalized_url:  Highest-quality variant (srcset winner, de-thumbnailed CDN URL)
        kind:            How the image was discovered
        order:           Reading-order position on the page
        in_main_content: True if the image sits inside the article body
    """
    id: str
    url: str
    normalized_url: str
    kind: ImageKind = ImageKind.IMG
    order: int = 0
    in_main_content: bool = True
    width: int | None = None
    height: int | None = None
    alt: str | None = None


@dataclass
class ImageProcessResult:
    """Outcome of acquiring and uploading one ImageCandidate."""
    id: str
    original_url: str
    success: bool
    asset_url: str | None = None
    file_id: str | None = None
    uid: str | None = None
    failure_reason: ImageFailureReason | None = None

    @property
    def asset_id(self) -> str | None:
        """Identifier used in image nodes (uid preferred over fileId)."""
        return self.uid or self.file_id


@dataclass
class NotePart:
    """One slice of an oversized document, published as its own note."""
    index: int
    total: int
    title: str
    content: str


@dataclass
class NoteCreateResult:
    """Result of one create/edit call. Never raised, always returned."""
    success: bool
    note_id: str | None = None
    note_url: str | None = None
    share_url: str | None = None
    error: str | None = None
    error_code: ErrorCode | None = None


@dataclass
class CreatedNote:
    """A note that was successfully persisted during a clip session."""
    part_index: int
    note_id: str
    note_url: str
    share_url: str
    title: str = ""
    is_index: bool = False


@dataclass
class SaveResult:
    """
    Aggregate outcome of a clip session.

    success is True when at least one part was saved; failed_parts lists
    the part indices that exhausted their retries.
    """
    success: bool
    notes: list[CreatedNote] = field(default_factory=list)
    failed_parts: list[int] = field(default_factory=list)
    uploaded_images: int = 0
    failed_images: int = 0
    error: str | None = None
    error_code: ErrorCode | None = None
    cancelled: bool = False

    @property
    def index_note(self) -> CreatedNote | None:
        return next((n for n in self.notes if n.is_index), None)

    @property
    def part_notes(self) -> list[CreatedNote]:
        return [n for n in self.notes if not n.is_index]


@dataclass
class HighlightSaveResult:
    """Outcome of saving a highlight (new note or append to a cached one)."""
    success: bool
    note_id: str | None = None
    note_url: str | None = None
    is_append: bool = False
    body: dict | None = None
    error: str | None = None
    error_code: ErrorCode | None = None

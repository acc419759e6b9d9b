"""
session_store.py — Clip Session & Highlight Cache (SQLite)
============================================================
Durable state shared between the publish pipeline and whatever surface
asks "how is my clip going?".

ARCHITECTURE:
  save_note()            → init_session() / update_progress() / complete_session()
  mowen-clip --status    → format_status_table()
  save_highlight()       → get_highlight_note() / save_highlight_note()

SESSION STATE MACHINE (one row per tab):
  idle ──(clip starts)──> processing ──(any part saved)──> success
                               │
                         (nothing saved)
                               │
                               ▼
                             failed

Sessions expire SESSION_TTL seconds (30 min) after their last update.
Highlight notes are cached per page for HIGHLIGHT_CACHE_TTL (24 h) so later
highlights on the same page append to the same note.

DATABASE LOCATION:
  ~/.mowen-clipper/sessions.db (configurable via SESSION_DB_PATH in .env)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urldefrag

from config import Config
from models import SessionStatus

logger = logging.getLogger("clipper.session")

# ANSI color codes for terminal output
_GREEN = "\033[92m"
_YELLOW = "\033[93m"
_RED = "\033[91m"
_GRAY = "\033[90m"
_BOLD = "\033[1m"
_RESET = "\033[0m"


def page_key(url: str) -> str:
    """Cache key for a page: its URL without the #fragment."""
    return urldefrag(url.strip())[0]


class SessionStore:
    """
    SQLite-backed clip session and highlight cache.

    Usage:
        store = SessionStore()
        store.init_session("tab-1", title="My article")
        store.update_progress("tab-1", stage="uploading_images", uploaded_images=3)
        print(store.format_status_table())
    """

    def __init__(
        self,
        db_path: str | None = None,
        session_ttl: float | None = None,
        highlight_ttl: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path or Config.SESSION_DB_PATH
        self.session_ttl = session_ttl if session_ttl is not None else Config.SESSION_TTL
        self.highlight_ttl = highlight_ttl if highlight_ttl is not None else Config.HIGHLIGHT_CACHE_TTL
        self._clock = clock
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Create a new connection with WAL mode and row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _ensure_db(self) -> None:
        """Create database tables if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    tab_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'idle',
                    title TEXT DEFAULT '',
                    progress TEXT DEFAULT '{}',
                    result TEXT,
                    error_message TEXT,
                    started_at REAL,
                    updated_at REAL
                );

                CREATE TABLE IF NOT EXISTS highlight_cache (
                    page_key TEXT PRIMARY KEY,
                    note_id TEXT NOT NULL,
                    note_url TEXT,
                    body TEXT NOT NULL,
                    highlight_count INTEGER DEFAULT 1,
                    created_at REAL,
                    expires_at REAL
                );
            """)
            conn.commit()
        finally:
            conn.close()

    # ── Sessions ──

    def init_session(self, tab_id: str, title: str = "") -> None:
        """Start (or restart) the session for a tab."""
        now = self._clock()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO sessions
                   (tab_id, status, title, progress, result, error_message, started_at, updated_at)
                   VALUES (?, ?, ?, '{}', NULL, NULL, ?, ?)""",
                (tab_id, SessionStatus.PROCESSING.value, title, now, now),
            )
            conn.commit()
        finally:
            conn.close()

    def update_progress(self, tab_id: str, **progress: Any) -> None:
        """Merge `progress` into the session's progress record."""
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT progress FROM sessions WHERE tab_id = ?", (tab_id,)).fetchone()
            if row is None:
                logger.debug(f"No session for tab {tab_id}; progress dropped")
                return
            merged = json.loads(row["progress"] or "{}")
            merged.update(progress)
            conn.execute(
                "UPDATE sessions SET progress = ?, updated_at = ? WHERE tab_id = ?",
                (json.dumps(merged, ensure_ascii=False), self._clock(), tab_id),
            )
            conn.commit()
        finally:
            conn.close()

    def complete_session(
        self, tab_id: str, success: bool, result: dict | None = None, error: str | None = None
    ) -> None:
        """Record the final outcome of a clip."""
        status = SessionStatus.SUCCESS if success else SessionStatus.FAILED
        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE sessions
                   SET status = ?, result = ?, error_message = ?, updated_at = ?
                   WHERE tab_id = ?""",
                (
                    status.value,
                    json.dumps(result, ensure_ascii=False) if result is not None else None,
                    error[:500] if error else None,  # Truncate long errors
                    self._clock(),
                    tab_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_session(self, tab_id: str) -> dict | None:
        """Session dict with decoded progress/result, or None if absent or expired."""
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM sessions WHERE tab_id = ?", (tab_id,)).fetchone()
            if row is None:
                return None
            if row["updated_at"] is not None and row["updated_at"] + self.session_ttl < self._clock():
                conn.execute("DELETE FROM sessions WHERE tab_id = ?", (tab_id,))
                conn.commit()
                return None
            return _decode_session(row)
        finally:
            conn.close()

    def clear_session(self, tab_id: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM sessions WHERE tab_id = ?", (tab_id,))
            conn.commit()
        finally:
            conn.close()

    def list_sessions(self, limit: int = 20) -> list[dict]:
        """Unexpired sessions, most recently updated first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE updated_at >= ? ORDER BY updated_at DESC LIMIT ?",
                (self._clock() - self.session_ttl, limit),
            ).fetchall()
            return [_decode_session(row) for row in rows]
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """
        Delete expired sessions and highlight cache entries.

        Returns:
            Number of rows removed
        """
        now = self._clock()
        conn = self._get_conn()
        try:
            removed = conn.execute(
                "DELETE FROM sessions WHERE updated_at < ?", (now - self.session_ttl,)
            ).rowcount
            removed += conn.execute(
                "DELETE FROM highlight_cache WHERE expires_at < ?", (now,)
            ).rowcount
            conn.commit()
            return removed
        finally:
            conn.close()

    # ── Highlight cache ──

    def get_highlight_note(self, url: str) -> dict | None:
        """Cached highlight note for a page (note_id, note_url, body, highlight_count)."""
        key = page_key(url)
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM highlight_cache WHERE page_key = ?", (key,)).fetchone()
            if row is None:
                return None
            if row["expires_at"] < self._clock():
                conn.execute("DELETE FROM highlight_cache WHERE page_key = ?", (key,))
                conn.commit()
                return None
            entry = dict(row)
            entry["body"] = json.loads(entry["body"])
            return entry
        finally:
            conn.close()

    def save_highlight_note(
        self, url: str, note_id: str, note_url: str, body: dict, highlight_count: int = 1
    ) -> None:
        """Cache (or refresh) the highlight note for a page."""
        now = self._clock()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO highlight_cache
                   (page_key, note_id, note_url, body, highlight_count, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    page_key(url),
                    note_id,
                    note_url,
                    json.dumps(body, ensure_ascii=False),
                    highlight_count,
                    now,
                    now + self.highlight_ttl,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def clear_highlight_note(self, url: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM highlight_cache WHERE page_key = ?", (page_key(url),))
            conn.commit()
        finally:
            conn.close()

    # ── Display ──

    def format_status_table(self) -> str:
        """
        CLI status table of recent clip sessions.

        Returns:
            Formatted string ready to print to terminal
        """
        sessions = self.list_sessions(limit=20)
        lines = []

        lines.append(f"╔{'═' * 72}╗")
        lines.append(f"║{'📎 Mowen Clipper Sessions':^71}║")
        lines.append(f"╠{'═' * 12}╦{'═' * 34}╦{'═' * 12}╦{'═' * 11}╣")
        lines.append(f"║{'Tab':^12}║{'Title':^34}║{'Status':^12}║{'Info':^11}║")
        lines.append(f"╠{'═' * 12}╬{'═' * 34}╬{'═' * 12}╬{'═' * 11}╣")

        if not sessions:
            lines.append(f"║{'No active sessions':^72}║")
        else:
            for session in sessions:
                tab = _truncate(session["tab_id"], 10)
                title = _truncate(session.get("title") or "", 32)
                status = session["status"]
                progress = session.get("progress") or {}
                info = ""

                if status == SessionStatus.SUCCESS.value:
                    status_str = f"{_GREEN}✅ Done{_RESET}"
                    result = session.get("result") or {}
                    info = f"{len(result.get('notes', []))} notes"
                elif status == SessionStatus.PROCESSING.value:
                    status_str = f"{_YELLOW}⚙️  Running{_RESET}"
                    info = _truncate(progress.get("stage", ""), 10)
                elif status == SessionStatus.FAILED.value:
                    status_str = f"{_RED}❌ Failed{_RESET}"
                    info = _truncate(session.get("error_message") or "", 10)
                else:
                    status_str = f"{_GRAY}○ Idle{_RESET}"
                    info = "—"

                lines.append(f"║ {tab:<11}║ {title:<33}║ {status_str:<21}║ {info:<10}║")

        lines.append(f"╚{'═' * 12}╩{'═' * 34}╩{'═' * 12}╩{'═' * 11}╝")

        with_urls = [
            s for s in sessions
            if s["status"] == SessionStatus.SUCCESS.value and (s.get("result") or {}).get("notes")
        ]
        if with_urls:
            lines.append("")
            lines.append(f"{_BOLD}Notes:{_RESET}")
            for s in with_urls[:5]:
                for note in s["result"]["notes"][:3]:
                    lines.append(f"  {s['tab_id']}: {note.get('note_url', '')}")

        return "\n".join(lines)


def _decode_session(row: sqlite3.Row) -> dict:
    session = dict(row)
    session["progress"] = json.loads(session.get("progress") or "{}")
    session["result"] = json.loads(session["result"]) if session.get("result") else None
    return session


def _truncate(text: str, max_len: int) -> str:
    """Truncate text with ellipsis if too long."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"

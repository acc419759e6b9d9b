"""
config.py — Mowen Clipper Configuration Loader & Validator
===========================================================
This is the central configuration file for the clipper.
It reads all settings from a .env file and makes them available
across the project via the Config class.

.env FILE LOCATION:
The clipper looks for .env in this order:
  1. ~/.mowen-clipper/.env  (recommended — works from anywhere)
  2. <install dir>/.env     (project checkout)
  3. ./.env                 (current directory — fallback for development)

To set up once:
  mkdir -p ~/.mowen-clipper
  echo "MOWEN_API_KEY=your-key" > ~/.mowen-clipper/.env

USER SETTINGS vs PIPELINE TUNING:
- The user-facing settings (API key, default visibility, image cap, index
  note, auto tag) are exposed as a validated ClipSettings object via
  Config.settings(). The same object can be built from the camelCase dict
  the browser extension stores (ClipSettings.model_validate({...})).
- Everything else here (rate-limit spacing, split budget, timeouts) tunes
  the pipeline and rarely needs changing.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# ──────────────────────────────────────────────────────────────────
# LOAD .env FILE
# ──────────────────────────────────────────────────────────────────
# The first one found wins, so a home-directory .env makes the
# 'mowen-clip' command usable from any folder.
# ──────────────────────────────────────────────────────────────────

_home_env = Path.home() / ".mowen-clipper" / ".env"
if _home_env.exists():
    load_dotenv(_home_env, override=True)
else:
    _project_env = Path(__file__).parent / ".env"
    if _project_env.exists():
        load_dotenv(_project_env, override=True)
    else:
        load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean flag like 'true' / '1' / 'yes' from the environment."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Upper bound for the per-clip image cap
MAX_IMAGES_LIMIT = 200


class ClipSettings(BaseModel):
    """
    User settings consumed by the publish pipeline.

    Accepts both snake_case field names and the camelCase keys stored by
    the extension options page (apiKey, defaultPublic, maxImages, ...).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_key: str = Field(default="", alias="apiKey")
    default_public: bool = Field(default=False, alias="defaultPublic")
    default_include_images: bool = Field(default=True, alias="defaultIncludeImages")
    max_images: int = Field(default=50, ge=0, le=MAX_IMAGES_LIMIT, alias="maxImages")
    create_index_note: bool = Field(default=True, alias="createIndexNote")
    enable_auto_tag: bool = Field(default=False, alias="enableAutoTag")


class Config:
    """
    Central configuration for the clipper.

    All settings are class-level variables, so you can access them anywhere like:
        Config.MOWEN_API_KEY
        Config.SAFE_CONTENT_LENGTH

    No need to create an instance — just import and use directly.
    """

    # ══════════════════════════════════════════════════════════════
    # MOWEN API SETTINGS
    # ══════════════════════════════════════════════════════════════

    # MOWEN_API_KEY: Open-API key from the Mowen app (Settings → Open API).
    # Sent as "Authorization: Bearer <key>" on every request.
    MOWEN_API_KEY: str = os.getenv("MOWEN_API_KEY", "")

    # Base URL of the open API. Only change this to point at a test server.
    MOWEN_API_BASE_URL: str = os.getenv(
        "MOWEN_API_BASE_URL", "https://open.mowen.cn/api/open/api/v1"
    )

    # Seconds before a regular API request is abandoned
    API_TIMEOUT: float = float(os.getenv("API_TIMEOUT", "30"))

    # ══════════════════════════════════════════════════════════════
    # USER DEFAULTS
    # ══════════════════════════════════════════════════════════════

    DEFAULT_PUBLIC: bool = _env_bool("MOWEN_DEFAULT_PUBLIC", False)
    DEFAULT_INCLUDE_IMAGES: bool = _env_bool("MOWEN_INCLUDE_IMAGES", True)
    MAX_IMAGES: int = int(os.getenv("MOWEN_MAX_IMAGES", "50"))
    CREATE_INDEX_NOTE: bool = _env_bool("MOWEN_CREATE_INDEX_NOTE", True)
    ENABLE_AUTO_TAG: bool = _env_bool("MOWEN_ENABLE_AUTO_TAG", False)

    # ══════════════════════════════════════════════════════════════
    # PUBLISH PIPELINE
    # ══════════════════════════════════════════════════════════════

    # SAFE_CONTENT_LENGTH: Visible characters per note. The server rejects
    # documents over ~20000 characters; we keep a margin below that.
    SAFE_CONTENT_LENGTH: int = int(os.getenv("SAFE_CONTENT_LENGTH", "19000"))

    # MAX_RETRY_ROUNDS: Attempts per part before it is reported as failed.
    MAX_RETRY_ROUNDS: int = int(os.getenv("MAX_RETRY_ROUNDS", "3"))

    # PUBLISH_RETRY_DELAY: Base delay in seconds; attempt N waits N × this.
    PUBLISH_RETRY_DELAY: float = float(os.getenv("PUBLISH_RETRY_DELAY", "1.0"))

    # MAX_RESPLIT_ROUNDS: How many times a part rejected as too long is
    # re-split with a tighter budget before giving up.
    MAX_RESPLIT_ROUNDS: int = int(os.getenv("MAX_RESPLIT_ROUNDS", "3"))

    # ══════════════════════════════════════════════════════════════
    # RATE LIMITING & IMAGES
    # ══════════════════════════════════════════════════════════════

    # The open API allows roughly one call per second per key.
    RATE_LIMIT_INTERVAL: float = float(os.getenv("MOWEN_RATE_LIMIT_INTERVAL", "1.1"))

    # Seconds an image upload (prepare + deliver) may take
    IMAGE_UPLOAD_TIMEOUT: float = float(os.getenv("IMAGE_UPLOAD_TIMEOUT", "30"))

    # Seconds a delivery POST to the storage endpoint may take
    IMAGE_DELIVER_TIMEOUT: float = float(os.getenv("IMAGE_DELIVER_TIMEOUT", "60"))

    # Seconds to wait for the page context to answer a delegated fetch
    DELEGATED_FETCH_TIMEOUT: float = float(os.getenv("DELEGATED_FETCH_TIMEOUT", "10"))

    # Parallel image downloads running ahead of the serial uploads
    FETCH_CONCURRENCY: int = int(os.getenv("IMAGE_FETCH_CONCURRENCY", "3"))

    # Images above this size are never uploaded
    MAX_IMAGE_BYTES: int = int(os.getenv("MAX_IMAGE_BYTES", str(50 * 1024 * 1024)))

    # ══════════════════════════════════════════════════════════════
    # SESSION STORE & LOGGING
    # ══════════════════════════════════════════════════════════════

    # SQLite database holding clip progress and the highlight note cache
    SESSION_DB_PATH: str = os.getenv(
        "SESSION_DB_PATH", str(Path.home() / ".mowen-clipper" / "sessions.db")
    )

    # Clip progress older than this is considered stale (seconds)
    SESSION_TTL: int = int(os.getenv("SESSION_TTL", str(30 * 60)))

    # Cached highlight notes expire after this many seconds
    HIGHLIGHT_CACHE_TTL: int = int(os.getenv("HIGHLIGHT_CACHE_TTL", str(24 * 60 * 60)))

    LOG_FILE_PATH: str = os.getenv(
        "LOG_FILE_PATH", str(Path.home() / ".mowen-clipper" / "clipper.log")
    )

    # Log level for console output (DEBUG, INFO, WARNING, ERROR)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def settings(cls) -> ClipSettings:
        """Build the validated user settings object from the loaded environment."""
        return ClipSettings(
            api_key=cls.MOWEN_API_KEY,
            default_public=cls.DEFAULT_PUBLIC,
            default_include_images=cls.DEFAULT_INCLUDE_IMAGES,
            max_images=max(0, min(cls.MAX_IMAGES, MAX_IMAGES_LIMIT)),
            create_index_note=cls.CREATE_INDEX_NOTE,
            enable_auto_tag=cls.ENABLE_AUTO_TAG,
        )

    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate that all required configuration values are present.

        Returns:
            List of error messages. Empty list means everything is configured correctly.
        """
        errors = []

        if not cls.MOWEN_API_KEY:
            errors.append(
                "MOWEN_API_KEY is not set. Create one in the Mowen app under Open API"
            )
        if not 0 <= cls.MAX_IMAGES <= MAX_IMAGES_LIMIT:
            errors.append(f"MOWEN_MAX_IMAGES must be between 0 and {MAX_IMAGES_LIMIT}")
        if cls.SAFE_CONTENT_LENGTH <= 0:
            errors.append("SAFE_CONTENT_LENGTH must be positive")
        if cls.RATE_LIMIT_INTERVAL < 0:
            errors.append("MOWEN_RATE_LIMIT_INTERVAL cannot be negative")

        return errors

    @classmethod
    def print_config(cls):
        """
        Print current configuration with secrets masked.

        Run with: mowen-clip --show-config
        """
        print("\n📋 Current Configuration:")
        _home_env = Path.home() / ".mowen-clipper" / ".env"
        _project_env = Path(__file__).parent / ".env"
        if _home_env.exists():
            print(f"   Config file:    {_home_env}")
        elif _project_env.exists():
            print(f"   Config file:    {_project_env}")
        else:
            print(f"   Config file:    ⚠️  No .env found! Expected at {_home_env}")
        print(f"   API Key:        {'✅ Set' if cls.MOWEN_API_KEY else '❌ Missing'}")
        print(f"   API Base URL:   {cls.MOWEN_API_BASE_URL}")
        print(f"   Public notes:   {cls.DEFAULT_PUBLIC}")
        print(f"   Images:         {cls.DEFAULT_INCLUDE_IMAGES} (max {cls.MAX_IMAGES})")
        print(f"   Index note:     {cls.CREATE_INDEX_NOTE}")
        print(f"   Auto tag:       {cls.ENABLE_AUTO_TAG}")
        print(f"   Split budget:   {cls.SAFE_CONTENT_LENGTH} chars")
        print(f"   Rate limit:     {cls.RATE_LIMIT_INTERVAL}s between calls")
        print()

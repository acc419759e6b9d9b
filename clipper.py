#!/usr/bin/env python3
"""
clipper.py — Mowen Clipper: Main Entry Point
==============================================
This is the file you run from the command line. It takes a saved web page
through the whole flow:

  HTML file → Images uploaded → Content split → NoteAtom → Mowen note(s)

USAGE EXAMPLES:
  # Clip a saved page (title taken from <title>/<h1> if not given)
  mowen-clip article.html --url "https://example.com/post"

  # Public note, no images
  mowen-clip article.html --public --no-images

  # Cap the number of uploaded images, skip the index note for long pages
  mowen-clip article.html --max-images 10 --no-index

  # Save a highlight (later highlights on the same page append to one note)
  mowen-clip --highlight "A sentence worth keeping" --url "https://example.com/post"

  # Check progress of recent clips / your API key / your configuration
  mowen-clip --status
  mowen-clip --test-connection
  mowen-clip --show-config

THE PIPELINE:
  ┌──────────┐     ┌──────────────┐     ┌──────────────┐     ┌──────────┐
  │  Step 1   │────▶│   Step 2      │────▶│   Step 3      │────▶│  Step 4   │
  │  Images   │     │  Split        │     │  Convert      │     │  Publish  │
  └──────────┘     └──────────────┘     └──────────────┘     └──────────┘
  image_*.py        content_splitter.py   block_parser.py      publisher.py

This file only handles the CLI; everything else lives in the modules above,
so another front end (extension bridge, web service) can reuse them as-is.
"""

from __future__ import annotations

import argparse
import asyncio
import html
import logging
import sys
import time
import uuid
from pathlib import Path

from bs4 import BeautifulSoup

from logging_config import setup_logging
from config import Config

logger = logging.getLogger("clipper.cli")



def print_banner() -> None:
    """Cosmetic banner shown when the CLI starts."""
    print("""
╔══════════════════════════════════════════════════════════╗
║       📎 Mowen Clipper — Save any page to Mowen          ║
╚══════════════════════════════════════════════════════════╝
    """)


def guess_title(markup: str, fallback: str) -> str:
    """<title>, else the first <h1>, else `fallback`."""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in (soup.title, soup.find("h1")):
        if tag is not None:
            text = tag.get_text().strip()
            if text:
                return text
    return fallback


def extract_body(markup: str) -> str:
    """Inner HTML of <body>, or the whole document if there is none."""
    body = BeautifulSoup(markup, "html.parser").body
    return body.decode_contents() if body is not None else markup


async def _run_clip(args: argparse.Namespace) -> int:
    from api_client import MowenClient
    from image_matcher import extract_candidates
    from publisher import ClipRequest, Publisher
    from rate_limiter import RateLimiter
    from session_store import SessionStore

    path = Path(args.file)
    markup = path.read_text(encoding="utf-8")
    title = args.title or guess_title(markup, path.stem)
    content = extract_body(markup)
    images = extract_candidates(content, base_url=args.url or None)

    request = ClipRequest(
        title=title,
        content=content,
        source_url=args.url or "",
        images=images,
        tab_id=args.tab_id or f"cli-{uuid.uuid4().hex[:8]}",
        is_public=args.public,
        include_images=False if args.no_images else None,
        max_images=args.max_images,
        create_index_note=False if args.no_index else None,
    )

    logger.info(f"📄 {title}")
    logger.info(f"   {len(content)} chars of markup, {len(images)} images")

    limiter = RateLimiter(min_interval=Config.RATE_LIMIT_INTERVAL)
    async with MowenClient(Config.MOWEN_API_KEY, limiter=limiter) as client:
        publisher = Publisher(client, Config.settings(), store=SessionStore())
        result = await publisher.save_note(request)

    if not result.success:
        code = result.error_code.value if result.error_code else "UNKNOWN"
        logger.error(f"❌ {code}: {result.error}")
        return 1

    if result.index_note:
        logger.info(f"📚 Index: {result.index_note.note_url}")
    for note in result.part_notes:
        logger.info(f"📝 {note.title}: {note.note_url}")
    if result.failed_images:
        logger.info(f"🖼️  {result.uploaded_images} images uploaded, {result.failed_images} kept as links")
    if result.failed_parts:
        logger.warning(f"⚠️  Parts not saved: {', '.join(str(i + 1) for i in result.failed_parts)}")
    return 0


async def _run_highlight(args: argparse.Namespace) -> int:
    from api_client import MowenClient
    from publisher import Publisher
    from rate_limiter import RateLimiter
    from session_store import SessionStore

    fragment = f"<p>{html.escape(args.highlight)}</p>"
    limiter = RateLimiter(min_interval=Config.RATE_LIMIT_INTERVAL)
    async with MowenClient(Config.MOWEN_API_KEY, limiter=limiter) as client:
        publisher = Publisher(client, Config.settings(), store=SessionStore())
        result = await publisher.save_highlight(
            args.url, args.title or args.url, fragment, is_public=args.public
        )

    if not result.success:
        code = result.error_code.value if result.error_code else "UNKNOWN"
        logger.error(f"❌ {code}: {result.error}")
        return 1
    action = "Appended to" if result.is_append else "Created"
    logger.info(f"📌 {action} {result.note_url}")
    return 0


async def _run_test_connection() -> int:
    from api_client import MowenClient

    async with MowenClient(Config.MOWEN_API_KEY) as client:
        ok, message = await client.test_connection()
    if ok:
        logger.info(f"✅ {message}")
        return 0
    logger.error(f"❌ {message}")
    return 1


def main() -> None:
    """
    Main function — the entry point of the CLI.

    Handles:
    - Clipping a saved HTML page
    - Highlight append mode
    - Session status display
    - Connection test and config display
    """
    parser = argparse.ArgumentParser(
        description="📎 Mowen Clipper — Convert saved web pages into Mowen notes"
    )

    parser.add_argument(
        "file",
        nargs="?",
        default=None,
        help="Saved HTML page to clip",
    )

    parser.add_argument("--title", "-t", default=None, help="Note title (default: page <title>)")
    parser.add_argument("--url", "-u", default=None, help="Source URL of the page")

    visibility = parser.add_mutually_exclusive_group()
    visibility.add_argument(
        "--public", dest="public", action="store_true", default=None,
        help="Publish the note publicly",
    )
    visibility.add_argument(
        "--private", dest="public", action="store_false",
        help="Keep the note private",
    )

    parser.add_argument("--no-images", action="store_true", help="Strip images instead of uploading")
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help=f"Maximum images to upload (default: {Config.MAX_IMAGES}, max 200)",
    )
    parser.add_argument("--no-index", action="store_true", help="Do not create an index note for split pages")
    parser.add_argument("--tab-id", default=None, help="Session id used for progress tracking")

    parser.add_argument("--highlight", default=None, metavar="TEXT", help="Save TEXT as a highlight of --url")
    parser.add_argument("--status", action="store_true", help="Show recent clip sessions")
    parser.add_argument("--test-connection", action="store_true", help="Check the API key against Mowen")
    parser.add_argument("--show-config", action="store_true", help="Show current configuration and exit")

    args = parser.parse_args()

    # ══════════════════════════════════════════════
    # STARTUP
    # ══════════════════════════════════════════════

    setup_logging(level=Config.LOG_LEVEL, log_file=Config.LOG_FILE_PATH)
    print_banner()

    if args.show_config:
        Config.print_config()
        return

    if args.status:
        from session_store import SessionStore
        print(SessionStore().format_status_table())
        return

    if args.max_images is not None and not 0 <= args.max_images <= 200:
        parser.error("--max-images must be between 0 and 200")

    if not (args.file or args.highlight or args.test_connection):
        parser.print_help()
        print("\n❌ Please provide an HTML file to clip.")
        print('   Example: mowen-clip article.html --url "https://example.com/post"')
        sys.exit(1)

    if args.highlight and not args.url:
        parser.error("--highlight needs --url")

    # ══════════════════════════════════════════════
    # CONFIGURATION VALIDATION
    # ══════════════════════════════════════════════

    errors = Config.validate()
    if errors:
        logger.error("❌ Configuration errors:")
        for error in errors:
            logger.error(f"   • {error}")
        logger.error("\n📝 Put your values in ~/.mowen-clipper/.env")
        sys.exit(1)

    start_time = time.time()

    try:
        if args.test_connection:
            exit_code = asyncio.run(_run_test_connection())
        elif args.highlight:
            exit_code = asyncio.run(_run_highlight(args))
        else:
            exit_code = asyncio.run(_run_clip(args))

        elapsed = time.time() - start_time
        logger.info(f"\n⏱️  Total time: {elapsed:.1f} seconds")
        if exit_code:
            sys.exit(exit_code)
        logger.info("✨ Done!")

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.")
        sys.exit(0)

    except Exception as e:
        logger.error(f"\n❌ Error: {e}")
        logger.error("\n💡 Tips:")
        logger.error("   • Check that the HTML file exists and is UTF-8")
        logger.error("   • Verify your API key with --test-connection")
        logger.debug(f"Full error: {type(e).__name__}: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

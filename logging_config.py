"""
logging_config.py — Where Clipper Log Lines Go
================================================
Every module logs under the "clipper" namespace (clipper.parser,
clipper.images, clipper.publisher, ...). setup_logging() attaches two
handlers to that namespace root:

  stderr   what the person running a clip sees: the emoji progress lines
           ("Image 1/3: ...", "✅ Saved 2 note(s)") at LOG_LEVEL
  log file every line down to DEBUG, timestamped and tagged with the
           module logger, e.g. which matching strategy tagged each image
           or why an upload was degraded to a link

The file lives at LOG_FILE_PATH (default ~/.mowen-clipper/clipper.log),
next to the session database.
"""

from __future__ import annotations

import logging
from pathlib import Path


CLIPPER_DIR = Path.home() / ".mowen-clipper"
DEFAULT_LOG_FILE = CLIPPER_DIR / "clipper.log"

ROOT_LOGGER_NAME = "clipper"

FILE_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """
    Attach the console and file handlers to the "clipper" logger.

    Safe to call more than once; later calls are no-ops.

    Args:
        level:    Console threshold by name ("DEBUG", "INFO", ...); unknown names mean INFO
        log_file: Log file path, defaults to ~/.mowen-clipper/clipper.log
    """
    log_path = Path(log_file) if log_file else DEFAULT_LOG_FILE

    clipper_logger = logging.getLogger(ROOT_LOGGER_NAME)
    clipper_logger.setLevel(logging.DEBUG)
    if clipper_logger.handlers:
        return

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter("%(message)s"))
    clipper_logger.addHandler(console)

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        # Clips still run with console output only
        clipper_logger.warning(f"⚠️  Could not open log file {log_path}, logging to console only")
        return
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    clipper_logger.addHandler(file_handler)

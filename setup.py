"""
setup.py — Makes Mowen Clipper installable as a system-wide CLI command
=========================================================================
After running 'pip install .' (or 'pip install -e .'), you can clip saved
pages from anywhere on your system:

    mowen-clip article.html --url "https://example.com/post"

HOW IT WORKS:
- setuptools registers 'mowen-clip' as a console script
- It creates a small executable wrapper in your system PATH
- That wrapper calls the main() function from clipper.py

INSTALLATION:
    # Development mode (changes to code take effect immediately)
    pip install -e ".[dev]"

    # Regular install
    pip install .

AFTER INSTALLATION:
    mowen-clip article.html --public
    mowen-clip --highlight "worth keeping" --url "https://example.com/post"
    mowen-clip --show-config
"""

from setuptools import setup

setup(
    # ── Package metadata ──
    name="mowen-clipper",
    version="1.0.0",
    description="📎 Mowen Clipper — Convert web pages into Mowen notes with images, splitting and retries.",
    author="Tarun",

    # ── Flat layout: one module per concern, no package folder ──
    py_modules=[
        "clipper",
        "config",
        "logging_config",
        "models",
        "note_atom",
        "mark_parser",
        "block_parser",
        "post_processor",
        "content_splitter",
        "rate_limiter",
        "cancellation",
        "api_client",
        "image_fetcher",
        "image_uploader",
        "image_normalizer",
        "image_matcher",
        "session_store",
        "publisher",
    ],

    # ── Dependencies ──
    install_requires=[
        "httpx>=0.27.0",
        "tenacity>=8.2.0",
        "filetype>=1.2.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
        "beautifulsoup4>=4.12",
    ],

    # ── Optional dev dependencies ──
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },

    # ── Console Script Entry Point ──
    # "mowen-clip" = what you type in terminal
    # "clipper"    = the clipper.py file
    # "main"       = the main() function inside clipper.py
    entry_points={
        "console_scripts": [
            "mowen-clip=clipper:main",
        ],
    },

    # ── Python version requirement ──
    python_requires=">=3.10",
)

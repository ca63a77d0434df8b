"""
=============================================================================
MIME TYPE DETECTION
=============================================================================

Maps static asset extensions to Content-Type values.

Only the static file handler uses this table. Proxied responses keep
whatever Content-Type the upstream sent.

The asset tree is a built website (HTML pages, stylesheets, bundled
scripts, images, fonts, feeds, slide decks), so the table is tuned for
that rather than for arbitrary downloads.

=============================================================================
"""

from pathlib import PurePath
from typing import Optional, Union


MIME_TYPES = {
    # Pages and feeds
    ".html": "text/html",
    ".htm": "text/html",
    ".xml": "application/xml",
    ".rss": "application/rss+xml",
    ".atom": "application/atom+xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",

    # Styles and scripts
    ".css": "text/css",
    ".js": "text/javascript",
    ".mjs": "text/javascript",     # ES modules
    ".json": "application/json",
    ".map": "application/json",    # Source maps from the bundler
    ".webmanifest": "application/manifest+json",
    ".wasm": "application/wasm",

    # Images
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".webp": "image/webp",
    ".avif": "image/avif",

    # Fonts
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",

    # Media (served with range support)
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
    ".webm": "video/webm",

    # Documents
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".gz": "application/gzip",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

# Non-text/* types that still get "; charset=..."
_CHARSET_TYPES = frozenset({
    "application/json",
    "application/xml",
    "application/rss+xml",
    "application/atom+xml",
    "application/manifest+json",
    "image/svg+xml",
})


def get_mime_type(path: Union[str, PurePath], default: Optional[str] = None) -> str:
    """
    Look a file's extension up in MIME_TYPES, ignoring case.

        >>> get_mime_type("/slides/deck.PNG")
        'image/png'
        >>> get_mime_type("notes.xyz")
        'application/octet-stream'
    """
    suffix = PurePath(path).suffix.lower()
    return MIME_TYPES.get(suffix) or default or DEFAULT_MIME_TYPE


def is_text_type(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in _CHARSET_TYPES


def get_content_type(path: Union[str, PurePath], charset: str = "utf-8") -> str:
    """
    Content-Type header value for a static file.

        >>> get_content_type("index.html")
        'text/html; charset=utf-8'
        >>> get_content_type("photo.jpg")
        'image/jpeg'
    """
    mime_type = get_mime_type(path)
    return f"{mime_type}; charset={charset}" if is_text_type(mime_type) else mime_type

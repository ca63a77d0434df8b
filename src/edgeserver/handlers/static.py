"""
=============================================================================
STATIC FILE HANDLER
=============================================================================

Serves files from the static asset tree (STATIC_ROOT) and tells the
resolution chain whether it found anything.

=============================================================================
FOUND OR NOT FOUND
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │ lookup(request) outcome            │ StaticResult                   │
    ├────────────────────────────────────┼────────────────────────────────┤
    │ regular file under root            │ FOUND  200 / 206 / 304 / 416   │
    │ "/dir/" with dir/index.html        │ FOUND  (serves index.html)     │
    │ "/dir" (no trailing slash)         │ NOT FOUND  "is a directory"    │
    │ "/dir/" without index.html         │ NOT FOUND  "no index"          │
    │ missing file                       │ NOT FOUND  "missing"           │
    │ path escaping the root             │ NOT FOUND  "outside root"      │
    │ method other than GET / HEAD       │ NOT FOUND  "method"            │
    │ stat / open failure                │ NOT FOUND  "io error"          │
    └────────────────────────────────────┴────────────────────────────────┘

Every NOT FOUND is the same thing to the caller: try the next stage. None
of these reasons ever reach the client.

=============================================================================
CACHING AND PARTIAL CONTENT
=============================================================================

    ETag            "<mtime>-<size>"
    Last-Modified   file mtime (HTTP-date)
    Cache-Control   public, max-age=<CACHE_MAX_AGE>

    If-None-Match       matching ETag (or "*")    → 304
    If-Modified-Since   not modified since date   → 304
                        (ignored when If-None-Match is present)
    Range: bytes=a-b    single satisfiable range  → 206 + Content-Range
                        unsatisfiable             → 416
                        multiple ranges / junk    → ignored, full 200
    If-Range            must match the ETag or Last-Modified, otherwise
                        Range is ignored

=============================================================================
NON-BLOCKING FILE I/O
=============================================================================

stat(), open() and every read() run in the default executor via
asyncio.to_thread, so a slow disk never stalls the event loop. The body is
a stream of chunks; the open file is closed by the response's aclose()
when the connection is done with it, including when the client
disconnects half way through.

=============================================================================
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Optional, BinaryIO, AsyncIterator

from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, ResponseBuilder, format_http_date
from ..http.status_codes import HTTPStatus
from ..http.mime_types import get_content_type
from ..pipeline import StageResult


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StaticResult:
    """Outcome of a static lookup: a built response, or a reason for missing."""

    response: Optional[HTTPResponse] = None
    reason: str = ""

    @property
    def found(self) -> bool:
        return self.response is not None

    @classmethod
    def hit(cls, response: HTTPResponse) -> "StaticResult":
        return cls(response=response)

    @classmethod
    def miss(cls, reason: str) -> "StaticResult":
        return cls(reason=reason)


@dataclass(frozen=True)
class _FileInfo:
    path: Path
    size: int
    mtime: float

    @property
    def etag(self) -> str:
        return f'"{int(self.mtime)}-{self.size}"'

    @property
    def last_modified(self) -> datetime:
        return datetime.fromtimestamp(int(self.mtime), tz=timezone.utc)


class StaticFileHandler:
    """
    Serves files from a root directory.

    =========================================================================
    USAGE
    =========================================================================

        static = StaticFileHandler("./public", cache_max_age=3600)
        result = await static.lookup(request)
        if result.found:
            return result.response

    =========================================================================
    """

    def __init__(
        self,
        root_dir: str,
        index_file: str = "index.html",
        cache_max_age: int = 3600,
        chunk_size: int = CHUNK_SIZE,
    ):
        """
        Args:
            root_dir: Root directory. All served files MUST be inside it.
            index_file: File served for "/dir/" requests.
            cache_max_age: Cache-Control max-age in seconds.
            chunk_size: Bytes per read when streaming a file.
        """
        self.root_dir = Path(root_dir).resolve()
        self.index_file = index_file
        self.cache_max_age = cache_max_age
        self.chunk_size = chunk_size

        if not self.root_dir.is_dir():
            raise ValueError(f"Static root directory does not exist: {root_dir}")

    async def lookup(self, request: HTTPRequest) -> StaticResult:
        """
        Map a request onto a file and build the response for it.

        Never raises for ordinary misses; see the table in the module
        docstring. OSErrors during stat/open are reported as misses too.
        """
        if request.method not in ("GET", "HEAD"):
            return StaticResult.miss("method")

        relative = request.decoded_path.lstrip("/")
        if "\x00" in relative:
            return StaticResult.miss("outside root")

        # resolve() follows symlinks and normalizes .. components
        full_path = (self.root_dir / relative).resolve()

        try:
            full_path.relative_to(self.root_dir)
        except ValueError:
            logger.warning(f"Path traversal attempt: {request.path}")
            return StaticResult.miss("outside root")

        try:
            info = await asyncio.to_thread(self._stat, full_path, request.decoded_path.endswith("/"))
        except FileNotFoundError:
            return StaticResult.miss("missing")
        except IsADirectoryError as e:
            return StaticResult.miss(str(e))
        except OSError as e:
            logger.warning(f"Error reading {full_path}: {e}")
            return StaticResult.miss("io error")

        try:
            return StaticResult.hit(await self._serve_file(info, request))
        except OSError as e:
            logger.warning(f"Error serving file {info.path}: {e}")
            return StaticResult.miss("io error")

    def _stat(self, full_path: Path, wants_directory: bool) -> _FileInfo:
        """
        Stat the target, swapping in the index file for "/dir/" requests.

        Runs in a worker thread.
        """
        if full_path.is_dir():
            if not wants_directory:
                raise IsADirectoryError("is a directory")
            full_path = full_path / self.index_file
            if not full_path.is_file():
                raise IsADirectoryError("no index")

        stat = full_path.stat()
        if not full_path.is_file():
            raise FileNotFoundError(str(full_path))

        return _FileInfo(path=full_path, size=stat.st_size, mtime=stat.st_mtime)

    async def _serve_file(self, info: _FileInfo, request: HTTPRequest) -> HTTPResponse:
        """Build the 200 / 206 / 304 / 416 response for an existing file."""
        validators = {
            "ETag": info.etag,
            "Last-Modified": format_http_date(info.last_modified),
            "Cache-Control": f"public, max-age={self.cache_max_age}",
        }

        if self._not_modified(info, request):
            return (ResponseBuilder()
                .status(HTTPStatus.NOT_MODIFIED)
                .headers(validators)
                .source("static")
                .build())

        start, end = 0, info.size - 1
        status = HTTPStatus.OK
        builder = ResponseBuilder().headers(validators).header("Accept-Ranges", "bytes")

        byte_range = self._requested_range(info, request)
        if byte_range == "unsatisfiable":
            return (builder
                .status(HTTPStatus.RANGE_NOT_SATISFIABLE)
                .header("Content-Range", f"bytes */{info.size}")
                .source("static")
                .build())
        if byte_range is not None:
            start, end = byte_range
            status = HTTPStatus.PARTIAL_CONTENT
            builder.header("Content-Range", f"bytes {start}-{end}/{info.size}")

        length = end - start + 1 if info.size else 0
        builder = (builder
            .status(status)
            .header("Content-Type", get_content_type(info.path))
            .header("Content-Length", str(length))
            .source("static"))

        if request.is_head or length == 0:
            return builder.build()

        fp = await asyncio.to_thread(info.path.open, "rb")

        async def close_file() -> None:
            await asyncio.to_thread(fp.close)

        return builder.stream(self._read_chunks(fp, start, length), on_close=close_file).build()

    async def _read_chunks(self, fp: BinaryIO, start: int, length: int) -> AsyncIterator[bytes]:
        """Yield `length` bytes of `fp` starting at `start`, one chunk at a time."""
        await asyncio.to_thread(fp.seek, start, os.SEEK_SET)
        remaining = length
        while remaining > 0:
            chunk = await asyncio.to_thread(fp.read, min(self.chunk_size, remaining))
            if not chunk:
                break  # File shrank underneath us
            remaining -= len(chunk)
            yield chunk

    def _not_modified(self, info: _FileInfo, request: HTTPRequest) -> bool:
        """Evaluate If-None-Match, falling back to If-Modified-Since."""
        if_none_match = request.get_header("if-none-match")
        if if_none_match:
            candidates = [tag.strip() for tag in if_none_match.split(",")]
            weak_etag = f"W/{info.etag}"
            return "*" in candidates or info.etag in candidates or weak_etag in candidates

        since = _parse_http_date(request.get_header("if-modified-since"))
        if since is None:
            return False
        return info.last_modified <= since

    def _requested_range(self, info: _FileInfo, request: HTTPRequest):
        """
        Parse a single-range "Range: bytes=..." header.

        Returns:
            (start, end) inclusive, "unsatisfiable", or None to serve the
            whole file.
        """
        header = request.get_header("range")
        if not header or not header.startswith("bytes="):
            return None

        if_range = request.get_header("if-range")
        if if_range and if_range != info.etag and if_range != format_http_date(info.last_modified):
            return None

        spec = header[len("bytes="):].strip()
        if "," in spec or "-" not in spec:
            return None

        first, _, last = spec.partition("-")
        try:
            if first == "":
                # Suffix range: last N bytes
                suffix = int(last)
                if suffix <= 0:
                    return "unsatisfiable"
                start = max(info.size - suffix, 0)
                end = info.size - 1
            else:
                start = int(first)
                end = int(last) if last else info.size - 1
        except ValueError:
            return None

        if start < 0 or end < start:
            return None
        if start >= info.size:
            return "unsatisfiable"

        return start, min(end, info.size - 1)


class StaticResolver:
    """
    Resolution-chain stage around the static file handler.

    Only a FOUND lookup counts as HANDLED. A miss is NOT_APPLICABLE and an
    unexpected exception from the handler is ERROR, which the pipeline
    treats as a miss for this non-terminal stage.
    """

    name = "static"

    def __init__(self, handler: StaticFileHandler):
        self.handler = handler

    async def resolve(self, request: HTTPRequest) -> StageResult:
        try:
            result = await self.handler.lookup(request)
        except Exception as e:
            return StageResult.error(e)

        if result.found:
            return StageResult.handled(result.response)

        logger.debug(f"Static miss for {request.path}: {result.reason}")
        return StageResult.not_applicable()


def _parse_http_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

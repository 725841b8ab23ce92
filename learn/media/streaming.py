"""Byte-range streaming of stored videos."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from ..services.naming import is_derived_name


LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
VIDEO_MEDIA_TYPE = "video/mp4"


class RangeNotSatisfiable(ValueError):
    """The requested range starts beyond the end of the file."""

    def __init__(self, size: int) -> None:
        super().__init__(f"Range not satisfiable for a resource of {size} bytes")
        self.size = size


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Return the single byte range requested by *header* for a *size*-byte file.

    ``None`` means "serve the whole file": no header, a unit other than bytes,
    several ranges, or a malformed value. Raises :class:`RangeNotSatisfiable`
    when the range cannot overlap the file.
    """

    if not header:
        return None
    unit, _, spec = header.partition("=")
    spec = spec.strip()
    if unit.strip().lower() != "bytes" or not spec or "," in spec:
        return None
    first, separator, last = spec.partition("-")
    if not separator:
        return None
    first, last = first.strip(), last.strip()
    if not (first or last):
        return None
    if (first and not first.isdigit()) or (last and not last.isdigit()):
        return None

    if first:
        start = int(first)
        end = int(last) if last else size - 1
        if end < start:
            return None
    else:
        suffix = int(last)
        if suffix == 0:
            raise RangeNotSatisfiable(size)
        start = max(size - suffix, 0)
        end = size - 1
    if start >= size:
        raise RangeNotSatisfiable(size)
    return ByteRange(start=start, end=min(end, size - 1))


def resolve_served_path(videos_root: Path, filename: str) -> Optional[Path]:
    """Return the served path for *filename*, or ``None`` if it may not be served."""

    if not filename or filename in {".", ".."} or "/" in filename or "\\" in filename:
        return None
    if filename.startswith(".") or is_derived_name(filename):
        return None
    root = videos_root.resolve()
    candidate = (root / filename).resolve()
    if candidate.parent != root:
        return None
    return candidate


def iter_file_range(
    handle: BinaryIO,
    start: int,
    length: int,
    *,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield *length* bytes of *handle* from *start*, closing it afterwards."""

    try:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def build_video_response(path: Path, range_header: Optional[str]) -> StreamingResponse:
    """Open *path* once and stream it, honouring a single ``Range`` request.

    The size comes from the open handle, so an atomic rename of the served
    path while the response is streaming cannot mix old and new bytes.
    Raises :class:`FileNotFoundError` or :class:`RangeNotSatisfiable`.
    """

    handle = path.open("rb")
    try:
        size = os.fstat(handle.fileno()).st_size
        byte_range = parse_range_header(range_header, size)
    except BaseException:
        handle.close()
        raise

    headers = {"Accept-Ranges": "bytes"}
    if byte_range is None:
        headers["Content-Length"] = str(size)
        body = iter_file_range(handle, 0, size)
        status_code = 200
    else:
        headers["Content-Range"] = byte_range.content_range(size)
        headers["Content-Length"] = str(byte_range.length)
        body = iter_file_range(handle, byte_range.start, byte_range.length)
        status_code = 206
    LOGGER.debug(
        "Streaming %s (%s) status=%s length=%s",
        path.name,
        headers.get("Content-Range", "full"),
        status_code,
        headers["Content-Length"],
    )
    return StreamingResponse(
        body,
        status_code=status_code,
        headers=headers,
        media_type=VIDEO_MEDIA_TYPE,
        background=BackgroundTask(handle.close),
    )


__all__ = [
    "ByteRange",
    "CHUNK_SIZE",
    "RangeNotSatisfiable",
    "VIDEO_MEDIA_TYPE",
    "build_video_response",
    "iter_file_range",
    "parse_range_header",
    "resolve_served_path",
]

"""Ingestion of uploaded lesson videos into the public videos directory."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from ..media.transcode import StoredVideo
from .events import emit_file_event
from .naming import build_upload_name, staging_name


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 500 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 1024 * 1024
VIDEO_FIELD = "video_file"
VIDEO_URL_PREFIX = "/videos/"


class UploadRejected(ValueError):
    """Raised when an upload fails validation; nothing is left in storage."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class IngestedVideo:
    video: StoredVideo
    size: int

    @property
    def url(self) -> str:
        return video_url_for(self.video.filename)


def video_url_for(filename: str) -> str:
    return f"{VIDEO_URL_PREFIX}{filename}"


def _format_limit(limit: int) -> str:
    return f"{limit / (1024 * 1024):.0f} MB"


class VideoIngestor:
    """Validate and persist uploaded videos under generated unique names."""

    def __init__(
        self,
        videos_root: Path,
        *,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        field: str = VIDEO_FIELD,
    ) -> None:
        self._videos_root = Path(videos_root)
        self._max_bytes = int(max_bytes)
        self._chunk_size = int(chunk_size)
        self._field = field

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def _too_large(self, size: Optional[int]) -> bool:
        return self._max_bytes > 0 and size is not None and size > self._max_bytes

    def validate(self, content_type: Optional[str], *, declared_size: Optional[int] = None) -> None:
        """Reject non-video media types and sizes known to exceed the limit."""

        if not (content_type or "").lower().startswith("video/"):
            raise UploadRejected("Only video files are allowed!")
        if self._too_large(declared_size):
            raise UploadRejected(
                f"File too large; the limit is {_format_limit(self._max_bytes)}.",
                status_code=413,
            )

    def _copy_limited(self, source: BinaryIO, target: Path) -> int:
        if hasattr(source, "seek"):
            with contextlib.suppress(OSError, ValueError):
                source.seek(0)
        written = 0
        with target.open("wb") as buffer:
            while True:
                chunk = source.read(self._chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if self._too_large(written):
                    raise UploadRejected(
                        f"File too large; the limit is {_format_limit(self._max_bytes)}.",
                        status_code=413,
                    )
                buffer.write(chunk)
        return written

    async def store(
        self,
        source: BinaryIO,
        *,
        filename: Optional[str],
        content_type: Optional[str],
        declared_size: Optional[int] = None,
    ) -> IngestedVideo:
        """Persist *source* and return the stored video.

        Bytes are streamed into a hidden staging file and renamed to the final
        name only once the whole upload fits within the limit.
        """

        self.validate(content_type, declared_size=declared_size)

        self._videos_root.mkdir(parents=True, exist_ok=True)
        name = build_upload_name(self._field, filename)
        target = self._videos_root / name
        staging = self._videos_root / staging_name(name)

        start = time.perf_counter()
        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(
                None, functools.partial(self._copy_limited, source, staging)
            )
            os.replace(staging, target)
        except BaseException as error:
            staging.unlink(missing_ok=True)
            if isinstance(error, UploadRejected):
                LOGGER.info("Rejected upload '%s': %s", filename, error)
            raise

        emit_file_event(
            "store_upload",
            fields={"original_name": filename, "stored_as": name, "size": size},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return IngestedVideo(video=StoredVideo(served_path=target), size=size)


__all__ = [
    "DEFAULT_MAX_UPLOAD_BYTES",
    "IngestedVideo",
    "UploadRejected",
    "VIDEO_FIELD",
    "VIDEO_URL_PREFIX",
    "VideoIngestor",
    "video_url_for",
]

"""Background recompression of uploaded lesson videos.

A stored video lives at its *served path* for its whole life. The transcoder
copies it to an ``_orig`` backup once (later runs reuse it), encodes the
backup into a ``_tmp`` sibling and finally renames the temporary output over
the served path. The rename is the only step that changes what clients
receive, so readers always see either the complete upload or the complete
re-encode.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..services.events import emit_file_event
from ..services.naming import ORIGINAL_SUFFIX, TEMP_SUFFIX, sibling_path


LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0

# libx264 at CRF 23 keeps screen recordings sharp at a moderate size; yuv420p
# and AAC play everywhere; faststart moves the moov atom to the front.
ENCODER_ARGUMENTS: tuple[str, ...] = (
    "-c:v",
    "libx264",
    "-preset",
    "slow",
    "-crf",
    "23",
    "-pix_fmt",
    "yuv420p",
    "-c:a",
    "aac",
    "-b:a",
    "128k",
    "-movflags",
    "+faststart",
)


class VideoState(str, Enum):
    """Lifecycle of a stored video."""

    UPLOADED = "uploaded"
    BACKED_UP = "backed_up"
    ENCODING = "encoding"
    SWAPPED = "swapped"
    FAILED = "failed"


# States that only exist while a transcode is running.
IN_FLIGHT_STATES = frozenset({VideoState.BACKED_UP, VideoState.ENCODING})


class TranscodeError(RuntimeError):
    """Base class for failures of the transcode workflow."""


class BackupError(TranscodeError):
    """The served file could not be copied to its backup path."""


class EncodeError(TranscodeError):
    """The encoder could not be started or exited unsuccessfully."""


class EncodeTimeout(EncodeError):
    """The encoder exceeded its wall-clock budget and was killed."""


class SwapError(TranscodeError):
    """The encoded output could not be renamed over the served path."""


@dataclass(frozen=True)
class StoredVideo:
    """A video file addressed by the path clients stream it from."""

    served_path: Path

    @classmethod
    def from_filename(cls, videos_root: Path, filename: str) -> "StoredVideo":
        return cls(served_path=Path(videos_root) / filename)

    @property
    def filename(self) -> str:
        return self.served_path.name

    @property
    def original_path(self) -> Path:
        return sibling_path(self.served_path, ORIGINAL_SUFFIX)

    @property
    def temp_path(self) -> Path:
        return sibling_path(self.served_path, TEMP_SUFFIX)


@dataclass(frozen=True)
class TranscodeResult:
    video: StoredVideo
    original_size: Optional[int]
    transcoded_size: Optional[int]
    duration_seconds: float

    @property
    def ratio(self) -> Optional[float]:
        if not self.original_size or not self.transcoded_size:
            return None
        return self.original_size / self.transcoded_size


StateCallback = Callable[[StoredVideo, VideoState, Dict[str, Any]], None]


def build_encoder_command(
    source: Path,
    target: Path,
    *,
    encoder: Sequence[str] = ("ffmpeg",),
) -> List[str]:
    """Return the argument list that encodes *source* into *target*."""

    return [
        *encoder,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        str(source),
        *ENCODER_ARGUMENTS,
        "-y",
        str(target),
    ]


def encoder_available(binary: str = "ffmpeg") -> bool:
    """Return ``True`` when *binary* resolves to an executable."""

    return shutil.which(binary) is not None


def _file_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except OSError:
        return None


def _first_line(raw: bytes) -> str:
    lines = raw.decode("utf-8", errors="ignore").strip().splitlines()
    return lines[0] if lines else ""


class VideoTranscoder:
    """Runs the backup → encode → swap sequence for one video at a time."""

    def __init__(
        self,
        *,
        encoder: Sequence[str] | str = "ffmpeg",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        on_state: Optional[StateCallback] = None,
    ) -> None:
        self._encoder: tuple[str, ...] = (encoder,) if isinstance(encoder, str) else tuple(encoder)
        self._timeout = float(timeout)
        self._on_state = on_state

    @property
    def timeout(self) -> float:
        return self._timeout

    def with_state_callback(self, on_state: Optional[StateCallback]) -> "VideoTranscoder":
        """Return a copy of this transcoder reporting state changes to *on_state*."""

        return VideoTranscoder(encoder=self._encoder, timeout=self._timeout, on_state=on_state)

    def _report(self, video: StoredVideo, state: VideoState, **details: Any) -> None:
        if self._on_state is None:
            return
        try:
            self._on_state(video, state, details)
        except Exception:  # noqa: BLE001 - state reporting must not break the workflow
            LOGGER.exception("State callback failed for %s -> %s", video.filename, state.value)

    async def transcode(self, video: StoredVideo) -> TranscodeResult:
        """Recompress *video* in place and return size statistics.

        Raises a :class:`TranscodeError` subclass when any step fails; the
        served path then still holds the bytes it had before the call.
        """

        started = time.perf_counter()
        LOGGER.info("Starting transcode of %s", video.filename)
        try:
            await self._backup(video)
            self._report(video, VideoState.BACKED_UP, original_size=_file_size(video.original_path))

            self._report(video, VideoState.ENCODING)
            await self._encode(video)
            await self._swap(video)
        except Exception as error:
            LOGGER.error("Transcode of %s failed: %s", video.filename, error)
            self._report(video, VideoState.FAILED, error=str(error) or error.__class__.__name__)
            raise

        result = TranscodeResult(
            video=video,
            original_size=_file_size(video.original_path),
            transcoded_size=_file_size(video.served_path),
            duration_seconds=time.perf_counter() - started,
        )
        self._report(
            video,
            VideoState.SWAPPED,
            original_size=result.original_size,
            transcoded_size=result.transcoded_size,
        )
        if result.ratio is not None:
            LOGGER.info(
                "Transcoded %s: %.0fMB -> %.0fMB (%.1fx) in %.1fs",
                video.filename,
                result.original_size / 1e6,
                result.transcoded_size / 1e6,
                result.ratio,
                result.duration_seconds,
            )
        else:
            LOGGER.info("Transcoded %s in %.1fs", video.filename, result.duration_seconds)
        return result

    async def _backup(self, video: StoredVideo) -> None:
        # The first backup is the recovery copy of the upload; a re-run encodes from it.
        if video.original_path.is_file():
            emit_file_event("backup_reused", fields={"target": video.original_path})
            return
        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        copy_operation = functools.partial(shutil.copy2, video.served_path, video.original_path)
        try:
            await loop.run_in_executor(None, copy_operation)
        except OSError as error:
            emit_file_event(
                "backup_failed",
                fields={"source": video.served_path, "error": error},
                level=logging.ERROR,
            )
            raise BackupError(f"Unable to back up {video.filename}: {error}") from error
        emit_file_event(
            "backup",
            fields={"source": video.served_path, "target": video.original_path},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )

    async def _encode(self, video: StoredVideo) -> None:
        command = build_encoder_command(video.original_path, video.temp_path, encoder=self._encoder)
        LOGGER.debug("Executing encoder command: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise EncodeError(f"Unable to start encoder '{self._encoder[0]}': {error}") from error

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            self._discard_temp(video)
            raise EncodeTimeout(
                f"Encoder exceeded {self._timeout:g}s for {video.filename}"
            ) from None
        except asyncio.CancelledError:
            await self._terminate(process)
            self._discard_temp(video)
            raise

        if process.returncode != 0:
            self._discard_temp(video)
            detail = _first_line(stderr) or "no diagnostic output"
            raise EncodeError(f"Encoder exited with status {process.returncode}: {detail}")
        if not video.temp_path.exists():
            raise EncodeError(f"Encoder produced no output for {video.filename}")

    async def _swap(self, video: StoredVideo) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.replace, video.temp_path, video.served_path)
        except OSError as error:
            self._discard_temp(video)
            emit_file_event(
                "swap_failed",
                fields={"source": video.temp_path, "target": video.served_path, "error": error},
                level=logging.ERROR,
            )
            raise SwapError(f"Unable to swap in encoded {video.filename}: {error}") from error
        emit_file_event("swap", fields={"source": video.temp_path, "target": video.served_path})

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    @staticmethod
    def _discard_temp(video: StoredVideo) -> None:
        try:
            video.temp_path.unlink(missing_ok=True)
        except OSError as error:
            LOGGER.warning("Could not remove temporary output %s: %s", video.temp_path, error)


__all__ = [
    "BackupError",
    "DEFAULT_TIMEOUT_SECONDS",
    "ENCODER_ARGUMENTS",
    "EncodeError",
    "EncodeTimeout",
    "IN_FLIGHT_STATES",
    "StoredVideo",
    "SwapError",
    "TranscodeError",
    "TranscodeResult",
    "VideoState",
    "VideoTranscoder",
    "build_encoder_command",
    "encoder_available",
]

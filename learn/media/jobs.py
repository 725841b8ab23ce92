"""Fire-and-forget transcode jobs with observable task handles."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..services.correlation import (
    ACTOR_VAR,
    JOB_ID_VAR,
    ContextualLoggerAdapter,
    collect_correlation_context,
    format_actor_label,
    new_correlation_id,
)
from ..services.events import emit_task_event
from ..services.naming import STAGING_SUFFIX, TEMP_SUFFIX
from ..services.storage import CatalogRepository
from .transcode import (
    IN_FLIGHT_STATES,
    StoredVideo,
    TranscodeResult,
    VideoState,
    VideoTranscoder,
)


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

INTERRUPTED_ERROR = "interrupted"


@dataclass
class TranscodeJob:
    """Handle for one submitted transcode."""

    id: str
    video: StoredVideo
    task: "asyncio.Task[TranscodeResult]"
    submitted_at: float = field(default_factory=time.time)

    @property
    def done(self) -> bool:
        return self.task.done()


class TranscodeJobManager:
    """Launch transcodes without waiting for them and log how they end.

    Each submission becomes its own :class:`asyncio.Task`; there is no queue,
    no concurrency limit and no retry. Jobs operate on disjoint served paths so
    they need no coordination with each other.
    """

    def __init__(
        self,
        transcoder: VideoTranscoder,
        repository: Optional[CatalogRepository] = None,
    ) -> None:
        self._repository = repository
        if repository is not None:
            transcoder = transcoder.with_state_callback(self._record_state)
        self._transcoder = transcoder
        self._jobs: Dict[str, TranscodeJob] = {}

    @property
    def transcoder(self) -> VideoTranscoder:
        return self._transcoder

    def active_jobs(self) -> List[TranscodeJob]:
        return [job for job in self._jobs.values() if not job.done]

    def submit(self, video: StoredVideo, *, job_id: Optional[str] = None) -> "asyncio.Task[TranscodeResult]":
        """Start transcoding *video* on the running loop and return its task."""

        loop = asyncio.get_running_loop()
        job_id = job_id or new_correlation_id()
        task = loop.create_task(self._run(job_id, video), name=f"transcode:{video.filename}")
        job = TranscodeJob(id=job_id, video=video, task=task)
        self._jobs[job_id] = job
        task.add_done_callback(lambda done, job=job: self._finish(job, done))
        emit_task_event(
            "queued",
            f"Transcode scheduled for {video.filename}",
            fields={"job": job_id, "video": video.filename, "active": len(self.active_jobs())},
            correlation=collect_correlation_context(),
        )
        return task

    async def wait_idle(self) -> None:
        """Wait until every submitted job has finished, successfully or not."""

        while self._jobs:
            pending = [job.task for job in self._jobs.values()]
            await asyncio.gather(*pending, return_exceptions=True)
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel jobs still running when the application stops."""

        pending = self.active_jobs()
        if not pending:
            return
        LOGGER.warning("Cancelling %s in-flight transcode(s) on shutdown", len(pending))
        for job in pending:
            job.task.cancel()
        await asyncio.gather(*(job.task for job in pending), return_exceptions=True)

    async def _run(self, job_id: str, video: StoredVideo) -> TranscodeResult:
        JOB_ID_VAR.set(job_id)
        ACTOR_VAR.set(format_actor_label("job", "transcode"))
        return await self._transcoder.transcode(video)

    def _record_state(self, video: StoredVideo, state: VideoState, details: Dict[str, Any]) -> None:
        assert self._repository is not None
        self._repository.update_video_state(
            video.filename,
            state,
            error=details.get("error"),
            original_size=details.get("original_size"),
            transcoded_size=details.get("transcoded_size"),
        )

    def _finish(self, job: TranscodeJob, task: "asyncio.Task[TranscodeResult]") -> None:
        self._jobs.pop(job.id, None)
        duration_ms = (time.time() - job.submitted_at) * 1000.0
        fields = {"job": job.id, "video": job.video.filename}
        if task.cancelled():
            emit_task_event(
                "cancelled",
                f"Transcode cancelled for {job.video.filename}",
                fields=fields,
                duration_ms=duration_ms,
                level=logging.WARNING,
            )
            return
        error = task.exception()
        if error is not None:
            emit_task_event(
                "failed",
                f"Transcode failed for {job.video.filename}",
                fields={**fields, "error": f"{error.__class__.__name__}: {error}"},
                duration_ms=duration_ms,
                level=logging.ERROR,
            )
            return
        result = task.result()
        emit_task_event(
            "finished",
            f"Transcode finished for {job.video.filename}",
            fields={
                **fields,
                "original_size": result.original_size,
                "transcoded_size": result.transcoded_size,
                "ratio": round(result.ratio, 2) if result.ratio else None,
            },
            duration_ms=duration_ms,
        )


def recover_interrupted_videos(repository: CatalogRepository, videos_root: Path) -> List[str]:
    """Settle videos whose transcode died with the previous process.

    A video still marked ``backed_up`` or ``encoding`` has no job behind it any
    more. Its ``_tmp`` output is incomplete and is deleted; the video becomes
    ``failed`` with error ``interrupted``. The served file is always complete
    (only a rename ever replaces it) and the ``_orig`` backup is kept. Stray
    ``_tmp`` files without a state row and staging files of uploads cut off
    mid-copy are removed as well.
    """

    recovered: List[str] = []
    for record in repository.iter_videos(IN_FLIGHT_STATES):
        video = StoredVideo.from_filename(videos_root, record.filename)
        video.temp_path.unlink(missing_ok=True)
        repository.update_video_state(record.filename, VideoState.FAILED, error=INTERRUPTED_ERROR)
        LOGGER.warning("Transcode of %s was interrupted (was %s)", record.filename, record.state)
        recovered.append(record.filename)

    if videos_root.is_dir():
        for leftover in videos_root.glob(f"*{TEMP_SUFFIX}.*"):
            if leftover.is_file():
                LOGGER.info("Removing leftover transcode output %s", leftover.name)
                leftover.unlink(missing_ok=True)
        for leftover in videos_root.glob(f".*{STAGING_SUFFIX}"):
            if leftover.is_file():
                LOGGER.info("Removing unfinished upload %s", leftover.name)
                leftover.unlink(missing_ok=True)

    return recovered


__all__ = [
    "INTERRUPTED_ERROR",
    "TranscodeJob",
    "TranscodeJobManager",
    "recover_interrupted_videos",
]

"""Video storage, transcoding and streaming."""

from .jobs import TranscodeJob, TranscodeJobManager, recover_interrupted_videos
from .streaming import ByteRange, RangeNotSatisfiable, build_video_response, parse_range_header
from .transcode import (
    BackupError,
    EncodeError,
    EncodeTimeout,
    StoredVideo,
    SwapError,
    TranscodeError,
    TranscodeResult,
    VideoState,
    VideoTranscoder,
    encoder_available,
)

__all__ = [
    "BackupError",
    "ByteRange",
    "EncodeError",
    "EncodeTimeout",
    "RangeNotSatisfiable",
    "StoredVideo",
    "SwapError",
    "TranscodeError",
    "TranscodeJob",
    "TranscodeJobManager",
    "TranscodeResult",
    "VideoState",
    "VideoTranscoder",
    "build_video_response",
    "encoder_available",
    "parse_range_header",
    "recover_interrupted_videos",
]

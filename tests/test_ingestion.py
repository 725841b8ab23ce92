from __future__ import annotations

import asyncio
import io
import re
from pathlib import Path

import pytest

from learn.services.ingestion import UploadRejected, VideoIngestor


def _store(ingestor: VideoIngestor, payload: bytes, **kwargs):
    return asyncio.run(ingestor.store(io.BytesIO(payload), **kwargs))


def test_store_writes_video_under_generated_name(tmp_path: Path) -> None:
    root = tmp_path / "videos"
    ingestor = VideoIngestor(root, max_bytes=1024)

    ingested = _store(ingestor, b"v" * 600, filename="Intro.MOV", content_type="video/quicktime")

    assert re.fullmatch(r"video_file-\d+-\d+\.mov", ingested.video.filename)
    assert ingested.url == f"/videos/{ingested.video.filename}"
    assert ingested.size == 600
    assert ingested.video.served_path.read_bytes() == b"v" * 600
    assert sorted(path.name for path in root.iterdir()) == [ingested.video.filename]


def test_non_video_media_type_is_rejected_before_writing(tmp_path: Path) -> None:
    root = tmp_path / "videos"
    ingestor = VideoIngestor(root)

    with pytest.raises(UploadRejected) as excinfo:
        _store(ingestor, b"%PDF", filename="notes.pdf", content_type="application/pdf")

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "Only video files are allowed!"
    assert not root.exists() or not any(root.iterdir())


def test_declared_size_over_limit_is_rejected(tmp_path: Path) -> None:
    root = tmp_path / "videos"
    ingestor = VideoIngestor(root, max_bytes=100)

    with pytest.raises(UploadRejected) as excinfo:
        _store(ingestor, b"x" * 10, filename="a.mp4", content_type="video/mp4", declared_size=101)

    assert excinfo.value.status_code == 413
    assert not root.exists() or not any(root.iterdir())


def test_streamed_size_over_limit_leaves_nothing_behind(tmp_path: Path) -> None:
    root = tmp_path / "videos"
    ingestor = VideoIngestor(root, max_bytes=100, chunk_size=16)

    with pytest.raises(UploadRejected) as excinfo:
        _store(ingestor, b"x" * 101, filename="a.mp4", content_type="video/mp4")

    assert excinfo.value.status_code == 413
    assert list(root.iterdir()) == []


def test_zero_limit_disables_size_check(tmp_path: Path) -> None:
    ingestor = VideoIngestor(tmp_path / "videos", max_bytes=0)

    ingested = _store(ingestor, b"x" * 5000, filename="big.mp4", content_type="video/mp4", declared_size=5000)

    assert ingested.size == 5000

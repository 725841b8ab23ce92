from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from learn.bootstrap import Bootstrapper
from learn.config import AppConfig


FAKE_ENCODER = textwrap.dedent(
    """
    import sys
    import time

    args = sys.argv[1:]
    source = args[args.index("-i") + 1]
    target = args[-1]
    with open(source, "rb") as handle:
        mode = handle.read(16)

    if mode.startswith(b"FAIL"):
        sys.stderr.write("Invalid data found when processing input\\nsecond line\\n")
        sys.exit(1)
    if mode.startswith(b"SLOW"):
        time.sleep(30)
    if mode.startswith(b"NOOUT"):
        sys.exit(0)

    with open(source, "rb") as handle:
        payload = handle.read()
    with open(target, "wb") as handle:
        handle.write(b"ENCODED:" + payload[: max(len(payload) // 4, 1)])
    """
)


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LEARN_SESSION_SECRET", raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/learn.db",
            "videos_root": "public/videos",
            "session_secret": "test-secret",
            "transcode_timeout_seconds": 30,
            "admin": {"name": "Admin", "email": "admin@example.com", "password": "secret"},
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def fake_encoder(tmp_path: Path) -> list:
    """Command prefix standing in for ffmpeg.

    The script inspects the first bytes of its input: ``FAIL`` exits non-zero,
    ``SLOW`` sleeps past short timeouts, ``NOOUT`` exits without writing, and
    anything else is "encoded" into a smaller file prefixed with ``ENCODED:``.
    """

    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(FAKE_ENCODER, encoding="utf-8")
    return [sys.executable, str(script)]

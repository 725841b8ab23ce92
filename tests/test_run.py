"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

from typer.testing import CliRunner

import run
from learn.media.transcode import VideoState
from learn.services.storage import CatalogRepository


def _setup_serve(monkeypatch, tmp_path, upload_limit, *, open_browser=False):
    captured = {}

    monkeypatch.setattr(
        run,
        "initialize_app",
        lambda: SimpleNamespace(storage_root=tmp_path, ffmpeg_binary="ffmpeg"),
    )
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "encoder_available", lambda binary: True)
    monkeypatch.setattr(run, "CatalogRepository", lambda config: object())

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(repository, config, root_path):
        captured["root_path"] = root_path
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, limit_max_request_size=None, **kwargs):
            captured["app"] = app
            if limit_max_request_size is not None:
                kwargs["limit_max_request_size"] = limit_max_request_size
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    class DummyThread:
        def __init__(self, target, daemon):
            captured["thread_daemon"] = daemon

        def start(self):
            captured["thread_started"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run.threading, "Thread", DummyThread)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="api/", open_browser=open_browser)

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_applies_request_size_limit(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=50 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 50 * 1024 * 1024
    assert captured["config_kwargs"]["root_path"] == "/api"
    assert captured["root_path"] == "/api"
    assert captured["app_state_server"] is captured["server_instance"]
    assert captured["server_run"] is True
    assert "thread_started" not in captured


def test_serve_omits_limit_when_disabled(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    assert "limit_max_request_size" not in captured["config_kwargs"]


def test_serve_can_open_browser(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0, open_browser=True)

    assert captured["thread_started"] is True
    assert captured["thread_daemon"] is True


def test_add_user_command_creates_account(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    runner = CliRunner()
    result = runner.invoke(
        run.cli,
        ["add-user", "--name", "Kim", "--email", "kim@example.com", "--password", "pw", "--role", "admin"],
    )

    assert result.exit_code == 0, result.output
    user = CatalogRepository(temp_config).find_user_by_email("kim@example.com")
    assert user is not None and user.role == "admin"

    duplicate = runner.invoke(
        run.cli,
        ["add-user", "--name", "Kim", "--email", "kim@example.com", "--password", "pw"],
    )
    assert duplicate.exit_code == 1


def _patch_transcoder(monkeypatch, temp_config, fake_encoder):
    original = run.VideoTranscoder
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(
        run,
        "VideoTranscoder",
        lambda encoder, timeout: original(encoder=fake_encoder, timeout=timeout),
    )


def test_transcode_command_runs_in_foreground(monkeypatch, temp_config, fake_encoder):
    _patch_transcoder(monkeypatch, temp_config, fake_encoder)
    served = temp_config.videos_root / "video_file-1-1.mp4"
    served.write_bytes(b"RAW" * 1000)

    result = CliRunner().invoke(run.cli, ["transcode", served.name])

    assert result.exit_code == 0, result.output
    assert "Transcoded video_file-1-1.mp4" in result.output
    assert served.read_bytes().startswith(b"ENCODED:RAW")
    record = CatalogRepository(temp_config).get_video(served.name)
    assert record.state == VideoState.SWAPPED.value


def test_transcode_command_reports_failure(monkeypatch, temp_config, fake_encoder):
    _patch_transcoder(monkeypatch, temp_config, fake_encoder)
    served = temp_config.videos_root / "video_file-2-2.mp4"
    served.write_bytes(b"FAIL")

    result = CliRunner().invoke(run.cli, ["transcode", served.name])

    assert result.exit_code == 1
    assert "Transcode failed" in result.output
    assert served.read_bytes() == b"FAIL"
    assert CatalogRepository(temp_config).get_video(served.name).state == VideoState.FAILED.value


def test_transcode_command_rejects_unknown_video(monkeypatch, temp_config, fake_encoder):
    _patch_transcoder(monkeypatch, temp_config, fake_encoder)

    result = CliRunner().invoke(run.cli, ["transcode", "missing.mp4"])

    assert result.exit_code == 1
    assert "No stored video" in result.output

from __future__ import annotations

import re
from pathlib import Path

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from learn.media.transcode import VideoState, VideoTranscoder
from learn.services.storage import CatalogRepository
from learn.web import create_app
from learn.web import server as web_server


ADMIN = {"email": "admin@example.com", "password": "secret"}


def _build_app(config, fake_encoder=None, **kwargs):
    repository = CatalogRepository(config)
    transcoder = VideoTranscoder(encoder=fake_encoder, timeout=30) if fake_encoder else None
    app = create_app(repository, config=config, transcoder=transcoder, **kwargs)
    return app, repository


def _login(client: TestClient, credentials=ADMIN) -> None:
    response = client.post("/login", data=credentials, follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/"


def _student(repository: CatalogRepository) -> dict:
    repository.add_user("Student", "student@example.com", "pw", "student")
    return {"email": "student@example.com", "password": "pw"}


def _lesson_form(course_id: int, slug: str = "intro", **extra) -> dict:
    form = {"course_id": str(course_id), "title": "Intro", "slug": slug, "duration": "", "sort_order": "1"}
    form.update(extra)
    return form


def _stored_files(root: Path) -> list:
    return sorted(path.name for path in root.iterdir())


def test_pages_redirect_to_login_when_signed_out(temp_config):
    app, _ = _build_app(temp_config)
    client = TestClient(app)

    response = client.get("/", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/login"

    api_response = client.post("/api/progress/1", json={"completed": True})
    assert api_response.status_code == 401

    assert client.get("/login").status_code == 200


def test_login_rejects_bad_credentials(temp_config):
    app, _ = _build_app(temp_config)
    client = TestClient(app)

    response = client.post("/login", data={"email": "admin@example.com", "password": "nope"})

    assert response.status_code == 200
    assert "Invalid email or password" in response.text
    assert client.get("/", follow_redirects=False).status_code == 303


def test_logout_clears_session(temp_config):
    app, _ = _build_app(temp_config)
    client = TestClient(app)
    _login(client)

    assert client.get("/").status_code == 200
    client.get("/logout", follow_redirects=False)
    assert client.get("/", follow_redirects=False).status_code == 303


def test_admin_routes_require_admin_role(temp_config):
    app, repository = _build_app(temp_config)
    client = TestClient(app)
    _login(client, _student(repository))

    response = client.get("/admin")
    assert response.status_code == 403
    assert "Admin access required" in response.text

    response = client.post("/admin/course", data={"title": "X", "slug": "x"})
    assert response.status_code == 403
    assert repository.find_course_by_slug("x") is None

    assert client.get("/api/videos/anything.mp4").status_code == 403


def test_dashboard_course_and_lesson_pages(temp_config):
    app, repository = _build_app(temp_config)
    course_id = repository.add_course("Color Grading", "color", "Look development")
    repository.add_course("Secret Draft", "draft", published=False)
    repository.add_lesson(course_id, "Scopes", "scopes", sort_order=1, duration=95)
    repository.add_lesson(course_id, "Curves", "curves", sort_order=2, video_url="/videos/clip.mp4")
    repository.add_lesson(course_id, "Masks", "masks", sort_order=3)
    client = TestClient(app)
    _login(client, _student(repository))

    dashboard = client.get("/")
    assert dashboard.status_code == 200
    assert "Color Grading" in dashboard.text
    assert "Secret Draft" not in dashboard.text

    course = client.get("/course/color")
    assert course.status_code == 200
    assert "Scopes" in course.text and "1:35" in course.text

    assert client.get("/course/draft").status_code == 404
    assert client.get("/course/missing").status_code == 404
    assert client.get("/course/color/missing").status_code == 404

    lesson = client.get("/course/color/curves")
    assert lesson.status_code == 200
    assert 'src="/videos/clip.mp4"' in lesson.text
    assert "/course/color/scopes" in lesson.text
    assert "/course/color/masks" in lesson.text


def test_progress_api_records_completion_and_time(temp_config):
    app, repository = _build_app(temp_config)
    course_id = repository.add_course("Course", "course")
    lesson_id = repository.add_lesson(course_id, "One", "one")
    client = TestClient(app)
    _login(client)
    admin = repository.find_user_by_email("admin@example.com")

    response = client.post(f"/api/progress/{lesson_id}", json={"completed": True})
    assert response.json() == {"ok": True}
    response = client.post(f"/api/progress/{lesson_id}/time", json={"videoTime": 73.5})
    assert response.json() == {"ok": True}

    progress = repository.get_progress(admin.id, lesson_id)
    assert progress.completed is True
    assert progress.video_time == 73.5

    assert client.post("/api/progress/9999", json={"completed": True}).status_code == 404


def test_admin_course_and_user_management(temp_config):
    app, repository = _build_app(temp_config)
    client = TestClient(app)
    _login(client)

    response = client.post(
        "/admin/course",
        data={"title": "Sound", "slug": "sound", "description": "Mixing"},
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/admin"
    course = repository.find_course_by_slug("sound")
    assert course is not None and course.published

    duplicate = client.post("/admin/course", data={"title": "Again", "slug": "sound"})
    assert duplicate.status_code == 400

    client.post(
        "/admin/course/update",
        data={"id": str(course.id), "title": "Sound Design", "slug": "sound-design"},
    )
    assert repository.get_course(course.id).title == "Sound Design"

    client.post("/admin/lesson", data=_lesson_form(course.id, video_url="https://cdn.example.com/a.mp4"))
    lesson = repository.find_lesson(course.id, "intro")
    assert lesson.video_url == "https://cdn.example.com/a.mp4"
    assert lesson.duration == 0

    client.post(
        "/admin/lesson/update",
        data={**_lesson_form(course.id, title="Renamed"), "id": str(lesson.id), "title": "Renamed"},
    )
    assert repository.get_lesson(lesson.id).title == "Renamed"

    client.post("/admin/user", data={"name": "Kim", "email": "kim@example.com", "password": "pw"})
    kim = repository.find_user_by_email("kim@example.com")
    assert kim is not None and kim.role == "student"

    page = client.get("/admin")
    assert page.status_code == 200
    assert "Sound Design" in page.text and "kim@example.com" in page.text

    client.post("/admin/user/delete", data={"id": str(kim.id)})
    assert repository.get_user(kim.id) is None
    admin = repository.find_user_by_email("admin@example.com")
    assert client.post("/admin/user/delete", data={"id": str(admin.id)}).status_code == 400

    client.post("/admin/lesson/delete", data={"id": str(lesson.id)})
    assert repository.get_lesson(lesson.id) is None
    client.post("/admin/course/delete", data={"id": str(course.id)})
    assert repository.get_course(course.id) is None


def test_video_upload_stores_redirects_and_transcodes_in_background(temp_config, fake_encoder):
    app, repository = _build_app(temp_config, fake_encoder)
    course_id = repository.add_course("Course", "course")
    payload = b"RAW" + bytes(range(256)) * 40

    with TestClient(app) as client:
        _login(client)
        response = client.post(
            "/admin/lesson",
            data=_lesson_form(course_id),
            files={"video_file": ("My Clip.MP4", payload, "video/mp4")},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/admin"

        lesson = repository.find_lesson(course_id, "intro")
        match = re.fullmatch(r"/videos/(video_file-\d+-\d+\.mp4)", lesson.video_url or "")
        assert match is not None
        filename = match.group(1)

        client.portal.call(app.state.transcode_jobs.wait_idle)

        record = repository.get_video(filename)
        assert record.state == VideoState.SWAPPED.value
        assert record.original_size == len(payload)

        streamed = client.get(f"/videos/{filename}")
        assert streamed.status_code == 200
        assert streamed.content.startswith(b"ENCODED:RAW")

        status_response = client.get(f"/api/videos/{filename}")
        assert status_response.json()["video"]["state"] == "swapped"

        stem = filename.rsplit(".", 1)[0]
        assert _stored_files(temp_config.videos_root) == sorted([filename, f"{stem}_orig.mp4"])
        assert client.get(f"/videos/{stem}_orig.mp4").status_code == 404


def test_upload_with_failing_encoder_keeps_original_bytes(temp_config, fake_encoder):
    app, repository = _build_app(temp_config, fake_encoder)
    course_id = repository.add_course("Course", "course")
    payload = b"FAIL" + b"\x00" * 256

    with TestClient(app) as client:
        _login(client)
        client.post(
            "/admin/lesson",
            data=_lesson_form(course_id),
            files={"video_file": ("clip.webm", payload, "video/webm")},
        )
        client.portal.call(app.state.transcode_jobs.wait_idle)

        lesson = repository.find_lesson(course_id, "intro")
        filename = lesson.video_url.rsplit("/", 1)[1]
        assert repository.get_video(filename).state == VideoState.FAILED.value
        assert client.get(lesson.video_url).content == payload


def test_non_video_upload_is_rejected(temp_config):
    app, repository = _build_app(temp_config)
    course_id = repository.add_course("Course", "course")
    client = TestClient(app)
    _login(client)

    response = client.post(
        "/admin/lesson",
        data=_lesson_form(course_id),
        files={"video_file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Only video files are allowed!"
    assert _stored_files(temp_config.videos_root) == []
    assert repository.find_lesson(course_id, "intro") is None


def test_oversized_upload_is_rejected_without_storing(temp_config, monkeypatch):
    app, repository = _build_app(temp_config)
    course_id = repository.add_course("Course", "course")
    monkeypatch.setattr(web_server, "_MAX_UPLOAD_BYTES", 1024)
    client = TestClient(app)
    _login(client)

    response = client.post(
        "/admin/lesson",
        data=_lesson_form(course_id),
        files={"video_file": ("big.mp4", b"x" * 4096, "video/mp4")},
    )

    assert response.status_code == 413
    assert _stored_files(temp_config.videos_root) == []
    assert repository.find_lesson(course_id, "intro") is None


def test_declared_request_size_over_limit_is_rejected_early(temp_config, monkeypatch):
    app, repository = _build_app(temp_config)
    course_id = repository.add_course("Course", "course")
    monkeypatch.setattr(web_server, "_MAX_UPLOAD_BYTES", 16)
    client = TestClient(app)
    _login(client)

    response = client.post(
        "/admin/lesson",
        data=_lesson_form(course_id),
        files={"video_file": ("big.mp4", b"x" * 200_000, "video/mp4")},
    )

    assert response.status_code == 413
    assert _stored_files(temp_config.videos_root) == []


def test_range_requests_are_served_from_disk(temp_config):
    app, _ = _build_app(temp_config)
    payload = bytes(range(256)) * 8
    (temp_config.videos_root / "clip.mp4").write_bytes(payload)
    client = TestClient(app)

    partial = client.get("/videos/clip.mp4", headers={"Range": "bytes=0-99"})
    assert partial.status_code == 206
    assert partial.headers["content-length"] == "100"
    assert partial.headers["content-range"] == f"bytes 0-99/{len(payload)}"
    assert partial.headers["accept-ranges"] == "bytes"
    assert partial.headers["content-type"] == "video/mp4"
    assert partial.content == payload[:100]

    suffix = client.get("/videos/clip.mp4", headers={"Range": "bytes=-48"})
    assert suffix.status_code == 206
    assert suffix.content == payload[-48:]

    open_ended = client.get("/videos/clip.mp4", headers={"Range": "bytes=2000-"})
    assert open_ended.content == payload[2000:]
    assert open_ended.headers["content-range"] == f"bytes 2000-{len(payload) - 1}/{len(payload)}"

    full = client.get("/videos/clip.mp4")
    assert full.status_code == 200
    assert full.headers["content-length"] == str(len(payload))
    assert full.headers["accept-ranges"] == "bytes"
    assert full.content == payload

    multi = client.get("/videos/clip.mp4", headers={"Range": "bytes=0-1,5-6"})
    assert multi.status_code == 200
    assert multi.content == payload

    unsatisfiable = client.get("/videos/clip.mp4", headers={"Range": "bytes=5000-"})
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["content-range"] == f"bytes */{len(payload)}"


def test_missing_and_hidden_videos_return_404(temp_config):
    app, _ = _build_app(temp_config)
    (temp_config.videos_root / "clip_orig.mp4").write_bytes(b"backup")
    (temp_config.videos_root / ".clip.mp4.upload").write_bytes(b"staging")
    client = TestClient(app)

    assert client.get("/videos/nope.mp4").status_code == 404
    assert client.get("/videos/clip_orig.mp4").status_code == 404
    assert client.get("/videos/.clip.mp4.upload").status_code == 404


def test_redirects_respect_root_path(temp_config):
    app, _ = _build_app(temp_config, root_path="/learn")
    client = TestClient(app)

    response = client.get("/", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/learn/login"

"""FastAPI application powering the Learn web UI."""

from __future__ import annotations

import dataclasses
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.sessions import SessionMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..media.jobs import TranscodeJobManager
from ..media.streaming import RangeNotSatisfiable, build_video_response, resolve_served_path
from ..media.transcode import VideoState, VideoTranscoder
from ..services.auth import RequestContext, SessionUser
from ..services.correlation import (
    ACTOR_VAR,
    JOB_ID_VAR,
    REQUEST_ID_VAR,
    ContextualLoggerAdapter,
    collect_correlation_context,
    format_actor_label,
    new_correlation_id,
)
from ..services.events import emit_db_event
from ..services.ingestion import (
    DEFAULT_MAX_UPLOAD_BYTES,
    IngestedVideo,
    UploadRejected,
    VIDEO_URL_PREFIX,
    VideoIngestor,
)
from ..services.storage import CatalogRepository, LessonProgressView


_STATIC_ROOT = Path(__file__).parent / "static"
_TEMPLATE_ROOT = Path(__file__).parent / "templates"
_SESSION_MAX_AGE_SECONDS = 7 * 24 * 60 * 60
_SESSION_COOKIE = "learn_session"
_DB_SLOW_WARNING_MS = 450.0
_MULTIPART_OVERHEAD_BYTES = 64 * 1024
_UPLOAD_PATHS = ("/admin/lesson", "/admin/lesson/update")

try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("LEARN_MAX_UPLOAD_BYTES") or "").strip() or DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = DEFAULT_MAX_UPLOAD_BYTES


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes (``0`` disables the limit)."""

    return int(_MAX_UPLOAD_BYTES)


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})


class LoginRequired(Exception):
    """Raised by :func:`require_user` when the session carries no user."""


class AdminRequired(Exception):
    """Raised by :func:`require_admin` for authenticated non-admin users."""


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = REQUEST_ID_VAR.set(request_id)
        actor_token = ACTOR_VAR.set(actor_hint)
        job_token = JOB_ID_VAR.set(None)

        try:
            await self.app(scope, receive, send)
        finally:
            JOB_ID_VAR.reset(job_token)
            ACTOR_VAR.reset(actor_token)
            REQUEST_ID_VAR.reset(request_token)


class UploadLimitMiddleware:
    """Reject video uploads whose declared request size already exceeds the limit.

    This runs before the multipart body is read; uploads without a usable
    ``Content-Length`` are checked again while their bytes are copied.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http" or scope.get("method") != "POST":
            await self.app(scope, receive, send)
            return
        path = _route_path(scope)
        limit = get_max_upload_bytes()
        if limit <= 0 or path not in _UPLOAD_PATHS:
            await self.app(scope, receive, send)
            return

        declared: Optional[int] = None
        for name, value in scope.get("headers") or ():
            if name == b"content-length":
                try:
                    declared = int(value.decode("latin-1"))
                except ValueError:
                    declared = None
                break
        if declared is not None and declared > limit + _MULTIPART_OVERHEAD_BYTES:
            LOGGER.info("Rejected upload to %s: declared %s bytes", path, declared)
            response = JSONResponse(
                {"detail": "File too large."},
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)


class CompletionPayload(BaseModel):
    completed: bool = False


class VideoTimePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_time: float = Field(0.0, alias="videoTime")


def get_request_context(request: Request) -> RequestContext:
    """Collect the request id and signed-in user for route handlers."""

    request_id = getattr(request.state, "request_id", None) or REQUEST_ID_VAR.get()
    user = SessionUser.from_session(request.session.get("user"))
    return RequestContext(request_id=request_id, user=user)


def require_user(context: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not context.authenticated:
        raise LoginRequired()
    return context


def require_admin(context: RequestContext = Depends(require_user)) -> RequestContext:
    assert context.user is not None
    if not context.user.is_admin:
        raise AdminRequired()
    return context


def format_duration(seconds: Any) -> str:
    """Render a lesson duration in seconds as ``m:ss`` (or ``h:mm:ss``)."""

    try:
        total = max(int(seconds or 0), 0)
    except (TypeError, ValueError):
        return ""
    if not total:
        return ""
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def progress_percent(completed: int, total: int) -> int:
    if not total:
        return 0
    return int(round(100.0 * completed / total))


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip() or default)
    except (TypeError, ValueError):
        return default


def _video_filename(video_url: Optional[str]) -> Optional[str]:
    if video_url and video_url.startswith(VIDEO_URL_PREFIX):
        return video_url[len(VIDEO_URL_PREFIX):]
    return None


def _has_upload(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


def _route_path(scope: Scope) -> str:
    path = scope.get("path") or ""
    root = scope.get("root_path") or ""
    if root and path.startswith(root):
        return path[len(root):]
    return path


def _is_api_path(request: Request) -> bool:
    return _route_path(request.scope).startswith("/api/")


def create_app(
    repository: CatalogRepository,
    *,
    config: AppConfig,
    transcoder: Optional[VideoTranscoder] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = (root_path or "").strip().rstrip("/")
    if normalized_root and not normalized_root.startswith("/"):
        normalized_root = f"/{normalized_root}"

    def _repository_event_emitter(action: str, *, payload: Dict[str, Any], duration_ms: float) -> None:
        level = logging.WARNING if duration_ms >= _DB_SLOW_WARNING_MS else logging.DEBUG
        emit_db_event(
            action,
            fields=payload,
            correlation=collect_correlation_context(),
            duration_ms=duration_ms,
            level=level,
        )

    repository.configure_event_emitter(_repository_event_emitter)

    transcode_jobs = TranscodeJobManager(
        transcoder
        or VideoTranscoder(
            encoder=config.ffmpeg_binary,
            timeout=config.transcode_timeout_seconds,
        ),
        repository,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        LOGGER.info("Serving videos from %s", config.videos_root)
        try:
            yield
        finally:
            await transcode_jobs.shutdown()

    app = FastAPI(
        title="Learn",
        description="Courses, lessons and video streaming",
        root_path=normalized_root,
        lifespan=lifespan,
    )
    app.state.repository = repository
    app.state.config = config
    app.state.transcode_jobs = transcode_jobs

    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        session_cookie=_SESSION_COOKIE,
        max_age=_SESSION_MAX_AGE_SECONDS,
        same_site="lax",
    )
    app.add_middleware(UploadLimitMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.mount(
        "/static",
        StaticFiles(directory=_STATIC_ROOT, check_dir=False),
        name="assets",
    )

    templates = Jinja2Templates(directory=str(_TEMPLATE_ROOT))
    templates.env.filters["duration"] = format_duration
    templates.env.filters["progress_percent"] = progress_percent

    def _url(request: Request, path: str) -> str:
        return f"{request.scope.get('root_path') or ''}{path}"

    def _redirect(request: Request, path: str) -> RedirectResponse:
        return RedirectResponse(_url(request, path), status_code=status.HTTP_303_SEE_OTHER)

    def _render(
        request: Request,
        template: str,
        context: Optional[RequestContext] = None,
        *,
        status_code: int = 200,
        **values: Any,
    ) -> HTMLResponse:
        values.setdefault("user", context.user if context else None)
        values.setdefault("base_url", request.scope.get("root_path") or "")
        return templates.TemplateResponse(request, template, values, status_code=status_code)

    def _render_error(
        request: Request,
        message: str,
        *,
        status_code: int,
        context: Optional[RequestContext] = None,
    ) -> HTMLResponse:
        if context is None:
            context = get_request_context(request)
        return _render(request, "error.html", context, status_code=status_code, message=message)

    @app.exception_handler(LoginRequired)
    async def _handle_login_required(request: Request, _: LoginRequired) -> Response:
        if _is_api_path(request):
            return JSONResponse({"detail": "Authentication required"}, status_code=status.HTTP_401_UNAUTHORIZED)
        return _redirect(request, "/login")

    @app.exception_handler(AdminRequired)
    async def _handle_admin_required(request: Request, _: AdminRequired) -> Response:
        LOGGER.info("Denied admin route %s", request.url.path)
        if _is_api_path(request):
            return JSONResponse({"detail": "Admin access required"}, status_code=status.HTTP_403_FORBIDDEN)
        return _render_error(request, "Admin access required", status_code=status.HTTP_403_FORBIDDEN)

    async def _ingest_upload(upload: UploadFile) -> IngestedVideo:
        ingestor = VideoIngestor(config.videos_root, max_bytes=get_max_upload_bytes())
        try:
            return await ingestor.store(
                upload.file,
                filename=upload.filename,
                content_type=upload.content_type,
                declared_size=upload.size,
            )
        except UploadRejected as error:
            raise HTTPException(status_code=error.status_code, detail=str(error)) from error
        except OSError as error:
            LOGGER.exception("Failed to store upload '%s'", upload.filename)
            raise HTTPException(status_code=500, detail="Upload error: could not store the file") from error
        finally:
            await upload.close()

    def _schedule_transcode(ingested: IngestedVideo) -> None:
        repository.register_video(ingested.video.filename, VideoState.UPLOADED)
        transcode_jobs.submit(ingested.video)

    def _discard_ingested(ingested: Optional[IngestedVideo]) -> None:
        if ingested is not None:
            ingested.video.served_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.get("/login", response_class=HTMLResponse)
    async def login_form(
        request: Request,
        context: RequestContext = Depends(get_request_context),
    ) -> Response:
        if context.authenticated:
            return _redirect(request, "/")
        return _render(request, "login.html", context)

    @app.post("/login")
    async def login(
        request: Request,
        email: str = Form(""),
        password: str = Form(""),
    ) -> Response:
        user = repository.authenticate(email, password)
        if user is None:
            return _render(
                request,
                "login.html",
                None,
                error="Invalid email or password",
                email=email,
            )
        request.session["user"] = user.to_session_user().to_session()
        LOGGER.info("User %s signed in", user.id)
        return _redirect(request, "/")

    @app.get("/logout")
    async def logout(request: Request) -> RedirectResponse:
        request.session.clear()
        return _redirect(request, "/login")

    # ------------------------------------------------------------------
    # Learner pages
    # ------------------------------------------------------------------
    @app.get("/", response_class=HTMLResponse)
    async def dashboard(request: Request, context: RequestContext = Depends(require_user)) -> HTMLResponse:
        assert context.user is not None
        summaries = repository.iter_course_summaries(context.user.id)
        return _render(request, "dashboard.html", context, courses=summaries)

    @app.get("/course/{slug}", response_class=HTMLResponse)
    async def course_page(
        request: Request,
        slug: str,
        context: RequestContext = Depends(require_user),
    ) -> HTMLResponse:
        assert context.user is not None
        course = repository.find_course_by_slug(slug, published_only=not context.user.is_admin)
        if course is None:
            return _render_error(request, "Course not found", status_code=404, context=context)
        lessons = repository.iter_lessons_with_progress(course.id, context.user.id)
        completed = sum(1 for entry in lessons if entry.completed)
        return _render(
            request,
            "course.html",
            context,
            course=course,
            lessons=lessons,
            completed_count=completed,
            total_count=len(lessons),
        )

    @app.get("/course/{slug}/{lesson_slug}", response_class=HTMLResponse)
    async def lesson_page(
        request: Request,
        slug: str,
        lesson_slug: str,
        context: RequestContext = Depends(require_user),
    ) -> HTMLResponse:
        assert context.user is not None
        course = repository.find_course_by_slug(slug, published_only=not context.user.is_admin)
        if course is None:
            return _render_error(request, "Course not found", status_code=404, context=context)
        lesson = repository.find_lesson(course.id, lesson_slug)
        if lesson is None:
            return _render_error(request, "Lesson not found", status_code=404, context=context)

        lessons: List[LessonProgressView] = repository.iter_lessons_with_progress(course.id, context.user.id)
        index = next((position for position, entry in enumerate(lessons) if entry.lesson.id == lesson.id), 0)
        current = lessons[index] if lessons else None
        return _render(
            request,
            "lesson.html",
            context,
            course=course,
            lesson=lesson,
            lessons=lessons,
            current_index=index,
            completed=bool(current and current.completed),
            video_time=current.video_time if current else 0.0,
            prev=lessons[index - 1].lesson if index > 0 else None,
            next=lessons[index + 1].lesson if index + 1 < len(lessons) else None,
        )

    # ------------------------------------------------------------------
    # Progress API
    # ------------------------------------------------------------------
    def _require_lesson(lesson_id: int) -> None:
        if repository.get_lesson(lesson_id) is None:
            raise HTTPException(status_code=404, detail="Lesson not found")

    @app.post("/api/progress/{lesson_id}")
    async def update_completion(
        lesson_id: int,
        payload: CompletionPayload,
        context: RequestContext = Depends(require_user),
    ) -> Dict[str, Any]:
        assert context.user is not None
        _require_lesson(lesson_id)
        repository.set_completed(context.user.id, lesson_id, payload.completed)
        return {"ok": True}

    @app.post("/api/progress/{lesson_id}/time")
    async def update_video_time(
        lesson_id: int,
        payload: VideoTimePayload,
        context: RequestContext = Depends(require_user),
    ) -> Dict[str, Any]:
        assert context.user is not None
        _require_lesson(lesson_id)
        repository.set_video_time(context.user.id, lesson_id, payload.video_time)
        return {"ok": True}

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    @app.get("/admin", response_class=HTMLResponse)
    async def admin_page(request: Request, context: RequestContext = Depends(require_admin)) -> HTMLResponse:
        courses = list(repository.iter_courses())
        lessons_by_course: Dict[int, List[Any]] = {}
        for lesson in repository.iter_lessons():
            lessons_by_course.setdefault(lesson.course_id, []).append(lesson)
        videos = {record.filename: record for record in repository.iter_videos()}
        video_states = {}
        for lessons in lessons_by_course.values():
            for lesson in lessons:
                filename = _video_filename(lesson.video_url)
                if filename and filename in videos:
                    video_states[lesson.id] = videos[filename]
        return _render(
            request,
            "admin.html",
            context,
            courses=courses,
            lessons=lessons_by_course,
            users=list(repository.iter_users()),
            video_states=video_states,
            max_upload_bytes=get_max_upload_bytes(),
        )

    @app.post("/admin/course")
    async def create_course(
        request: Request,
        title: str = Form(...),
        slug: str = Form(...),
        description: str = Form(""),
        thumbnail: str = Form(""),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        try:
            repository.add_course(title.strip(), slug.strip(), description, thumbnail=thumbnail.strip())
        except sqlite3.IntegrityError:
            return _render_error(request, f"A course with slug '{slug}' already exists", status_code=400, context=context)
        return _redirect(request, "/admin")

    @app.post("/admin/course/update")
    async def update_course(
        request: Request,
        id: int = Form(...),
        title: str = Form(...),
        slug: str = Form(...),
        description: str = Form(""),
        thumbnail: str = Form(""),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        if repository.get_course(id) is None:
            return _render_error(request, "Course not found", status_code=404, context=context)
        try:
            repository.update_course(
                id,
                title=title.strip(),
                slug=slug.strip(),
                description=description,
                thumbnail=thumbnail.strip(),
            )
        except sqlite3.IntegrityError:
            return _render_error(request, f"A course with slug '{slug}' already exists", status_code=400, context=context)
        return _redirect(request, "/admin")

    @app.post("/admin/course/delete")
    async def delete_course(
        request: Request,
        id: int = Form(...),
        context: RequestContext = Depends(require_admin),
    ) -> RedirectResponse:
        repository.remove_course(id)
        return _redirect(request, "/admin")

    @app.post("/admin/lesson")
    async def create_lesson(
        request: Request,
        course_id: int = Form(...),
        title: str = Form(...),
        slug: str = Form(...),
        description: str = Form(""),
        video_url: str = Form(""),
        duration: str = Form("0"),
        sort_order: str = Form("0"),
        content: str = Form(""),
        video_file: Optional[UploadFile] = File(None),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        if repository.get_course(course_id) is None:
            return _render_error(request, "Course not found", status_code=404, context=context)

        ingested: Optional[IngestedVideo] = None
        final_video_url = video_url.strip() or None
        if _has_upload(video_file):
            assert video_file is not None
            ingested = await _ingest_upload(video_file)
            final_video_url = ingested.url

        try:
            lesson_id = repository.add_lesson(
                course_id,
                title.strip(),
                slug.strip(),
                description=description,
                video_url=final_video_url,
                duration=_coerce_int(duration),
                sort_order=_coerce_int(sort_order),
                content=content,
            )
        except sqlite3.IntegrityError:
            _discard_ingested(ingested)
            return _render_error(request, f"A lesson with slug '{slug}' already exists", status_code=400, context=context)

        LOGGER.info("Created lesson %s (video=%s)", lesson_id, final_video_url)
        if ingested is not None:
            _schedule_transcode(ingested)
        return _redirect(request, "/admin")

    @app.post("/admin/lesson/update")
    async def update_lesson(
        request: Request,
        id: int = Form(...),
        course_id: int = Form(...),
        title: str = Form(...),
        slug: str = Form(...),
        description: str = Form(""),
        video_url: str = Form(""),
        duration: str = Form("0"),
        sort_order: str = Form("0"),
        content: str = Form(""),
        video_file: Optional[UploadFile] = File(None),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        if repository.get_lesson(id) is None:
            return _render_error(request, "Lesson not found", status_code=404, context=context)
        if repository.get_course(course_id) is None:
            return _render_error(request, "Course not found", status_code=404, context=context)

        ingested: Optional[IngestedVideo] = None
        final_video_url = video_url.strip() or None
        if _has_upload(video_file):
            assert video_file is not None
            ingested = await _ingest_upload(video_file)
            final_video_url = ingested.url

        try:
            repository.update_lesson(
                id,
                course_id=course_id,
                title=title.strip(),
                slug=slug.strip(),
                description=description,
                video_url=final_video_url,
                duration=_coerce_int(duration),
                sort_order=_coerce_int(sort_order),
                content=content,
            )
        except sqlite3.IntegrityError:
            _discard_ingested(ingested)
            return _render_error(request, f"A lesson with slug '{slug}' already exists", status_code=400, context=context)

        if ingested is not None:
            _schedule_transcode(ingested)
        return _redirect(request, "/admin")

    @app.post("/admin/lesson/delete")
    async def delete_lesson(
        request: Request,
        id: int = Form(...),
        context: RequestContext = Depends(require_admin),
    ) -> RedirectResponse:
        repository.remove_lesson(id)
        return _redirect(request, "/admin")

    @app.post("/admin/user")
    async def create_user(
        request: Request,
        name: str = Form(...),
        email: str = Form(...),
        password: str = Form(...),
        role: str = Form("student"),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        try:
            repository.add_user(name.strip(), email, password, role)
        except sqlite3.IntegrityError:
            return _render_error(request, f"A user with email '{email}' already exists", status_code=400, context=context)
        return _redirect(request, "/admin")

    @app.post("/admin/user/delete")
    async def delete_user(
        request: Request,
        id: int = Form(...),
        context: RequestContext = Depends(require_admin),
    ) -> Response:
        assert context.user is not None
        if id == context.user.id:
            return _render_error(request, "You cannot delete your own account", status_code=400, context=context)
        repository.remove_user(id)
        return _redirect(request, "/admin")

    @app.get("/api/videos/{filename}")
    async def video_status(
        filename: str,
        context: RequestContext = Depends(require_admin),
    ) -> Dict[str, Any]:
        record = repository.get_video(filename)
        if record is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return {"video": dataclasses.asdict(record)}

    # ------------------------------------------------------------------
    # Streaming read-back
    # ------------------------------------------------------------------
    @app.get("/videos/{filename}")
    async def stream_video(request: Request, filename: str) -> Response:
        path = resolve_served_path(config.videos_root, filename)
        if path is None:
            raise HTTPException(status_code=404, detail="File not found")
        try:
            return build_video_response(path, request.headers.get("range"))
        except (FileNotFoundError, IsADirectoryError) as error:
            raise HTTPException(status_code=404, detail="File not found") from error
        except RangeNotSatisfiable as error:
            return Response(
                status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
                headers={"Content-Range": f"bytes */{error.size}", "Accept-Ranges": "bytes"},
            )

    return app


__all__ = [
    "AdminRequired",
    "CompletionPayload",
    "LoginRequired",
    "RequestContextMiddleware",
    "UploadLimitMiddleware",
    "VideoTimePayload",
    "create_app",
    "format_duration",
    "get_max_upload_bytes",
    "get_request_context",
    "progress_percent",
    "require_admin",
    "require_user",
]

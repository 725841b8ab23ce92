"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .auth import SessionUser, hash_password, normalize_role, verify_password


@dataclass
class UserRecord:
    id: int
    name: str
    email: str
    role: str
    created_at: str

    def to_session_user(self) -> SessionUser:
        return SessionUser(id=self.id, name=self.name, email=self.email, role=normalize_role(self.role))


@dataclass
class CourseRecord:
    id: int
    title: str
    slug: str
    description: str
    thumbnail: str
    published: bool
    sort_order: int
    created_at: str


@dataclass
class LessonRecord:
    id: int
    course_id: int
    title: str
    slug: str
    description: str
    video_url: Optional[str]
    duration: int
    sort_order: int
    content: str
    created_at: str


@dataclass
class CourseSummary:
    course: CourseRecord
    lesson_count: int
    completed_count: int


@dataclass
class LessonProgressView:
    lesson: LessonRecord
    completed: bool
    video_time: float


@dataclass
class ProgressRecord:
    user_id: int
    lesson_id: int
    completed: bool
    video_time: float
    updated_at: str


@dataclass
class VideoRecord:
    filename: str
    state: str
    error: Optional[str]
    original_size: Optional[int]
    transcoded_size: Optional[int]
    created_at: str
    updated_at: str


_MISSING = object()

_USER_COLUMNS = "id, name, email, role, created_at"
_COURSE_COLUMNS = "id, title, slug, description, thumbnail, published, sort_order, created_at"
_LESSON_COLUMNS = (
    "id, course_id, title, slug, description, video_url, duration, sort_order, content, created_at"
)
_VIDEO_COLUMNS = "filename, state, error, original_size, transcoded_size, created_at, updated_at"


LOGGER = logging.getLogger(__name__)


def _course_from_row(row: sqlite3.Row) -> CourseRecord:
    return CourseRecord(
        id=int(row["id"]),
        title=row["title"],
        slug=row["slug"],
        description=row["description"] or "",
        thumbnail=row["thumbnail"] or "",
        published=bool(row["published"]),
        sort_order=int(row["sort_order"] or 0),
        created_at=row["created_at"],
    )


def _lesson_from_row(row: sqlite3.Row) -> LessonRecord:
    return LessonRecord(
        id=int(row["id"]),
        course_id=int(row["course_id"]),
        title=row["title"],
        slug=row["slug"],
        description=row["description"] or "",
        video_url=row["video_url"] or None,
        duration=int(row["duration"] or 0),
        sort_order=int(row["sort_order"] or 0),
        content=row["content"] or "",
        created_at=row["created_at"],
    )


def _state_value(state: Any) -> str:
    return str(getattr(state, "value", state))


class CatalogRepository:
    """Repository exposing CRUD helpers for users, the catalog, progress and videos."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting query events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            duration_ms = (time.perf_counter() - start) * 1000.0
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter(action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
        *,
        action: str,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters or ())
        with self._track_db_event(
            action,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event["rowcount"] = int(cursor.rowcount)
            return cursor

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and always closes."""

        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                yield connection
        finally:
            connection.close()

    def _fetch_one(self, statement: str, parameters: Sequence[Any], *, action: str) -> Optional[sqlite3.Row]:
        with self._session() as connection:
            return self._execute(connection, statement, parameters, action=action).fetchone()

    def _fetch_all(self, statement: str, parameters: Sequence[Any] = (), *, action: str) -> List[sqlite3.Row]:
        with self._session() as connection:
            return list(self._execute(connection, statement, parameters, action=action).fetchall())

    def _write(self, statement: str, parameters: Sequence[Any], *, action: str) -> sqlite3.Cursor:
        with self._session() as connection:
            return self._execute(connection, statement, parameters, action=action)

    # ---------------------------------------------------------------------
    # Users
    # ---------------------------------------------------------------------
    def add_user(self, name: str, email: str, password: str, role: str = "student") -> int:
        normalized_role = normalize_role(role)
        LOGGER.debug("Adding user '%s' with role=%s", email, normalized_role)
        cursor = self._write(
            "INSERT INTO users(name, email, password, role) VALUES (?, ?, ?, ?)",
            (name, email.strip().lower(), hash_password(password), normalized_role),
            action="users.insert",
        )
        return int(cursor.lastrowid)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        row = self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,), action="users.get"
        )
        return UserRecord(**row) if row else None

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        row = self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?",
            (email.strip().lower(),),
            action="users.lookup_by_email",
        )
        return UserRecord(**row) if row else None

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        """Return the user matching *email* when *password* is correct."""

        row = self._fetch_one(
            f"SELECT {_USER_COLUMNS}, password FROM users WHERE email = ?",
            ((email or "").strip().lower(),),
            action="users.authenticate",
        )
        if row is None or not verify_password(password or "", row["password"]):
            LOGGER.info("Rejected login for '%s'", email)
            return None
        return UserRecord(
            id=int(row["id"]),
            name=row["name"],
            email=row["email"],
            role=row["role"],
            created_at=row["created_at"],
        )

    def iter_users(self) -> Iterable[UserRecord]:
        rows = self._fetch_all(f"SELECT {_USER_COLUMNS} FROM users ORDER BY id", action="users.list")
        return [UserRecord(**row) for row in rows]

    def count_users(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) FROM users", (), action="users.count")
        return int(row[0]) if row else 0

    def remove_user(self, user_id: int) -> None:
        LOGGER.debug("Removing user id=%s", user_id)
        self._write("DELETE FROM users WHERE id = ?", (user_id,), action="users.delete")

    # ---------------------------------------------------------------------
    # Courses
    # ---------------------------------------------------------------------
    def add_course(
        self,
        title: str,
        slug: str,
        description: str = "",
        *,
        thumbnail: str = "",
        published: bool = True,
        sort_order: int = 0,
    ) -> int:
        with self._track_db_event("add_course", slug=slug) as event:
            cursor = self._write(
                """
                INSERT INTO courses(title, slug, description, thumbnail, published, sort_order)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (title, slug, description, thumbnail or "", int(bool(published)), int(sort_order)),
                action="courses.insert",
            )
            event["course_id"] = int(cursor.lastrowid)
            LOGGER.debug("Course '%s' inserted with id=%s", slug, cursor.lastrowid)
            return int(cursor.lastrowid)

    def get_course(self, course_id: int) -> Optional[CourseRecord]:
        row = self._fetch_one(
            f"SELECT {_COURSE_COLUMNS} FROM courses WHERE id = ?", (course_id,), action="courses.get"
        )
        return _course_from_row(row) if row else None

    def find_course_by_slug(self, slug: str, *, published_only: bool = False) -> Optional[CourseRecord]:
        query = f"SELECT {_COURSE_COLUMNS} FROM courses WHERE slug = ?"
        if published_only:
            query += " AND published = 1"
        row = self._fetch_one(query, (slug,), action="courses.lookup_by_slug")
        return _course_from_row(row) if row else None

    def iter_courses(self, *, published_only: bool = False) -> Iterable[CourseRecord]:
        query = f"SELECT {_COURSE_COLUMNS} FROM courses"
        if published_only:
            query += " WHERE published = 1"
        query += " ORDER BY sort_order, id"
        return [_course_from_row(row) for row in self._fetch_all(query, action="courses.list")]

    def iter_course_summaries(self, user_id: int) -> List[CourseSummary]:
        """Return published courses with lesson totals and *user_id*'s completions."""

        rows = self._fetch_all(
            f"""
            SELECT {", ".join("c." + column.strip() for column in _COURSE_COLUMNS.split(","))},
                (SELECT COUNT(*) FROM lessons l WHERE l.course_id = c.id) AS lesson_count,
                (SELECT COUNT(*) FROM progress p
                    JOIN lessons l ON l.id = p.lesson_id
                    WHERE p.user_id = ? AND l.course_id = c.id AND p.completed = 1) AS completed_count
            FROM courses c
            WHERE c.published = 1
            ORDER BY c.sort_order, c.id
            """,
            (user_id,),
            action="courses.summaries",
        )
        return [
            CourseSummary(
                course=_course_from_row(row),
                lesson_count=int(row["lesson_count"] or 0),
                completed_count=int(row["completed_count"] or 0),
            )
            for row in rows
        ]

    def update_course(
        self,
        course_id: int,
        *,
        title: str | object = _MISSING,
        slug: str | object = _MISSING,
        description: str | object = _MISSING,
        thumbnail: str | object = _MISSING,
        published: bool | object = _MISSING,
        sort_order: int | object = _MISSING,
    ) -> None:
        assignments: List[str] = []
        params: List[object] = []
        for column, value in (
            ("title", title),
            ("slug", slug),
            ("description", description),
            ("thumbnail", thumbnail),
            ("published", published),
            ("sort_order", sort_order),
        ):
            if value is _MISSING:
                continue
            assignments.append(f"{column} = ?")
            params.append(int(bool(value)) if column == "published" else value)

        if not assignments:
            LOGGER.debug("No changes requested for course id=%s", course_id)
            return
        params.append(course_id)
        self._write(
            "UPDATE courses SET " + ", ".join(assignments) + " WHERE id = ?",
            params,
            action="courses.update",
        )

    def remove_course(self, course_id: int) -> None:
        """Delete a course together with its lessons."""

        LOGGER.debug("Removing course id=%s", course_id)
        with self._session() as connection:
            self._execute(
                connection, "DELETE FROM lessons WHERE course_id = ?", (course_id,), action="lessons.delete_for_course"
            )
            self._execute(connection, "DELETE FROM courses WHERE id = ?", (course_id,), action="courses.delete")

    # ---------------------------------------------------------------------
    # Lessons
    # ---------------------------------------------------------------------
    def add_lesson(
        self,
        course_id: int,
        title: str,
        slug: str,
        *,
        description: str = "",
        video_url: Optional[str] = None,
        duration: int = 0,
        sort_order: int = 0,
        content: str = "",
    ) -> int:
        with self._track_db_event(
            "add_lesson", course_id=course_id, slug=slug, has_video=bool(video_url)
        ) as event:
            cursor = self._write(
                """
                INSERT INTO lessons(
                    course_id, title, slug, description, video_url, duration, sort_order, content
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (course_id, title, slug, description, video_url, int(duration), int(sort_order), content),
                action="lessons.insert",
            )
            event["lesson_id"] = int(cursor.lastrowid)
            LOGGER.debug(
                "Lesson '%s' inserted with id=%s for course_id=%s", slug, cursor.lastrowid, course_id
            )
            return int(cursor.lastrowid)

    def get_lesson(self, lesson_id: int) -> Optional[LessonRecord]:
        row = self._fetch_one(
            f"SELECT {_LESSON_COLUMNS} FROM lessons WHERE id = ?", (lesson_id,), action="lessons.get"
        )
        return _lesson_from_row(row) if row else None

    def find_lesson(self, course_id: int, slug: str) -> Optional[LessonRecord]:
        row = self._fetch_one(
            f"SELECT {_LESSON_COLUMNS} FROM lessons WHERE course_id = ? AND slug = ?",
            (course_id, slug),
            action="lessons.lookup_by_slug",
        )
        return _lesson_from_row(row) if row else None

    def iter_lessons(self, course_id: Optional[int] = None) -> Iterable[LessonRecord]:
        query = f"SELECT {_LESSON_COLUMNS} FROM lessons"
        params: List[object] = []
        if course_id is not None:
            query += " WHERE course_id = ?"
            params.append(course_id)
        query += " ORDER BY course_id, sort_order, id"
        return [_lesson_from_row(row) for row in self._fetch_all(query, params, action="lessons.list")]

    def iter_lessons_with_progress(self, course_id: int, user_id: int) -> List[LessonProgressView]:
        rows = self._fetch_all(
            f"""
            SELECT {", ".join("l." + column.strip() for column in _LESSON_COLUMNS.split(","))},
                COALESCE(p.completed, 0) AS completed,
                COALESCE(p.video_time, 0) AS video_time
            FROM lessons l
            LEFT JOIN progress p ON p.lesson_id = l.id AND p.user_id = ?
            WHERE l.course_id = ?
            ORDER BY l.sort_order, l.id
            """,
            (user_id, course_id),
            action="lessons.list_with_progress",
        )
        return [
            LessonProgressView(
                lesson=_lesson_from_row(row),
                completed=bool(row["completed"]),
                video_time=float(row["video_time"] or 0.0),
            )
            for row in rows
        ]

    def update_lesson(
        self,
        lesson_id: int,
        *,
        course_id: int | object = _MISSING,
        title: str | object = _MISSING,
        slug: str | object = _MISSING,
        description: str | object = _MISSING,
        video_url: Optional[str] | object = _MISSING,
        duration: int | object = _MISSING,
        sort_order: int | object = _MISSING,
        content: str | object = _MISSING,
    ) -> None:
        assignments: List[str] = []
        params: List[object] = []
        for column, value in (
            ("course_id", course_id),
            ("title", title),
            ("slug", slug),
            ("description", description),
            ("video_url", video_url),
            ("duration", duration),
            ("sort_order", sort_order),
            ("content", content),
        ):
            if value is not _MISSING:
                assignments.append(f"{column} = ?")
                params.append(value)

        if not assignments:
            LOGGER.debug("No changes requested for lesson id=%s", lesson_id)
            return
        params.append(lesson_id)
        with self._track_db_event("update_lesson", lesson_id=lesson_id) as event:
            cursor = self._write(
                "UPDATE lessons SET " + ", ".join(assignments) + " WHERE id = ?",
                params,
                action="lessons.update",
            )
            event["fields_changed"] = len(assignments)
            LOGGER.debug("Lesson id=%s updated (%s rows)", lesson_id, cursor.rowcount)

    def remove_lesson(self, lesson_id: int) -> None:
        LOGGER.debug("Removing lesson id=%s", lesson_id)
        self._write("DELETE FROM lessons WHERE id = ?", (lesson_id,), action="lessons.delete")

    # ---------------------------------------------------------------------
    # Progress
    # ---------------------------------------------------------------------
    def set_completed(self, user_id: int, lesson_id: int, completed: bool) -> None:
        flag = 1 if completed else 0
        self._write(
            """
            INSERT INTO progress(user_id, lesson_id, completed, updated_at)
            VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT(user_id, lesson_id)
            DO UPDATE SET completed = excluded.completed, updated_at = datetime('now')
            """,
            (user_id, lesson_id, flag),
            action="progress.upsert_completed",
        )

    def set_video_time(self, user_id: int, lesson_id: int, seconds: float) -> None:
        self._write(
            """
            INSERT INTO progress(user_id, lesson_id, video_time, updated_at)
            VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT(user_id, lesson_id)
            DO UPDATE SET video_time = excluded.video_time, updated_at = datetime('now')
            """,
            (user_id, lesson_id, max(float(seconds), 0.0)),
            action="progress.upsert_video_time",
        )

    def get_progress(self, user_id: int, lesson_id: int) -> Optional[ProgressRecord]:
        row = self._fetch_one(
            """
            SELECT user_id, lesson_id, completed, video_time, updated_at
            FROM progress WHERE user_id = ? AND lesson_id = ?
            """,
            (user_id, lesson_id),
            action="progress.get",
        )
        if row is None:
            return None
        return ProgressRecord(
            user_id=int(row["user_id"]),
            lesson_id=int(row["lesson_id"]),
            completed=bool(row["completed"]),
            video_time=float(row["video_time"] or 0.0),
            updated_at=row["updated_at"],
        )

    # ---------------------------------------------------------------------
    # Videos
    # ---------------------------------------------------------------------
    def register_video(self, filename: str, state: Any = "uploaded") -> None:
        """Insert (or reset) the state row for a freshly stored video."""

        self._write(
            """
            INSERT INTO videos(filename, state) VALUES (?, ?)
            ON CONFLICT(filename) DO UPDATE SET
                state = excluded.state,
                error = NULL,
                updated_at = datetime('now')
            """,
            (filename, _state_value(state)),
            action="videos.register",
        )

    def update_video_state(
        self,
        filename: str,
        state: Any,
        *,
        error: Optional[str] = None,
        original_size: Optional[int] = None,
        transcoded_size: Optional[int] = None,
    ) -> None:
        state_value = _state_value(state)
        LOGGER.debug("Video %s -> %s", filename, state_value)
        self._write(
            """
            INSERT INTO videos(filename, state, error, original_size, transcoded_size)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(filename) DO UPDATE SET
                state = excluded.state,
                error = excluded.error,
                original_size = COALESCE(excluded.original_size, videos.original_size),
                transcoded_size = COALESCE(excluded.transcoded_size, videos.transcoded_size),
                updated_at = datetime('now')
            """,
            (filename, state_value, error, original_size, transcoded_size),
            action="videos.update_state",
        )

    def get_video(self, filename: str) -> Optional[VideoRecord]:
        row = self._fetch_one(
            f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE filename = ?", (filename,), action="videos.get"
        )
        return VideoRecord(**row) if row else None

    def iter_videos(self, states: Optional[Iterable[Any]] = None) -> List[VideoRecord]:
        query = f"SELECT {_VIDEO_COLUMNS} FROM videos"
        params: List[object] = []
        if states is not None:
            values = [_state_value(state) for state in states]
            if not values:
                return []
            query += f" WHERE state IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at, filename"
        return [VideoRecord(**row) for row in self._fetch_all(query, params, action="videos.list")]


__all__ = [
    "CatalogRepository",
    "CourseRecord",
    "CourseSummary",
    "LessonProgressView",
    "LessonRecord",
    "ProgressRecord",
    "UserRecord",
    "VideoRecord",
]

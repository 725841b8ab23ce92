"""Rich-powered overview of courses, lessons and the state of their videos."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..media.transcode import VideoState
from ..services.ingestion import VIDEO_URL_PREFIX
from ..services.storage import CatalogRepository, CourseRecord, LessonRecord, VideoRecord


STATE_STYLES: Dict[str, str] = {
    VideoState.UPLOADED.value: "yellow",
    VideoState.BACKED_UP.value: "cyan",
    VideoState.ENCODING.value: "cyan",
    VideoState.SWAPPED.value: "green",
    VideoState.FAILED.value: "bold red",
}


@dataclass
class LessonOverview:
    record: LessonRecord
    video: Optional[VideoRecord]


@dataclass
class CourseOverview:
    record: CourseRecord
    lessons: List[LessonOverview]


@dataclass
class OverviewSnapshot:
    courses: List[CourseOverview]
    course_count: int
    lesson_count: int
    user_count: int
    state_totals: Dict[str, int]


def collect_overview(repository: CatalogRepository) -> OverviewSnapshot:
    """Aggregate repository data into a snapshot for the console overview."""

    videos = {record.filename: record for record in repository.iter_videos()}
    lessons_by_course: Dict[int, List[LessonOverview]] = {}
    lesson_count = 0
    for lesson in repository.iter_lessons():
        lesson_count += 1
        video = None
        if lesson.video_url and lesson.video_url.startswith(VIDEO_URL_PREFIX):
            video = videos.get(lesson.video_url[len(VIDEO_URL_PREFIX):])
        lessons_by_course.setdefault(lesson.course_id, []).append(LessonOverview(record=lesson, video=video))

    courses = [
        CourseOverview(record=course, lessons=lessons_by_course.get(course.id, []))
        for course in repository.iter_courses()
    ]
    totals = Counter(record.state for record in videos.values())
    return OverviewSnapshot(
        courses=courses,
        course_count=len(courses),
        lesson_count=lesson_count,
        user_count=repository.count_users(),
        state_totals={state.value: totals.get(state.value, 0) for state in VideoState},
    )


class OverviewUI:
    """Render the catalog as a tree next to a small statistics panel."""

    def __init__(self, repository: CatalogRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self) -> None:
        snapshot = collect_overview(self._repository)
        console = self._console

        console.rule("[bold magenta]Learn Overview")

        if snapshot.course_count == 0:
            console.print(
                Panel(
                    "No courses have been created yet.\n"
                    "Sign in as an admin and open [bold]/admin[/bold] to add one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot.courses),
            title="Catalog",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))

    def _build_tree(self, courses: Iterable[CourseOverview]) -> Tree:
        tree = Tree("[bold cyan]Courses", guide_style="cyan")
        for course in courses:
            course_node = tree.add(self._build_course_label(course.record))
            if not course.lessons:
                course_node.add("[dim]No lessons yet")
                continue
            for lesson in course.lessons:
                course_node.add(self._build_lesson_label(lesson))
        return tree

    @staticmethod
    def _build_course_label(record: CourseRecord) -> Text:
        label = Text(record.title, style="bold")
        label.append(f"  /{record.slug}", style="dim")
        if not record.published:
            label.append("  draft", style="yellow")
        return label

    @staticmethod
    def _build_lesson_label(overview: LessonOverview) -> Text:
        record = overview.record
        label = Text(record.title, style="white")
        label.append("  ")
        if overview.video is not None:
            video = overview.video
            label.append(video.state, style=STATE_STYLES.get(video.state, "white"))
            if video.error:
                label.append(f" ({video.error})", style="red")
        elif record.video_url:
            label.append("external video", style="dim")
        else:
            label.append("No video", style="dim")
        return label

    def _build_stats_panel(self, snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Courses", str(snapshot.course_count))
        metrics.add_row("Lessons", str(snapshot.lesson_count))
        metrics.add_row("Users", str(snapshot.user_count))

        states = Table.grid(expand=True, padding=(0, 1))
        states.add_column(style="dim")
        states.add_column(justify="right", style="bold")
        for state, count in snapshot.state_totals.items():
            states.add_row(Text(state, style=STATE_STYLES.get(state, "white")), str(count))

        body = Group(metrics, Rule(style="magenta"), states)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = [
    "CourseOverview",
    "LessonOverview",
    "OverviewSnapshot",
    "OverviewUI",
    "collect_overview",
]

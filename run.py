"""Entry-point for the Learn application."""

from __future__ import annotations

import asyncio
import inspect
import logging
import sqlite3
import threading
import time
import webbrowser
from typing import Optional

import typer
import uvicorn

from learn.bootstrap import initialize_app
from learn.logging_utils import build_log_handlers, configure_logging
from learn.media.jobs import TranscodeJobManager
from learn.media.streaming import resolve_served_path
from learn.media.transcode import StoredVideo, TranscodeError, VideoTranscoder, encoder_available
from learn.services.auth import ROLES
from learn.services.storage import CatalogRepository
from learn.ui.overview import OverviewUI
from learn.web import create_app
from learn.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("learn.cli")


cli = typer.Typer(add_completion=False, help="Learn management commands")


def _prepare_logging(storage_root) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, open_browser=False)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip().rstrip("/")
    if normalized and not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LEARN_ROOT_PATH",
    ),
    open_browser: bool = typer.Option(False, help="Open the site in a browser once the server starts"),
) -> None:
    """Run the FastAPI web application."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    if not encoder_available(app_config.ffmpeg_binary):
        LOGGER.warning(
            "Encoder '%s' was not found; uploaded videos will be served without recompression.",
            app_config.ffmpeg_binary,
        )

    repository = CatalogRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.debug(
                "uvicorn.Config has no 'limit_max_request_size'; uploads are limited by the application only.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    if open_browser:
        browser_host = host
        if not browser_host or browser_host in {"0.0.0.0", "::"}:
            browser_host = "127.0.0.1"
        url = f"http://{browser_host}:{port}{normalized_root}/"

        def _open_browser_later() -> None:
            time.sleep(1.0)
            try:
                webbrowser.open(url, new=2, autoraise=True)
            except webbrowser.Error:
                LOGGER.info("Could not open a browser for %s", url)

        threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def overview() -> None:
    """Render an overview of courses, lessons and video states."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    OverviewUI(CatalogRepository(config)).run()


@cli.command()
def transcode(
    filename: str = typer.Argument(..., help="Name of a stored video, as it appears under /videos/"),
) -> None:
    """Re-run the backup, encode and swap workflow for one stored video."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    path = resolve_served_path(config.videos_root, filename)
    if path is None or not path.is_file():
        typer.echo(f"No stored video named '{filename}' in {config.videos_root}")
        raise typer.Exit(code=1)

    repository = CatalogRepository(config)
    manager = TranscodeJobManager(
        VideoTranscoder(encoder=config.ffmpeg_binary, timeout=config.transcode_timeout_seconds),
        repository,
    )
    video = StoredVideo(served_path=path)
    typer.echo(f"Transcoding {video.filename} (timeout {manager.transcoder.timeout:.0f}s)…")
    try:
        result = asyncio.run(manager.transcoder.transcode(video))
    except TranscodeError as error:
        typer.echo(f"Transcode failed: {error}")
        raise typer.Exit(code=1) from error

    ratio = f" ({result.ratio:.1f}x)" if result.ratio else ""
    typer.echo(
        f"Transcoded {video.filename}: {(result.original_size or 0) / 1024 / 1024:.1f}MB -> "
        f"{(result.transcoded_size or 0) / 1024 / 1024:.1f}MB{ratio}"
    )
    typer.echo(f"Original kept at: {video.original_path}")


@cli.command("add-user")
def add_user(
    name: str = typer.Option(..., help="Display name"),
    email: str = typer.Option(..., help="Login email address"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    role: str = typer.Option("student", help=f"One of: {', '.join(ROLES)}"),
) -> None:
    """Create a user account."""

    if role not in ROLES:
        raise typer.BadParameter(f"Role must be one of: {', '.join(ROLES)}", param_hint="--role")

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = CatalogRepository(config)
    try:
        user_id = repository.add_user(name, email, password, role)
    except sqlite3.IntegrityError as error:
        typer.echo(f"A user with email '{email}' already exists.")
        raise typer.Exit(code=1) from error
    typer.echo(f"Created {role} '{email}' with id {user_id}.")


if __name__ == "__main__":
    cli()

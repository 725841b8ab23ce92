"""Configuration loading utilities for the Learn application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".learn_write_check"
_SESSION_SECRET_ENV = "LEARN_SESSION_SECRET"
DEFAULT_TRANSCODE_TIMEOUT_SECONDS = 600.0


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins and the flag reports whether a fallback
    was used. When nothing can be prepared the original ``preferred`` path is
    returned so callers can report a meaningful location.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and tunables for the application."""

    storage_root: Path
    database_file: Path
    videos_root: Path
    session_secret: str = "learn-development-secret"
    transcode_timeout_seconds: float = DEFAULT_TRANSCODE_TIMEOUT_SECONDS
    ffmpeg_binary: str = "ffmpeg"
    admin_name: str = "Administrator"
    admin_email: str = "admin@example.com"
    admin_password: str = "change-me"

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".learn" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        preferred_videos = (base_path / mapping.get("videos_root", "public/videos")).resolve()
        videos_root, _ = _select_writable_directory(
            preferred_videos,
            label="videos",
            fallbacks=(storage_root / "videos",),
        )

        session_secret = os.environ.get(_SESSION_SECRET_ENV) or str(
            mapping.get("session_secret") or cls.session_secret
        )
        admin = mapping.get("admin") or {}

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            videos_root=videos_root,
            session_secret=session_secret,
            transcode_timeout_seconds=float(
                mapping.get("transcode_timeout_seconds", DEFAULT_TRANSCODE_TIMEOUT_SECONDS)
            ),
            ffmpeg_binary=str(mapping.get("ffmpeg_binary") or "ffmpeg"),
            admin_name=str(admin.get("name") or cls.admin_name),
            admin_email=str(admin.get("email") or cls.admin_email),
            admin_password=str(admin.get("password") or cls.admin_password),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_TRANSCODE_TIMEOUT_SECONDS", "load_config"]

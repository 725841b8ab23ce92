"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .media.jobs import recover_interrupted_videos
from .services.auth import hash_password
from .services.storage import CatalogRepository

LOGGER = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT UNIQUE NOT NULL,
    password TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'student',
    created_at DATETIME DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    slug TEXT UNIQUE NOT NULL,
    description TEXT DEFAULT '',
    thumbnail TEXT DEFAULT '',
    published INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS lessons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    slug TEXT UNIQUE NOT NULL,
    description TEXT DEFAULT '',
    video_url TEXT,
    duration INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    content TEXT DEFAULT '',
    created_at DATETIME DEFAULT (datetime('now')),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS progress (
    user_id INTEGER NOT NULL,
    lesson_id INTEGER NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    video_time REAL NOT NULL DEFAULT 0,
    updated_at DATETIME DEFAULT (datetime('now')),
    PRIMARY KEY(user_id, lesson_id),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(lesson_id) REFERENCES lessons(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS videos (
    filename TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    error TEXT,
    original_size INTEGER,
    transcoded_size INTEGER,
    created_at DATETIME DEFAULT (datetime('now')),
    updated_at DATETIME DEFAULT (datetime('now'))
);
"""


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        self._seed_admin()
        self._recover_videos()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("videos", self._config.videos_root),
            ("database", self._config.database_file.parent),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"The {label} directory '{path}' is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured %s directory exists: %s", label, path)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        connection = sqlite3.connect(self._config.database_file)
        try:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA foreign_keys = ON")
            connection.executescript(SCHEMA)
            connection.commit()
        finally:
            connection.close()

    def _seed_admin(self) -> None:
        connection = sqlite3.connect(self._config.database_file)
        try:
            (count,) = connection.execute("SELECT COUNT(*) FROM users").fetchone()
            if count:
                return
            connection.execute(
                "INSERT INTO users(name, email, password, role) VALUES (?, ?, ?, 'admin')",
                (
                    self._config.admin_name,
                    self._config.admin_email.strip().lower(),
                    hash_password(self._config.admin_password),
                ),
            )
            connection.commit()
            LOGGER.info("Seeded default admin user '%s'", self._config.admin_email)
        finally:
            connection.close()

    def _recover_videos(self) -> None:
        recovered = recover_interrupted_videos(
            CatalogRepository(self._config), self._config.videos_root
        )
        if recovered:
            LOGGER.warning("Marked %s interrupted transcode(s) as failed", len(recovered))


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "SCHEMA", "initialize_app"]

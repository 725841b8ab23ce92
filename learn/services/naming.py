"""Utility helpers for consistent naming of slugs and stored videos."""

from __future__ import annotations

import random
import re
import time
from pathlib import Path, PurePath
from typing import Callable, Optional

__all__ = [
    "ORIGINAL_SUFFIX",
    "STAGING_SUFFIX",
    "TEMP_SUFFIX",
    "build_upload_name",
    "is_derived_name",
    "normalize_extension",
    "sibling_path",
    "slugify",
    "staging_name",
]


ORIGINAL_SUFFIX = "_orig"
TEMP_SUFFIX = "_tmp"
STAGING_SUFFIX = ".upload"

_RANDOM_CEILING = 1_000_000_000


def slugify(value: str) -> str:
    """Return a URL-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def normalize_extension(filename: Optional[str]) -> str:
    """Return the lowercased extension of *filename* including the dot."""

    if not filename:
        return ""
    suffix = PurePath(filename).suffix
    if not re.fullmatch(r"\.[A-Za-z0-9]{1,10}", suffix or ""):
        return ""
    return suffix.lower()


def build_upload_name(
    field: str,
    original_filename: Optional[str],
    *,
    clock: Callable[[], float] = time.time,
    rng: Optional[random.Random] = None,
) -> str:
    """Return ``<field>-<epoch-ms>-<random>.<ext>`` for a freshly uploaded file."""

    generator = rng or random
    millis = int(clock() * 1000)
    suffix = generator.randrange(_RANDOM_CEILING)
    return f"{field}-{millis}-{suffix}{normalize_extension(original_filename)}"


def sibling_path(path: Path, marker: str) -> Path:
    """Return *path* with *marker* inserted between stem and extension."""

    return path.with_name(f"{path.stem}{marker}{path.suffix}")


def is_derived_name(filename: str) -> bool:
    """Return ``True`` for backup or temporary transcode siblings."""

    stem = PurePath(filename).stem
    return stem.endswith(ORIGINAL_SUFFIX) or stem.endswith(TEMP_SUFFIX)


def staging_name(name: str) -> str:
    """Hidden name an upload is written under until it is complete."""

    return f".{name}{STAGING_SUFFIX}"

from __future__ import annotations

from pathlib import Path

from seedling_core.home import SeedlingPaths

DEFAULT_DB_FILENAME = "core.sqlite3"


def resolve_db_path(paths: SeedlingPaths) -> Path:
    """Resolve the SQLite database holding users, sessions and installation state."""

    return paths.db_dir / DEFAULT_DB_FILENAME

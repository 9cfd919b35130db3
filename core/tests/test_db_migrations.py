from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from seedling_core.config import load_core_config, resolve_configured_paths
from seedling_core.db import resolve_db_path
from seedling_core.db.migrate import apply_migrations
from seedling_core.home import ensure_seedling_layout


def _table_names(db_path: Path) -> set[str]:
    with sqlite3.connect(db_path) as conn:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name ASC;"
        ).fetchall()
    return {r[0] for r in rows}


def _table_columns(db_path: Path, table: str) -> set[str]:
    with sqlite3.connect(db_path) as conn:
        rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return {r[1] for r in rows}


def test_migrations_blank_to_latest(tmp_path: Path) -> None:
    paths = ensure_seedling_layout(tmp_path)
    config = load_core_config(paths)
    paths = resolve_configured_paths(paths, config)

    db_path = resolve_db_path(paths)

    assert apply_migrations(db_path) == ["0001_init"]
    assert apply_migrations(db_path) == []  # idempotent

    tables = _table_names(db_path)

    assert "schema_migrations" in tables
    assert "users" in tables
    assert "sessions" in tables
    assert "service_installations" in tables
    assert "port_allocations" in tables
    assert "service_events" in tables

    cols = _table_columns(db_path, "service_installations")
    assert "attempt_id" in cols
    assert "live_url" in cols
    assert "error_json" in cols


def test_installation_state_is_constrained(tmp_path: Path) -> None:
    db_path = tmp_path / "core.sqlite3"
    apply_migrations(db_path)

    with sqlite3.connect(db_path) as conn, pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO service_installations (service_key, state) VALUES ('plex', 'exploded');"
        )

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SeedlingPaths:
    home: Path
    db_dir: Path
    logs_dir: Path
    config_dir: Path

    @property
    def core_config_path(self) -> Path:
        return self.config_dir / "core.json"


def resolve_seedling_home(environ: dict[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ

    raw = (env.get("SEEDLING_HOME") or "").strip()
    if raw:
        candidate = Path(raw).expanduser()
        # A relative SEEDLING_HOME is anchored at the user's home, never at CWD.
        if not candidate.is_absolute():
            candidate = (Path.home() / candidate).resolve()
        else:
            candidate = candidate.resolve()
        return candidate

    def default_home() -> Path:
        if sys.platform == "darwin":
            return Path.home() / "Library" / "Application Support" / "Seedling"

        xdg = os.environ.get("XDG_DATA_HOME")
        if xdg:
            return Path(xdg) / "seedling"
        return Path.home() / ".local" / "share" / "seedling"

    return default_home().resolve()


def ensure_seedling_layout(home: Path) -> SeedlingPaths:
    home.mkdir(parents=True, exist_ok=True)

    db_dir = home / "db"
    logs_dir = home / "logs"
    config_dir = home / "config"

    for path in (db_dir, logs_dir, config_dir):
        path.mkdir(parents=True, exist_ok=True)

    return SeedlingPaths(
        home=home,
        db_dir=db_dir,
        logs_dir=logs_dir,
        config_dir=config_dir,
    )

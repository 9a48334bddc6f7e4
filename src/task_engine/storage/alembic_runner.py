"""Run task store migrations programmatically."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

_UPGRADE_LOCK = threading.Lock()
_UPGRADED_PATHS: set[Path] = set()


def project_root() -> Path:
    return Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    root_dir = project_root()
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head once per database path in this process.

    Stores opened from several worker threads share one upgrade; concurrent
    Alembic runs against the same SQLite file would race on DDL.
    """

    resolved = db_path.resolve()
    with _UPGRADE_LOCK:
        if resolved in _UPGRADED_PATHS and resolved.exists():
            return
        command.upgrade(build_alembic_config(resolved), "head")
        _UPGRADED_PATHS.add(resolved)

"""Programmatic Alembic upgrades for the dispatch log database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path, *, project_root: Path = _PROJECT_ROOT) -> Config:
    """Alembic config bound to ``db_path`` with the project's migration scripts."""

    config = Config(str(project_root / "alembic.ini"))
    config.set_main_option("script_location", str(project_root / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the schema to the latest revision; a no-op when it is already there."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(alembic_config(db_path), "head")


def head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config(Path("unused.db"))).get_current_head()

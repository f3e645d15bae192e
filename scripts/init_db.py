from __future__ import annotations

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from instantwin.db.engine import make_engine
from instantwin.models import Base


def upgrade_db(target_revision: str = "head") -> None:
    """Apply the instantwin migrations up to ``target_revision``."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def missing_tables() -> list[str]:
    """Model tables the configured database still lacks."""
    engine = make_engine()
    present = set(inspect(engine).get_table_names())
    return sorted(set(Base.metadata.tables) - present)


def main(argv: list[str]) -> int:
    target = argv[1] if len(argv) > 1 else "head"
    upgrade_db(target)

    missing = missing_tables()
    if missing and target == "head":
        print("Campaign schema incomplete, missing:", ", ".join(missing))
        return 1
    print(f"Campaign schema at {target}; {len(Base.metadata.tables) - len(missing)} tables ready.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))

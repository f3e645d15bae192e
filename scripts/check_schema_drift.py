from __future__ import annotations

import sys

from alembic.autogenerate import api as ag_api
from alembic.runtime.migration import MigrationContext
from sqlalchemy import inspect

from instantwin.db.engine import make_engine
from instantwin.db.transactions import RACE_CONSTRAINTS
from instantwin.models import Base


def _print_ops(ops, indent: int = 0) -> None:
    prefix = "  " * indent
    for op in ops:
        print(f"{prefix}- {op}")
        sub_ops = getattr(op, "ops", None)
        if sub_ops:
            _print_ops(sub_ops, indent + 1)


def missing_race_guards(connection) -> list[str]:
    """Names of race-guard unique constraints absent from the live schema.

    Claims and per-user locks rely on these constraints to reject the loser
    of two concurrent inserts; without them a double claim would commit.
    """

    insp = inspect(connection)
    tables = set(insp.get_table_names())
    missing = []
    for name, columns in RACE_CONSTRAINTS.items():
        table = columns.split(".", 1)[0]
        if table not in tables:
            missing.append(name)
            continue
        present = {uc["name"] for uc in insp.get_unique_constraints(table)}
        if name not in present:
            missing.append(name)
    return missing


def main() -> int:
    engine = make_engine()
    url_display = engine.url.render_as_string(hide_password=True)
    try:
        with engine.connect() as connection:
            context = MigrationContext.configure(
                connection=connection,
                opts={
                    "compare_type": True,
                    "compare_server_default": True,
                    "render_as_batch": connection.dialect.name == "sqlite",
                },
            )
            migration = ag_api.produce_migrations(context, Base.metadata)
            upgrade_ops = migration.upgrade_ops
            if upgrade_ops is None:
                print(f"Schema drift check: ERROR for {url_display}: missing upgrade ops.")
                return 2

            status = 0
            if upgrade_ops.is_empty():
                print(f"Schema drift check: OK (no differences) for {url_display}.")
            else:
                print(f"Schema drift check: FAILED for {url_display}. Differences detected:")
                _print_ops(upgrade_ops.ops or [])
                status = 1

            guards = missing_race_guards(connection)
            if guards:
                print(f"Race guards missing: {', '.join(guards)}")
                status = 1
            else:
                print("Race guards: OK")
            return status
    except Exception as exc:
        print(f"Schema drift check: ERROR for {url_display}: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path
from typing import Optional, Sequence

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from labslots.infrastructure.postgres_migrations import apply_postgres_migrations  # noqa: E402

NAMESPACE = "timeslots"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the timeslot store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("TIMESLOT_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for the timeslot store.",
    )
    args = parser.parse_args(argv)

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{NAMESPACE}")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")

    with _connect(args.dsn) as connection:
        applied = apply_postgres_migrations(connection=connection, namespace=NAMESPACE)
    print(f"Applied migrations for namespace={NAMESPACE} versions={','.join(applied) or '-'}")
    return 0


def _connect(dsn: str):
    import psycopg
    from psycopg.rows import dict_row

    return psycopg.connect(dsn, row_factory=dict_row)


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""
Apply pending SQL migrations from kioskpro/db/migrations in name order.

Applied files are recorded in `schema_migrations`; each file runs in its own
transaction together with its bookkeeping row.
"""
import argparse
import os
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "db" / "migrations"


def migration_files(directory: Path = MIGRATIONS_DIR):
    return sorted(p for p in directory.glob("*.sql") if p.is_file())


def pending(files, applied) -> list:
    return [p for p in files if p.name not in applied]


def _ensure_table(cur):
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          name TEXT PRIMARY KEY,
          applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply pending KioskPro schema migrations.")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL"), help="Postgres connection string (defaults to $DATABASE_URL).")
    parser.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them.")
    args = parser.parse_args(argv)

    if not args.db:
        print("migrate: missing --db or DATABASE_URL", file=sys.stderr)
        return 2

    files = migration_files()
    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _ensure_table(cur)
                cur.execute("SELECT name FROM schema_migrations")
                applied = {r["name"] for r in cur.fetchall()}

        todo = pending(files, applied)
        if not todo:
            print("migrate: up to date")
            return 0
        for path in todo:
            if args.dry_run:
                print(f"pending: {path.name}")
                continue
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (name) VALUES (%s)", (path.name,))
            print(f"applied: {path.name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

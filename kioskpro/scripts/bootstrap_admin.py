#!/usr/bin/env python3
"""
Create the first admin account on a fresh deployment.

Runs only when BOOTSTRAP_ADMIN is truthy so it can sit in a container entrypoint.
Does nothing once any admin (or the requested email) exists.
"""
import argparse
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from kioskpro.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def ensure_admin(cur, name: str, email: str, password: str) -> bool:
    """Insert the admin unless one exists; returns whether a row was created."""
    cur.execute("SELECT 1 FROM users WHERE role = 'admin' OR email = %s LIMIT 1", (email,))
    if cur.fetchone():
        return False
    cur.execute(
        """
        INSERT INTO users (id, name, email, password_hash, role, active)
        VALUES (gen_random_uuid(), %s, %s, %s, 'admin', true)
        """,
        (name, email, hash_password(password)),
    )
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create the first KioskPro admin (BOOTSTRAP_ADMIN=1).")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL"), help="Postgres connection string (defaults to $DATABASE_URL).")
    parser.add_argument("--email", default=os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@kiosko.local"))
    parser.add_argument("--name", default=os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrador"))
    args = parser.parse_args(argv)

    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0
    if not args.db:
        print("bootstrap_admin: missing --db or DATABASE_URL", file=sys.stderr)
        return 2
    email = (args.email or "").strip().lower()
    if not email:
        print("bootstrap_admin: admin email is empty", file=sys.stderr)
        return 2

    # A generated password is printed once; set BOOTSTRAP_ADMIN_PASSWORD to choose it.
    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD") or secrets.token_urlsafe(16)
    generated = not os.getenv("BOOTSTRAP_ADMIN_PASSWORD")

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                created = ensure_admin(cur, (args.name or "").strip() or "Administrador", email, password)

    if not created:
        print("bootstrap_admin: admin already present")
        return 0
    print(f"bootstrap_admin: created {email}")
    if generated:
        print(f"bootstrap_admin: password {password}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

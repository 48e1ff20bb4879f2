#!/usr/bin/env python3
"""Report tables and columns the API expects but the database lacks."""
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

EXPECTED = {
    "categories": ["id", "name", "color", "icon", "created_at", "updated_at"],
    "products": ["id", "name", "barcode", "category_id", "price", "cost", "stock", "min_stock", "image_url", "active", "created_at", "updated_at"],
    "suppliers": ["id", "name", "ruc", "phone", "email", "address", "active", "created_at", "updated_at"],
    "users": ["id", "name", "email", "password_hash", "role", "avatar_url", "active", "created_at", "updated_at"],
    "auth_sessions": ["id", "user_id", "token_hash", "is_active", "expires_at", "created_at"],
    "cash_registers": ["id", "opening_amount", "closing_amount", "expected_amount", "difference", "notes", "cashier_id", "status", "opened_at", "closed_at"],
    "cash_movements": ["id", "cash_register_id", "type", "amount", "description", "user_id", "created_at"],
    "sales": ["id", "total", "payment_method", "cashier_id", "cash_register_id", "created_at"],
    "sale_items": ["id", "sale_id", "product_id", "quantity", "unit_price", "subtotal", "created_at"],
    "purchases": ["id", "supplier_id", "total", "status", "notes", "created_at", "updated_at"],
    "purchase_items": ["id", "purchase_id", "product_id", "quantity", "cost", "created_at"],
    "stock_movements": ["id", "product_id", "type", "quantity", "reason", "user_id", "created_at"],
    "settings": ["id", "category", "data", "created_at", "updated_at"],
    "audit_log": ["id", "user_id", "action", "entity_type", "entity_id", "old_values", "new_values", "created_at"],
}


def find_drift(actual: dict) -> list:
    """`actual` maps table -> set of columns; returns human-readable problems."""
    problems = []
    for table, columns in EXPECTED.items():
        have = actual.get(table)
        if have is None:
            problems.append(f"missing table: {table}")
            continue
        for col in columns:
            if col not in have:
                problems.append(f"missing column: {table}.{col}")
    return problems


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Compare the live schema with what KioskPro expects.")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL"), help="Postgres connection string (defaults to $DATABASE_URL).")
    args = parser.parse_args(argv)
    if not args.db:
        print("check_schema: missing --db or DATABASE_URL", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name, column_name
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = ANY(%s)
                """,
                (list(EXPECTED),),
            )
            actual = {}
            for r in cur.fetchall():
                actual.setdefault(r["table_name"], set()).add(r["column_name"])

    problems = find_drift(actual)
    for p in problems:
        print(p)
    if problems:
        return 1
    print("schema OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""Seed a fresh database with a small demo catalog and three staff accounts."""
import argparse
import os
import sys
from decimal import Decimal

import psycopg
from psycopg.rows import dict_row

from kioskpro.app.security import hash_password

CATEGORIES = [
    ("Bebidas", "#22D3EE", "coffee"),
    ("Snacks", "#FBBF24", "cookie"),
    ("Lácteos", "#4ADE80", "milk"),
    ("Panadería", "#F87171", "croissant"),
    ("Dulces", "#A78BFA", "candy"),
    ("Limpieza", "#FB923C", "spray-can"),
]

SUPPLIERS = [
    ("Distribuidora Central", "20123456789", "+51 999 888 777", "ventas@central.com", "Av. Industrial 123"),
    ("Bebidas del Norte", "20987654321", "+51 988 777 666", "pedidos@bebidasnorte.com", "Jr. Comercio 456"),
    ("Lácteos Premium", "20456789123", "+51 977 666 555", "info@lacteospremium.com", "Calle Lechera 789"),
]

# name, barcode, category, price, cost, stock, min_stock
PRODUCTS = [
    ("Coca Cola 500ml", "7891234567890", "Bebidas", "2.50", "1.80", 48, 12),
    ("Pepsi 500ml", "7891234567891", "Bebidas", "2.30", "1.60", 36, 12),
    ("Agua Mineral 600ml", "7891234567892", "Bebidas", "1.50", "0.80", 60, 24),
    ("Doritos 150g", "7891234567893", "Snacks", "3.50", "2.50", 24, 10),
    ("Lays Clásicas 150g", "7891234567894", "Snacks", "3.20", "2.30", 20, 10),
    ("Leche Entera 1L", "7891234567895", "Lácteos", "1.80", "1.20", 30, 15),
    ("Yogurt Natural 1L", "7891234567896", "Lácteos", "2.80", "2.00", 18, 8),
    ("Pan de Molde", "7891234567897", "Panadería", "2.20", "1.50", 15, 5),
    ("Croissant", "7891234567898", "Panadería", "1.50", "0.90", 20, 8),
    ("Chocolate Snickers", "7891234567899", "Dulces", "1.80", "1.20", 40, 15),
]

USERS = [
    ("Admin Principal", "admin@kiosko.com", "admin123", "admin"),
    ("María García", "maria@kiosko.com", "maria123", "cashier"),
    ("Carlos López", "carlos@kiosko.com", "carlos123", "manager"),
]


def _count(cur, table: str) -> int:
    cur.execute(f"SELECT COUNT(*)::int AS c FROM {table}")
    return cur.fetchone()["c"]


def seed(cur) -> dict:
    created = {"categories": 0, "suppliers": 0, "products": 0, "users": 0}
    if _count(cur, "categories") == 0:
        for name, color, icon in CATEGORIES:
            cur.execute("INSERT INTO categories (name, color, icon) VALUES (%s, %s, %s)", (name, color, icon))
            created["categories"] += 1

    if _count(cur, "suppliers") == 0:
        for name, ruc, phone, email, address in SUPPLIERS:
            cur.execute(
                "INSERT INTO suppliers (name, ruc, phone, email, address) VALUES (%s, %s, %s, %s, %s)",
                (name, ruc, phone, email, address),
            )
            created["suppliers"] += 1

    if _count(cur, "products") == 0:
        cur.execute("SELECT id, name FROM categories")
        by_name = {r["name"]: r["id"] for r in cur.fetchall()}
        for name, barcode, category, price, cost, stock, min_stock in PRODUCTS:
            cur.execute(
                """
                INSERT INTO products (name, barcode, category_id, price, cost, stock, min_stock, active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, true)
                """,
                (name, barcode, by_name.get(category), Decimal(price), Decimal(cost), stock, min_stock),
            )
            created["products"] += 1

    for name, email, password, role in USERS:
        cur.execute(
            """
            INSERT INTO users (name, email, password_hash, role)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (email) DO NOTHING
            RETURNING id
            """,
            (name, email, hash_password(password), role),
        )
        if cur.fetchone():
            created["users"] += 1
    return created


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed KioskPro demo data (safe to re-run).")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL"), help="Postgres connection string (defaults to $DATABASE_URL).")
    args = parser.parse_args(argv)
    if not args.db:
        print("seed_demo: missing --db or DATABASE_URL", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                created = seed(cur)
    for table, n in created.items():
        print(f"{table}: {n} created")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

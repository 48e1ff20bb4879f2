import re
from pathlib import Path

from kioskpro.scripts import bootstrap_admin, check_schema, migrate, seed_demo


def test_migrations_are_listed_in_name_order():
    names = [p.name for p in migrate.migration_files()]
    assert names == sorted(names)
    assert names[0] == "001_init.sql"


def test_pending_skips_applied_files(tmp_path):
    for name in ("002_b.sql", "001_a.sql", "003_c.sql"):
        (tmp_path / name).write_text("SELECT 1;", encoding="utf-8")
    files = migrate.migration_files(tmp_path)
    assert [p.name for p in migrate.pending(files, {"001_a.sql"})] == ["002_b.sql", "003_c.sql"]


def test_migrate_without_dsn_exits_2(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert migrate.main([]) == 2


def test_every_expected_table_is_created_by_a_migration():
    sql = "\n".join(p.read_text(encoding="utf-8") for p in migrate.migration_files())
    created = set(re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", sql))
    assert set(check_schema.EXPECTED) <= created


def test_find_drift_reports_missing_tables_and_columns():
    actual = {t: set(cols) for t, cols in check_schema.EXPECTED.items()}
    assert check_schema.find_drift(actual) == []

    del actual["cash_movements"]
    actual["purchases"].discard("notes")
    assert check_schema.find_drift(actual) == ["missing table: cash_movements", "missing column: purchases.notes"]


class _SeedCursor:
    def __init__(self, counts):
        self.counts = counts
        self.inserts = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        m = re.match(r"select count\(\*\)::int as c from (\w+)", text)
        if m:
            self._rows = [{"c": self.counts.get(m.group(1), 0)}]
            return
        if text.startswith("select id, name from categories"):
            self._rows = [{"id": f"c-{i}", "name": c[0]} for i, c in enumerate(seed_demo.CATEGORIES)]
            return
        if text.startswith("insert into users"):
            self.inserts.append(("users", params))
            # Pretend the admin already exists.
            self._rows = [] if params[1] == "admin@kiosko.com" else [{"id": "u-x"}]
            return
        if text.startswith("insert into"):
            self.inserts.append((text.split()[2], params))
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


def test_seed_only_fills_empty_tables():
    cur = _SeedCursor({"categories": 6, "suppliers": 0, "products": 0})

    created = seed_demo.seed(cur)

    assert created == {"categories": 0, "suppliers": 3, "products": 10, "users": 2}
    products = [p for t, p in cur.inserts if t == "products"]
    assert all(p[2] is not None for p in products)
    users = [p for t, p in cur.inserts if t == "users"]
    assert all(p[2].startswith("$2") for p in users)


def test_migrations_ship_with_the_package():
    assert migrate.MIGRATIONS_DIR == Path(migrate.__file__).resolve().parents[1] / "db" / "migrations"
    assert (migrate.MIGRATIONS_DIR / "003_cash_movements.sql").is_file()


class _AdminCursor:
    def __init__(self, existing):
        self.existing = existing
        self.inserted = []
        self._row = None

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select 1 from users"):
            self._row = {"?column?": 1} if self.existing else None
            return
        if text.startswith("insert into users"):
            self.inserted.append(params)
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._row


def test_bootstrap_admin_is_idempotent():
    cur = _AdminCursor(existing=True)
    assert bootstrap_admin.ensure_admin(cur, "Administrador", "admin@kiosko.local", "secret12") is False
    assert cur.inserted == []

    cur = _AdminCursor(existing=False)
    assert bootstrap_admin.ensure_admin(cur, "Administrador", "admin@kiosko.local", "secret12") is True
    name, email, password_hash = cur.inserted[0]
    assert (name, email) == ("Administrador", "admin@kiosko.local")
    assert password_hash.startswith("$2")


def test_bootstrap_admin_is_off_unless_enabled(monkeypatch):
    monkeypatch.delenv("BOOTSTRAP_ADMIN", raising=False)
    assert bootstrap_admin.main(["--db", "postgresql://unused"]) == 0
    monkeypatch.setenv("BOOTSTRAP_ADMIN", "1")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert bootstrap_admin.main([]) == 2

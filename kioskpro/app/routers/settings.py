"""
Store settings, kept as one JSONB document per category.

Reads overlay whatever is stored on top of DEFAULT_SETTINGS, so a category that
was never saved (or was saved before a key existed) still returns every key.
"""
import time
from copy import deepcopy
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
import psycopg

from ..db import get_conn
from ..deps import require_admin, require_permission
from ..logs import degrade_on_db_error, json_log
from .audit import _actor, _jsonb, log_audit

router = APIRouter(prefix="/settings", tags=["settings"])

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "business": {
        "name": "Mi Kiosko",
        "ruc": "",
        "address": "",
        "phone": "",
        "email": "",
        "currency": "USD",
        "tax_rate": 0,
        "logo_url": None,
    },
    "receipt": {
        "show_logo": True,
        "show_address": True,
        "show_phone": True,
        "show_ruc": True,
        "footer_message": "¡Gracias por su compra!",
        "paper_width": "80mm",
        "print_automatically": False,
        "show_item_code": False,
    },
    "notifications": {
        "low_stock_alert": True,
        "low_stock_threshold": 10,
        "daily_report_email": False,
        "sales_alert_email": False,
        "email_recipients": "",
        "sound_enabled": True,
    },
    "security": {
        "session_timeout": 30,
        "require_password_change": False,
        "password_change_days": 90,
        "max_login_attempts": 5,
        "lockout_duration": 15,
        "two_factor_enabled": False,
    },
    "inventory": {
        "auto_reorder_enabled": False,
        "default_min_stock": 5,
        "track_expiry_dates": False,
        "expiry_warning_days": 30,
        "allow_negative_stock": False,
        "barcode_enabled": True,
    },
    "sales": {
        "allow_discounts": True,
        "max_discount_percent": 20,
        "require_customer": False,
        "enable_layaway": False,
        "enable_returns": True,
        "return_days_limit": 30,
        "enable_cash_drawer": False,
        "default_payment_method": "cash",
    },
    "appearance": {
        "theme": "dark",
        "accent_color": "#22D3EE",
        "language": "es",
        "date_format": "DD/MM/YYYY",
        "time_format": "24h",
        "font_size": "medium",
    },
    "backup": {
        "auto_backup_enabled": False,
        "backup_frequency": "daily",
        "backup_time": "02:00",
        "retention_days": 30,
        "last_backup": None,
    },
}


def _require_category(category: str) -> str:
    category = (category or "").strip().lower()
    if category not in DEFAULT_SETTINGS:
        raise HTTPException(status_code=404, detail=f"unknown settings category: {category}")
    return category


def merge_settings(category: str, stored) -> Dict[str, Any]:
    out = deepcopy(DEFAULT_SETTINGS[category])
    if isinstance(stored, dict):
        out.update({k: v for k, v in stored.items() if k in out})
    return out


def clean_values(category: str, values: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(values) - set(DEFAULT_SETTINGS[category]))
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown {category} settings: {', '.join(unknown)}")
    return merge_settings(category, values)


def _load_all(cur) -> Dict[str, Dict[str, Any]]:
    cur.execute("SELECT category, data FROM settings")
    stored = {r["category"]: r["data"] for r in cur.fetchall()}
    return {c: merge_settings(c, stored.get(c)) for c in DEFAULT_SETTINGS}


def _upsert(cur, category: str, data: Dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO settings (category, data, updated_at)
        VALUES (%s, %s::jsonb, now())
        ON CONFLICT (category) DO UPDATE SET data = EXCLUDED.data, updated_at = now()
        """,
        (category, _jsonb(data)),
    )


def _save_many(cur, user, values: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    current = _load_all(cur)
    saved = {}
    for category, data in values.items():
        category = _require_category(category)
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail=f"{category} settings must be an object")
        merged = clean_values(category, data)
        _upsert(cur, category, merged)
        log_audit(cur, _actor(user), "settings.update", "settings", category, current[category], merged)
        saved[category] = merged
    return saved


@router.get("", dependencies=[Depends(require_permission("settings:read"))])
@degrade_on_db_error("settings.all", {"settings": DEFAULT_SETTINGS})
def get_all_settings():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"settings": _load_all(cur)}


@router.get("/export", dependencies=[Depends(require_admin)])
def export_settings():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"version": 1, "settings": _load_all(cur)}


@router.post("/import")
def import_settings(data: Dict[str, Any], user=Depends(require_admin)):
    values = data.get("settings", data)
    if not isinstance(values, dict) or not values:
        raise HTTPException(status_code=400, detail="invalid settings format")
    values = {k: v for k, v in values.items() if k != "version"}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                saved = _save_many(cur, user, values)
    return {"ok": True, "imported": sorted(saved)}


@router.put("")
def save_all_settings(data: Dict[str, Dict[str, Any]], user=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _save_many(cur, user, data)
                return {"settings": _load_all(cur)}


@router.delete("")
def reset_all_settings(user=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM settings")
                log_audit(cur, _actor(user), "settings.reset", "settings", "all")
    return {"settings": deepcopy(DEFAULT_SETTINGS)}


@router.get("/database/status", dependencies=[Depends(require_admin)])
def database_status():
    started = time.perf_counter()
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT version() AS version")
                version = cur.fetchone()["version"] or ""
    except psycopg.Error as exc:
        json_log("warning", "settings.database_status_failed", error=str(exc))
        return {
            "connected": False,
            "version": None,
            "error": str(exc),
            "latency_ms": int((time.perf_counter() - started) * 1000),
        }
    return {
        "connected": True,
        "version": version.split(",")[0] or "unknown",
        "error": None,
        "latency_ms": int((time.perf_counter() - started) * 1000),
    }


@router.get("/database/stats", dependencies=[Depends(require_admin)])
@degrade_on_db_error("settings.database_stats", {"tables": 0, "total_rows": 0, "size": "0 kB", "by_table": []})
def database_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT relname AS table_name, n_live_tup::bigint AS row_count
                FROM pg_stat_user_tables
                WHERE schemaname = 'public'
                ORDER BY relname
                """
            )
            tables = cur.fetchall()
            cur.execute("SELECT pg_size_pretty(pg_database_size(current_database())) AS size")
            size = cur.fetchone()["size"]
    return {
        "tables": len(tables),
        "total_rows": sum(int(t["row_count"] or 0) for t in tables),
        "size": size,
        "by_table": tables,
    }


@degrade_on_db_error("settings.category", None)
def _stored_settings(category: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT data FROM settings WHERE category = %s", (category,))
            row = cur.fetchone()
    return row["data"] if row else None


@router.get("/{category}", dependencies=[Depends(require_permission("settings:read"))])
def get_settings(category: str):
    category = _require_category(category)
    return {"category": category, "settings": merge_settings(category, _stored_settings(category))}


@router.put("/{category}")
def save_settings(category: str, data: Dict[str, Any], user=Depends(require_admin)):
    category = _require_category(category)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                saved = _save_many(cur, user, {category: data})
    return {"category": category, "settings": saved[category]}


@router.delete("/{category}")
def reset_settings(category: str, user=Depends(require_admin)):
    category = _require_category(category)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM settings WHERE category = %s", (category,))
                log_audit(cur, _actor(user), "settings.reset", "settings", category)
    return {"category": category, "settings": deepcopy(DEFAULT_SETTINGS[category])}

"""
Dashboard aggregates.

Every window is computed in the business time zone (see periods.py) and bound
as `[start, end)` parameters. Each helper takes an open cursor, so the
individual endpoints and the combined overview share the same SQL; the overview
runs them all inside one REPEATABLE READ snapshot so the numbers on one screen
agree with each other.
"""
from datetime import date, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends

from ..config import settings
from ..db import get_conn
from ..deps import require_permission
from ..logs import degrade_on_db_error
from ..money import money, pct_change, share_percentages
from ..periods import (
    DAY_NAMES_ES,
    add_months,
    business_today,
    business_tz,
    day_window,
    days_window,
    month_start,
    week_start,
)
from .cash_registers import current_register
from .inventory import UNCATEGORIZED_COLOR, UNCATEGORIZED_NAME

router = APIRouter(prefix="/dashboard", tags=["dashboard"], dependencies=[Depends(require_permission("dashboard:read"))])

PAYMENT_METHODS = ("cash", "card", "transfer")
TRAILING_DAYS = 7
COMPARISON_WINDOWS = ("today", "yesterday", "week", "last_week", "month", "last_month")

EMPTY_STATS = {
    "today_sales": Decimal("0.00"),
    "today_transactions": 0,
    "today_profit": Decimal("0.00"),
    "active_products": 0,
    "low_stock_count": 0,
    "out_of_stock_count": 0,
    "open_cash_register": False,
    "cash_in_register": Decimal("0.00"),
}
EMPTY_INVENTORY_VALUE = {"total_value": Decimal("0.00"), "total_cost": Decimal("0.00"), "potential_profit": Decimal("0.00")}


def _trailing_window(today: date, tz: ZoneInfo, days: int = TRAILING_DAYS):
    return days_window(today - timedelta(days=days - 1), today + timedelta(days=1), tz)


def sales_totals(cur, start, end) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(total), 0) AS total, COUNT(*)::int AS transactions
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    row = cur.fetchone()
    return {"total": money(row["total"]), "transactions": row["transactions"]}


def sales_profit(cur, start, end):
    cur.execute(
        """
        SELECT COALESCE(SUM((si.unit_price - p.cost) * si.quantity), 0) AS profit
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        JOIN products p ON p.id = si.product_id
        WHERE s.created_at >= %s AND s.created_at < %s
        """,
        (start, end),
    )
    return money(cur.fetchone()["profit"])


def stats(cur, today: date, tz: ZoneInfo) -> dict:
    start, end = day_window(today, tz)
    totals = sales_totals(cur, start, end)
    cur.execute(
        """
        SELECT COUNT(*) FILTER (WHERE active = true)::int AS active_products,
               COUNT(*) FILTER (WHERE stock > 0 AND stock <= min_stock)::int AS low_stock,
               COUNT(*) FILTER (WHERE stock = 0)::int AS out_of_stock
        FROM products
        """
    )
    products = cur.fetchone()
    register = current_register(cur)
    return {
        "today_sales": totals["total"],
        "today_transactions": totals["transactions"],
        "today_profit": sales_profit(cur, start, end),
        "active_products": products["active_products"],
        "low_stock_count": products["low_stock"],
        "out_of_stock_count": products["out_of_stock"],
        "open_cash_register": register is not None,
        "cash_in_register": register["expected_amount"] if register else money(0),
    }


def comparison(cur, today: date, tz: ZoneInfo) -> dict:
    tomorrow = today + timedelta(days=1)
    wk = week_start(today)
    mo = month_start(today)
    windows = {
        "today": day_window(today, tz),
        "yesterday": day_window(today - timedelta(days=1), tz),
        "week": days_window(wk, tomorrow, tz),
        "last_week": days_window(wk - timedelta(days=7), wk, tz),
        "month": days_window(mo, tomorrow, tz),
        "last_month": days_window(add_months(mo, -1), mo, tz),
    }
    cols = []
    params = []
    for name in COMPARISON_WINDOWS:
        start, end = windows[name]
        cols.append(f"COALESCE(SUM(total) FILTER (WHERE created_at >= %s AND created_at < %s), 0) AS {name}_sales")
        cols.append(f"COUNT(*) FILTER (WHERE created_at >= %s AND created_at < %s)::int AS {name}_transactions")
        params.extend([start, end, start, end])
    earliest = min(w[0] for w in windows.values())
    cur.execute(
        f"""
        SELECT {', '.join(cols)}
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        """,
        params + [earliest, windows["today"][1]],
    )
    return comparison_figures(cur.fetchone())


def comparison_figures(row: dict) -> dict:
    out = {}
    for name in COMPARISON_WINDOWS:
        out[f"{name}_sales"] = money(row.get(f"{name}_sales") or 0)
        out[f"{name}_transactions"] = row.get(f"{name}_transactions") or 0
    out["today_change"] = pct_change(out["today_sales"], out["yesterday_sales"])
    out["week_change"] = pct_change(out["week_sales"], out["last_week_sales"])
    out["month_change"] = pct_change(out["month_sales"], out["last_month_sales"])
    return out


EMPTY_COMPARISON = comparison_figures({})


def fill_days(first: date, days: int, sales_rows, profit_rows) -> list:
    sales_by_day = {r["day"]: r for r in sales_rows}
    profit_by_day = {r["day"]: r["profit"] for r in profit_rows}
    out = []
    for i in range(days):
        d = first + timedelta(days=i)
        r = sales_by_day.get(d)
        out.append(
            {
                "day": d.isoformat(),
                "day_name": DAY_NAMES_ES[d.weekday()],
                "sales": money(r["sales"] if r else 0),
                "transactions": r["transactions"] if r else 0,
                "profit": money(profit_by_day.get(d, 0)),
            }
        )
    return out


def daily_series(cur, first: date, days: int, tz: ZoneInfo) -> list:
    """Sales, transactions and profit per business day from `first`, zero-filled."""
    start, end = days_window(first, first + timedelta(days=days), tz)
    cur.execute(
        """
        SELECT (created_at AT TIME ZONE %s)::date AS day,
               COALESCE(SUM(total), 0) AS sales,
               COUNT(*)::int AS transactions
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        GROUP BY 1
        """,
        (tz.key, start, end),
    )
    sales_rows = cur.fetchall()
    cur.execute(
        """
        SELECT (s.created_at AT TIME ZONE %s)::date AS day,
               COALESCE(SUM((si.unit_price - p.cost) * si.quantity), 0) AS profit
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        JOIN products p ON p.id = si.product_id
        WHERE s.created_at >= %s AND s.created_at < %s
        GROUP BY 1
        """,
        (tz.key, start, end),
    )
    return fill_days(first, days, sales_rows, cur.fetchall())


def weekly(cur, today: date, tz: ZoneInfo) -> list:
    return daily_series(cur, today - timedelta(days=TRAILING_DAYS - 1), TRAILING_DAYS, tz)


def top_products(cur, today: date, tz: ZoneInfo, limit: int = 5) -> list:
    start, end = _trailing_window(today, tz)
    cur.execute(
        """
        SELECT p.id, p.name,
               SUM(si.quantity)::int AS quantity_sold,
               COALESCE(SUM(si.subtotal), 0) AS total_revenue,
               c.name AS category_name, c.color AS category_color
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        JOIN products p ON p.id = si.product_id
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE s.created_at >= %s AND s.created_at < %s
        GROUP BY p.id, p.name, c.name, c.color
        ORDER BY quantity_sold DESC, total_revenue DESC
        LIMIT %s
        """,
        (start, end, limit),
    )
    return cur.fetchall()


def category_sales(cur, today: date, tz: ZoneInfo) -> list:
    start, end = _trailing_window(today, tz)
    # Inner join to sales keeps only lines inside the window.
    cur.execute(
        """
        SELECT c.id AS category_id,
               COALESCE(c.name, %s) AS category_name,
               COALESCE(c.color, %s) AS category_color,
               COALESCE(SUM(si.subtotal), 0) AS total_sales
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        LEFT JOIN products p ON p.id = si.product_id
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE s.created_at >= %s AND s.created_at < %s
        GROUP BY c.id, c.name, c.color
        HAVING SUM(si.subtotal) > 0
        ORDER BY total_sales DESC
        """,
        (UNCATEGORIZED_NAME, UNCATEGORIZED_COLOR, start, end),
    )
    rows = cur.fetchall()
    shares = share_percentages([r["total_sales"] for r in rows])
    for r, share in zip(rows, shares):
        r["total_sales"] = money(r["total_sales"])
        r["percentage"] = share
    return rows


def low_stock(cur, limit: int = 10) -> list:
    cur.execute(
        """
        SELECT p.id, p.name, p.stock, p.min_stock, c.name AS category_name
        FROM products p
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.active = true AND p.stock <= p.min_stock
        ORDER BY (p.stock::numeric / NULLIF(p.min_stock, 0)) ASC NULLS LAST, p.stock ASC
        LIMIT %s
        """,
        (limit,),
    )
    return cur.fetchall()


def recent_sales(cur, limit: int = 10) -> list:
    cur.execute(
        """
        SELECT s.id, s.total, s.payment_method, s.created_at, u.name AS cashier_name,
               (SELECT COALESCE(SUM(si.quantity), 0)::int FROM sale_items si WHERE si.sale_id = s.id) AS items_count
        FROM sales s
        LEFT JOIN users u ON u.id = s.cashier_id
        ORDER BY s.created_at DESC
        LIMIT %s
        """,
        (limit,),
    )
    return cur.fetchall()


def hourly(cur, today: date, tz: ZoneInfo) -> list:
    start, end = day_window(today, tz)
    cur.execute(
        """
        SELECT EXTRACT(HOUR FROM created_at AT TIME ZONE %s)::int AS hour,
               COALESCE(SUM(total), 0) AS sales,
               COUNT(*)::int AS transactions
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        GROUP BY 1
        """,
        (tz.key, start, end),
    )
    by_hour = {r["hour"]: r for r in cur.fetchall()}
    return [
        {
            "hour": h,
            "sales": money(by_hour[h]["sales"]) if h in by_hour else money(0),
            "transactions": by_hour[h]["transactions"] if h in by_hour else 0,
        }
        for h in range(24)
    ]


def payment_methods(cur, today: date, tz: ZoneInfo) -> list:
    start, end = day_window(today, tz)
    cur.execute(
        """
        SELECT payment_method AS method, COALESCE(SUM(total), 0) AS total, COUNT(*)::int AS count
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        GROUP BY payment_method
        """,
        (start, end),
    )
    by_method = {r["method"]: r for r in cur.fetchall()}
    methods = list(PAYMENT_METHODS) + sorted(m for m in by_method if m not in PAYMENT_METHODS)
    rows = [
        {
            "method": m,
            "total": money(by_method[m]["total"]) if m in by_method else money(0),
            "count": by_method[m]["count"] if m in by_method else 0,
        }
        for m in methods
    ]
    for r, share in zip(rows, share_percentages([r["total"] for r in rows])):
        r["percentage"] = share
    return rows


def inventory_value(cur) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(price * stock), 0) AS total_value,
               COALESCE(SUM(cost * stock), 0) AS total_cost
        FROM products
        WHERE active = true
        """
    )
    row = cur.fetchone()
    value = money(row["total_value"])
    cost = money(row["total_cost"])
    return {"total_value": value, "total_cost": cost, "potential_profit": value - cost}


def _context():
    tz = business_tz()
    return business_today(tz), tz


@router.get("/stats")
@degrade_on_db_error("dashboard.stats", EMPTY_STATS)
def dashboard_stats():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return stats(cur, today, tz)


@router.get("/comparison")
@degrade_on_db_error("dashboard.comparison", EMPTY_COMPARISON)
def dashboard_comparison():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return comparison(cur, today, tz)


@router.get("/weekly")
@degrade_on_db_error("dashboard.weekly", {"days": []})
def dashboard_weekly():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"days": weekly(cur, today, tz)}


@router.get("/top-products")
@degrade_on_db_error("dashboard.top_products", {"products": []})
def dashboard_top_products(limit: int = 5):
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"products": top_products(cur, today, tz, max(1, min(limit, 50)))}


@router.get("/category-sales")
@degrade_on_db_error("dashboard.category_sales", {"categories": []})
def dashboard_category_sales():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"categories": category_sales(cur, today, tz)}


@router.get("/low-stock")
@degrade_on_db_error("dashboard.low_stock", {"products": []})
def dashboard_low_stock(limit: int = 10):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"products": low_stock(cur, max(1, min(limit, 100)))}


@router.get("/recent-sales")
@degrade_on_db_error("dashboard.recent_sales", {"sales": []})
def dashboard_recent_sales(limit: int = 10):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"sales": recent_sales(cur, max(1, min(limit, 100)))}


@router.get("/hourly")
@degrade_on_db_error("dashboard.hourly", {"hours": []})
def dashboard_hourly():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"hours": hourly(cur, today, tz)}


@router.get("/payment-methods")
@degrade_on_db_error("dashboard.payment_methods", {"methods": []})
def dashboard_payment_methods():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"methods": payment_methods(cur, today, tz)}


@router.get("/inventory-value")
@degrade_on_db_error("dashboard.inventory_value", EMPTY_INVENTORY_VALUE)
def dashboard_inventory_value():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return inventory_value(cur)


@router.get("/overview")
def dashboard_overview():
    today, tz = _context()
    with get_conn() as conn:
        with conn.cursor() as cur:
            # Must be the first statement of the transaction.
            cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
            return {
                "business_date": today.isoformat(),
                "timezone": tz.key,
                "refresh_seconds": settings.dashboard_refresh_seconds,
                "stats": stats(cur, today, tz),
                "comparison": comparison(cur, today, tz),
                "weekly": weekly(cur, today, tz),
                "top_products": top_products(cur, today, tz),
                "category_sales": category_sales(cur, today, tz),
                "low_stock": low_stock(cur),
                "recent_sales": recent_sales(cur),
                "hourly": hourly(cur, today, tz),
                "payment_methods": payment_methods(cur, today, tz),
                "inventory_value": inventory_value(cur),
            }

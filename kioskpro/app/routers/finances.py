from datetime import date, timedelta
from decimal import Decimal
from typing import Literal, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends

from ..db import get_conn
from ..deps import require_permission
from ..logs import degrade_on_db_error
from ..money import money, pct, share_percentages
from ..periods import (
    DAY_NAMES_ES,
    MONTH_NAMES_ES,
    add_months,
    business_today,
    business_tz,
    day_window,
    days_window,
    local_midnight,
    month_start,
    period_window,
)

router = APIRouter(prefix="/finances", tags=["finances"], dependencies=[Depends(require_permission("finances:read"))])

# Income is every sale; expenses are purchases whose goods arrived.
_INCOME = "SELECT created_at, total FROM sales"
_EXPENSES = "SELECT created_at, total FROM purchases WHERE status = 'received'"

FinancePeriod = Literal["today", "week", "month", "quarter", "year"]


def _totals(cur, source: str, start, end) -> dict:
    cur.execute(
        f"""
        SELECT COALESCE(SUM(total), 0) AS total, COUNT(*)::int AS count
        FROM ({source}) AS src
        WHERE created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    row = cur.fetchone()
    return {"total": money(row["total"]), "count": row["count"]}


def _gross_profit(cur, start, end) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM((si.unit_price - COALESCE(p.cost, 0)) * si.quantity), 0) AS profit
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        LEFT JOIN products p ON p.id = si.product_id
        WHERE s.created_at >= %s AND s.created_at < %s
        """,
        (start, end),
    )
    return money(cur.fetchone()["profit"])


def _by_bucket(cur, source: str, bucket_sql: str, tz: ZoneInfo, start, end) -> dict:
    cur.execute(
        f"""
        SELECT {bucket_sql} AS bucket, COALESCE(SUM(total), 0) AS total, COUNT(*)::int AS count
        FROM ({source}) AS src
        WHERE created_at >= %s AND created_at < %s
        GROUP BY 1
        """,
        (tz.key, start, end),
    )
    return {r["bucket"]: r for r in cur.fetchall()}


_MONTH_BUCKET = "to_char(date_trunc('month', created_at AT TIME ZONE %s), 'YYYY-MM')"
_DAY_BUCKET = "to_char((created_at AT TIME ZONE %s)::date, 'YYYY-MM-DD')"


def period_summary(income: dict, expenses: dict, gross_profit: Decimal) -> dict:
    sales = income["total"]
    return {
        "sales": sales,
        "sales_count": income["count"],
        "expenses": expenses["total"],
        "expenses_count": expenses["count"],
        "gross_profit": gross_profit,
        "net_profit": money(sales - expenses["total"]),
        "profit_margin": pct(gross_profit, sales),
        "avg_ticket": money(sales / income["count"]) if income["count"] else money(0),
    }


EMPTY_SUMMARY = period_summary({"total": money(0), "count": 0}, {"total": money(0), "count": 0}, money(0))
EMPTY_STATS = {
    "today": EMPTY_SUMMARY,
    "this_month": EMPTY_SUMMARY,
    "last_month": EMPTY_SUMMARY,
    "inventory_value": money(0),
}


@router.get("/stats")
@degrade_on_db_error("finances.stats", EMPTY_STATS)
def finance_stats():
    tz = business_tz()
    today = business_today(tz)
    first = month_start(today)
    windows = {
        "today": day_window(today, tz),
        "this_month": days_window(first, today + timedelta(days=1), tz),
        "last_month": days_window(add_months(first, -1), first, tz),
    }
    out = {}
    with get_conn() as conn:
        with conn.cursor() as cur:
            for name, (start, end) in windows.items():
                out[name] = period_summary(
                    _totals(cur, _INCOME, start, end),
                    _totals(cur, _EXPENSES, start, end),
                    _gross_profit(cur, start, end),
                )
            cur.execute(
                """
                SELECT COALESCE(SUM(stock * cost), 0) AS inventory_value
                FROM products
                WHERE active = true
                """
            )
            out["inventory_value"] = money(cur.fetchone()["inventory_value"])
    return out


@degrade_on_db_error("finances.summary", EMPTY_SUMMARY)
def _window_summary(start, end) -> dict:
    with get_conn() as conn:
        with conn.cursor() as cur:
            return period_summary(
                _totals(cur, _INCOME, start, end),
                _totals(cur, _EXPENSES, start, end),
                _gross_profit(cur, start, end),
            )


@router.get("/summary")
def finance_summary(period: FinancePeriod = "month"):
    tz = business_tz()
    start, end = period_window(period, business_today(tz), tz)
    return {"period": period, **_window_summary(start, end)}


@router.get("/monthly")
@degrade_on_db_error("finances.monthly", {"months": []})
def finance_monthly(months: int = 12):
    months = max(1, min(months, 36))
    tz = business_tz()
    today = business_today(tz)
    first = add_months(month_start(today), -(months - 1))
    start, end = local_midnight(first, tz), local_midnight(today + timedelta(days=1), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            income = _by_bucket(cur, _INCOME, _MONTH_BUCKET, tz, start, end)
            expenses = _by_bucket(cur, _EXPENSES, _MONTH_BUCKET, tz, start, end)
    out = []
    for i in range(months):
        m = add_months(first, i)
        key = m.strftime("%Y-%m")
        sales = money(income[key]["total"]) if key in income else money(0)
        spent = money(expenses[key]["total"]) if key in expenses else money(0)
        out.append(
            {
                "month": key,
                "month_name": MONTH_NAMES_ES[m.month - 1],
                "sales": sales,
                "expenses": spent,
                "profit": sales - spent,
            }
        )
    return {"months": out}


@router.get("/daily")
@degrade_on_db_error("finances.daily", {"days": []})
def finance_daily(days: int = 30):
    days = max(1, min(days, 366))
    tz = business_tz()
    today = business_today(tz)
    first = today - timedelta(days=days - 1)
    start, end = days_window(first, today + timedelta(days=1), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            income = _by_bucket(cur, _INCOME, _DAY_BUCKET, tz, start, end)
            expenses = _by_bucket(cur, _EXPENSES, _DAY_BUCKET, tz, start, end)
    out = []
    for i in range(days):
        d = first + timedelta(days=i)
        key = d.isoformat()
        out.append(
            {
                "date": key,
                "day_name": DAY_NAMES_ES[d.weekday()],
                "sales": money(income[key]["total"]) if key in income else money(0),
                "expenses": money(expenses[key]["total"]) if key in expenses else money(0),
                "transactions": income[key]["count"] if key in income else 0,
            }
        )
    return {"days": out}


def cash_flow_rows(periods, inflows: dict, outflows: dict) -> list:
    """Per-period inflow/outflow with a running balance that starts at zero."""
    cumulative = Decimal("0.00")
    out = []
    for key in periods:
        inflow = money(inflows.get(key, 0))
        outflow = money(outflows.get(key, 0))
        net = inflow - outflow
        cumulative += net
        out.append({"period": key, "inflow": inflow, "outflow": outflow, "net": net, "cumulative": cumulative})
    return out


@router.get("/cash-flow")
@degrade_on_db_error("finances.cash_flow", {"periods": []})
def finance_cash_flow(months: int = 6):
    months = max(1, min(months, 36))
    tz = business_tz()
    today = business_today(tz)
    first = add_months(month_start(today), -(months - 1))
    start, end = local_midnight(first, tz), local_midnight(today + timedelta(days=1), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            income = _by_bucket(cur, _INCOME, _MONTH_BUCKET, tz, start, end)
            expenses = _by_bucket(cur, _EXPENSES, _MONTH_BUCKET, tz, start, end)
    keys = [add_months(first, i).strftime("%Y-%m") for i in range(months)]
    return {
        "periods": cash_flow_rows(
            keys,
            {k: r["total"] for k, r in income.items()},
            {k: r["total"] for k, r in expenses.items()},
        )
    }


@router.get("/transactions")
@degrade_on_db_error("finances.transactions", {"transactions": []})
def finance_transactions(
    type: Literal["all", "income", "expense"] = "all",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    payment_method: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
):
    """
    Sales as income and received purchases as expenses, newest first.

    Purchases carry no payment method, so a payment method filter leaves only sales.
    """
    limit = max(1, min(limit, 500))
    tz = business_tz()
    parts = []
    params = []
    if type in ("all", "income"):
        parts.append(
            """
            SELECT s.id, 'income' AS type, 'Venta' AS category,
                   'Venta #' || left(s.id::text, 8) AS description,
                   s.total AS amount, s.payment_method, NULL::text AS reference, s.created_at AS date
            FROM sales s
            WHERE (%s::text IS NULL OR s.payment_method = %s)
            """
        )
        params.extend([payment_method, payment_method])
    if type in ("all", "expense") and not payment_method:
        parts.append(
            """
            SELECT p.id, 'expense' AS type, 'Compra' AS category,
                   'Compra a ' || COALESCE(sp.name, 'proveedor') AS description,
                   p.total AS amount, NULL::text AS payment_method, p.notes AS reference, p.created_at AS date
            FROM purchases p
            LEFT JOIN suppliers sp ON sp.id = p.supplier_id
            WHERE p.status = 'received'
            """
        )
    where = []
    if date_from is not None:
        where.append("date >= %s")
        params.append(local_midnight(date_from, tz))
    if date_to is not None:
        where.append("date < %s")
        params.append(local_midnight(date_to + timedelta(days=1), tz))
    if search and search.strip():
        where.append("(description ILIKE %s OR category ILIKE %s)")
        term = f"%{search.strip()}%"
        params.extend([term, term])
    if not parts:
        return {"transactions": []}
    sql = "SELECT * FROM (" + " UNION ALL ".join(parts) + ") AS tx"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY date DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"transactions": cur.fetchall()}


@router.get("/expense-distribution")
@degrade_on_db_error("finances.expense_distribution", {"categories": []})
def expense_distribution():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(s.name, 'Sin proveedor') AS category,
                       COALESCE(SUM(p.total), 0) AS amount,
                       COUNT(*)::int AS count
                FROM purchases p
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                WHERE p.status = 'received'
                GROUP BY s.id, s.name
                ORDER BY amount DESC
                """
            )
            rows = cur.fetchall()
    for r, share in zip(rows, share_percentages([r["amount"] for r in rows])):
        r["amount"] = money(r["amount"])
        r["percentage"] = share
    return {"categories": rows}

"""
Report panels.

Every panel takes a named range (`today|yesterday|week|month|quarter|year`, or
`custom` with `date_from`/`date_to`) resolved by `periods.period_window`. Profit
is always revenue minus product cost for the units sold.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from ..db import get_conn
from ..deps import require_permission
from ..logs import degrade_on_db_error
from ..money import money, pct, pct_change, share_percentages
from ..periods import business_today, business_tz, period_window, previous_window, week_start
from ..validation import DateRange, InventoryStatus
from .dashboard import daily_series
from .inventory import OVERSTOCK_FACTOR, STATUS_SQL, UNCATEGORIZED_COLOR, UNCATEGORIZED_NAME, inventory_row

router = APIRouter(prefix="/reports", tags=["reports"], dependencies=[Depends(require_permission("reports:read"))])

PAYMENT_LABELS = {"cash": "Efectivo", "card": "Tarjeta", "transfer": "Transferencia"}
REPORT_HOURS = range(6, 23)
TREND_WEEKS = 8

RangeParam = Annotated[DateRange, Query(alias="range")]

EMPTY_FIGURES = {
    "sales": Decimal("0.00"),
    "transactions": 0,
    "avg_ticket": Decimal("0.00"),
    "items_sold": 0,
    "cost": Decimal("0.00"),
    "profit": Decimal("0.00"),
    "profit_margin": Decimal("0.0"),
}


def resolve_window(range_type: str, date_from: Optional[date], date_to: Optional[date], previous: bool = False):
    tz = business_tz()
    today = business_today(tz)
    if previous:
        return previous_window(range_type, today, tz, date_from, date_to)
    return period_window(range_type, today, tz, date_from, date_to)


def period_figures(cur, start, end) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(total), 0) AS sales, COUNT(*)::int AS transactions
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    totals = cur.fetchone()
    cur.execute(
        """
        SELECT COALESCE(SUM(si.quantity), 0)::int AS items_sold,
               COALESCE(SUM(COALESCE(p.cost, 0) * si.quantity), 0) AS cost
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        LEFT JOIN products p ON p.id = si.product_id
        WHERE s.created_at >= %s AND s.created_at < %s
        """,
        (start, end),
    )
    items = cur.fetchone()
    sales = money(totals["sales"])
    cost = money(items["cost"])
    profit = sales - cost
    tx = totals["transactions"]
    return {
        "sales": sales,
        "transactions": tx,
        "avg_ticket": money(sales / tx) if tx else money(0),
        "items_sold": items["items_sold"],
        "cost": cost,
        "profit": profit,
        "profit_margin": pct(profit, sales),
    }


@router.get("/stats")
@degrade_on_db_error("reports.stats", EMPTY_FIGURES)
def report_stats(range_type: RangeParam = "today", date_from: Optional[date] = None, date_to: Optional[date] = None):
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            return period_figures(cur, start, end)


@router.get("/hourly")
@degrade_on_db_error("reports.hourly", {"hours": []})
def report_hourly(range_type: RangeParam = "today", date_from: Optional[date] = None, date_to: Optional[date] = None):
    tz = business_tz()
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
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
    out = []
    for h in REPORT_HOURS:
        r = by_hour.get(h)
        sales = money(r["sales"]) if r else money(0)
        tx = r["transactions"] if r else 0
        out.append(
            {
                "hour": f"{h:02d}:00",
                "sales": sales,
                "transactions": tx,
                "avg_ticket": money(sales / tx) if tx else money(0),
            }
        )
    return {"hours": out}


@router.get("/daily")
@degrade_on_db_error("reports.daily", {"days": []})
def report_daily(days: int = 30):
    days = max(1, min(days, 366))
    tz = business_tz()
    today = business_today(tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"days": daily_series(cur, today - timedelta(days=days - 1), days, tz)}


def weekly_trend_rows(week_starts, totals: dict) -> list:
    """One row per week with the change against the week before it."""
    out = []
    for i, wk in enumerate(week_starts[1:], start=1):
        current = money(totals.get(wk, 0))
        previous = money(totals.get(week_starts[i - 1], 0))
        out.append(
            {
                "week_start": wk.isoformat(),
                "current": current,
                "previous": previous,
                "change": pct_change(current, previous),
            }
        )
    return out


@router.get("/weekly-trend")
@degrade_on_db_error("reports.weekly_trend", {"weeks": []})
def report_weekly_trend(weeks: int = TREND_WEEKS):
    weeks = max(1, min(weeks, 52))
    tz = business_tz()
    today = business_today(tz)
    # One extra leading week so the first row has something to compare against.
    week_starts = [week_start(today) - timedelta(days=7 * i) for i in range(weeks, -1, -1)]
    start, end = resolve_window("custom", week_starts[0], today)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT date_trunc('week', created_at AT TIME ZONE %s)::date AS week_start,
                       COALESCE(SUM(total), 0) AS total
                FROM sales
                WHERE created_at >= %s AND created_at < %s
                GROUP BY 1
                """,
                (tz.key, start, end),
            )
            totals = {r["week_start"]: r["total"] for r in cur.fetchall()}
    return {"weeks": weekly_trend_rows(week_starts, totals)}


@router.get("/sales-detail")
@degrade_on_db_error("reports.sales_detail", {"sales": []})
def report_sales_detail(
    range_type: RangeParam = "today",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 100,
):
    limit = max(1, min(limit, 1000))
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.created_at AS date, s.total, s.payment_method,
                       COALESCE(SUM(si.quantity), 0)::int AS items_count,
                       s.total - COALESCE(SUM(COALESCE(p.cost, 0) * si.quantity), 0) AS profit
                FROM sales s
                LEFT JOIN sale_items si ON si.sale_id = s.id
                LEFT JOIN products p ON p.id = si.product_id
                WHERE s.created_at >= %s AND s.created_at < %s
                GROUP BY s.id, s.created_at, s.total, s.payment_method
                ORDER BY s.created_at DESC
                LIMIT %s
                """,
                (start, end, limit),
            )
            rows = cur.fetchall()
    for r in rows:
        r["profit"] = money(r["profit"])
    return {"sales": rows}


def _product_performance(row: dict) -> dict:
    out = dict(row)
    qty = int(row.get("quantity_sold") or 0)
    revenue = money(row.get("revenue"))
    profit = money(revenue - money(row.get("cost_total")))
    out.pop("cost_total", None)
    out["revenue"] = revenue
    out["profit"] = profit
    out["profit_margin"] = pct(profit, revenue)
    out["avg_price"] = money(revenue / qty) if qty else money(row.get("price"))
    return out


@router.get("/top-products")
@degrade_on_db_error("reports.top_products", {"products": []})
def report_top_products(
    range_type: RangeParam = "week",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 10,
):
    limit = max(1, min(limit, 100))
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.price, c.name AS category_name, c.color AS category_color,
                       SUM(si.quantity)::int AS quantity_sold,
                       COALESCE(SUM(si.subtotal), 0) AS revenue,
                       COALESCE(SUM(p.cost * si.quantity), 0) AS cost_total
                FROM sale_items si
                JOIN sales s ON s.id = si.sale_id
                JOIN products p ON p.id = si.product_id
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE s.created_at >= %s AND s.created_at < %s
                GROUP BY p.id, p.name, p.price, c.name, c.color
                ORDER BY quantity_sold DESC, revenue DESC
                LIMIT %s
                """,
                (start, end, limit),
            )
            return {"products": [_product_performance(r) for r in cur.fetchall()]}


@router.get("/low-performing")
@degrade_on_db_error("reports.low_performing", {"products": []})
def report_low_performing(
    range_type: RangeParam = "month",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 10,
):
    """Active, in-stock products that sold least in the range (never-sold first)."""
    limit = max(1, min(limit, 100))
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.price, p.stock, c.name AS category_name, c.color AS category_color,
                       COALESCE(sold.quantity_sold, 0)::int AS quantity_sold,
                       COALESCE(sold.revenue, 0) AS revenue,
                       COALESCE(sold.quantity_sold, 0) * p.cost AS cost_total
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                LEFT JOIN (
                    SELECT si.product_id, SUM(si.quantity) AS quantity_sold, SUM(si.subtotal) AS revenue
                    FROM sale_items si
                    JOIN sales s ON s.id = si.sale_id
                    WHERE s.created_at >= %s AND s.created_at < %s
                    GROUP BY si.product_id
                ) AS sold ON sold.product_id = p.id
                WHERE p.active = true AND p.stock > 0
                ORDER BY quantity_sold ASC, p.stock DESC
                LIMIT %s
                """,
                (start, end, limit),
            )
            return {"products": [_product_performance(r) for r in cur.fetchall()]}


@router.get("/categories")
@degrade_on_db_error("reports.categories", {"categories": []})
def report_categories(range_type: RangeParam = "month", date_from: Optional[date] = None, date_to: Optional[date] = None):
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id AS category_id,
                       COALESCE(c.name, %s) AS category_name,
                       COALESCE(c.color, %s) AS category_color,
                       COUNT(DISTINCT p.id)::int AS products_count,
                       COALESCE(SUM(si.quantity), 0)::int AS quantity_sold,
                       COALESCE(SUM(si.subtotal), 0) AS revenue,
                       COALESCE(SUM(COALESCE(p.cost, 0) * si.quantity), 0) AS cost_total
                FROM sale_items si
                JOIN sales s ON s.id = si.sale_id
                LEFT JOIN products p ON p.id = si.product_id
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE s.created_at >= %s AND s.created_at < %s
                GROUP BY c.id, c.name, c.color
                ORDER BY revenue DESC
                """,
                (UNCATEGORIZED_NAME, UNCATEGORIZED_COLOR, start, end),
            )
            rows = cur.fetchall()
    shares = share_percentages([r["revenue"] for r in rows])
    out = []
    for r, share in zip(rows, shares):
        revenue = money(r["revenue"])
        out.append(
            {
                "category_id": r["category_id"],
                "category_name": r["category_name"],
                "category_color": r["category_color"],
                "products_count": r["products_count"],
                "quantity_sold": r["quantity_sold"],
                "revenue": revenue,
                "profit": revenue - money(r["cost_total"]),
                "percentage": share,
            }
        )
    return {"categories": out}


@router.get("/payment-methods")
@degrade_on_db_error("reports.payment_methods", {"methods": []})
def report_payment_methods(range_type: RangeParam = "month", date_from: Optional[date] = None, date_to: Optional[date] = None):
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT payment_method AS method, COUNT(*)::int AS transactions, COALESCE(SUM(total), 0) AS amount
                FROM sales
                WHERE created_at >= %s AND created_at < %s
                GROUP BY payment_method
                ORDER BY amount DESC
                """,
                (start, end),
            )
            rows = cur.fetchall()
    shares = share_percentages([r["amount"] for r in rows])
    out = []
    for r, share in zip(rows, shares):
        amount = money(r["amount"])
        out.append(
            {
                "method": r["method"],
                "method_label": PAYMENT_LABELS.get(r["method"], r["method"]),
                "transactions": r["transactions"],
                "amount": amount,
                "percentage": share,
                "avg_ticket": money(amount / r["transactions"]) if r["transactions"] else money(0),
            }
        )
    return {"methods": out}


@router.get("/inventory")
@degrade_on_db_error(
    "reports.inventory",
    {
        "total_products": 0,
        "total_value": Decimal("0.00"),
        "potential_revenue": Decimal("0.00"),
        "low_stock_count": 0,
        "out_of_stock_count": 0,
        "overstocked_count": 0,
        "categories_count": 0,
        "avg_stock_level": 0,
    },
)
def report_inventory():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*)::int AS total_products,
                       COALESCE(SUM(stock * cost), 0) AS total_value,
                       COALESCE(SUM(stock * price), 0) AS potential_revenue,
                       COUNT(*) FILTER (WHERE stock = 0)::int AS out_of_stock_count,
                       COUNT(*) FILTER (WHERE stock > 0 AND stock <= min_stock)::int AS low_stock_count,
                       COUNT(*) FILTER (WHERE stock > min_stock * {OVERSTOCK_FACTOR})::int AS overstocked_count,
                       COUNT(DISTINCT category_id)::int AS categories_count,
                       COALESCE(AVG(stock), 0) AS avg_stock
                FROM products
                WHERE active = true
                """
            )
            row = cur.fetchone()
    avg_stock = row.pop("avg_stock")
    row["total_value"] = money(row["total_value"])
    row["potential_revenue"] = money(row["potential_revenue"])
    row["avg_stock_level"] = round(avg_stock or 0)
    return row


@router.get("/inventory/products")
@degrade_on_db_error("reports.inventory_products", {"products": []})
def report_inventory_products(filter: InventoryStatus = "all"):
    sql = """
        SELECT p.id, p.name, p.stock, p.min_stock, p.cost, p.price,
               c.name AS category_name, c.color AS category_color
        FROM products p
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.active = true
    """
    if filter != "all":
        sql += f" AND {STATUS_SQL[filter]}"
    sql += " ORDER BY p.stock ASC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
            return {"products": [inventory_row(r) for r in cur.fetchall()]}


@router.get("/suppliers")
@degrade_on_db_error("reports.suppliers", {"suppliers": []})
def report_suppliers():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS supplier_id, s.name AS supplier_name,
                       COUNT(p.id)::int AS orders_count,
                       COALESCE(SUM(p.total), 0) AS total_amount,
                       COALESCE(AVG(p.total), 0) AS avg_order,
                       MAX(p.created_at) AS last_purchase
                FROM suppliers s
                LEFT JOIN purchases p ON p.supplier_id = s.id AND p.status = 'received'
                WHERE s.active = true
                GROUP BY s.id, s.name
                ORDER BY total_amount DESC
                """
            )
            rows = cur.fetchall()
    for r in rows:
        r["total_amount"] = money(r["total_amount"])
        r["avg_order"] = money(r["avg_order"])
    return {"suppliers": rows}


@router.get("/financial")
@degrade_on_db_error(
    "reports.financial",
    {
        "total_sales": Decimal("0.00"),
        "total_cost": Decimal("0.00"),
        "gross_profit": Decimal("0.00"),
        "total_purchases": Decimal("0.00"),
        "net_profit": Decimal("0.00"),
        "profit_margin": Decimal("0.0"),
        "expense_ratio": Decimal("0.0"),
        "inventory_value": Decimal("0.00"),
    },
)
def report_financial(range_type: RangeParam = "month", date_from: Optional[date] = None, date_to: Optional[date] = None):
    start, end = resolve_window(range_type, date_from, date_to)
    with get_conn() as conn:
        with conn.cursor() as cur:
            figures = period_figures(cur, start, end)
            cur.execute(
                """
                SELECT COALESCE(SUM(total), 0) AS total_purchases
                FROM purchases
                WHERE status = 'received' AND created_at >= %s AND created_at < %s
                """,
                (start, end),
            )
            purchases = money(cur.fetchone()["total_purchases"])
            cur.execute("SELECT COALESCE(SUM(stock * cost), 0) AS inventory_value FROM products WHERE active = true")
            inventory_value = money(cur.fetchone()["inventory_value"])
    return {
        "total_sales": figures["sales"],
        "total_cost": figures["cost"],
        "gross_profit": figures["profit"],
        "total_purchases": purchases,
        "net_profit": figures["profit"] - purchases,
        "profit_margin": figures["profit_margin"],
        "expense_ratio": pct(purchases, figures["sales"]),
        "inventory_value": inventory_value,
    }


def compare_figures(current: dict, previous: dict) -> dict:
    keys = ("sales", "transactions", "profit", "avg_ticket")
    return {
        "current_period": {k: current[k] for k in keys},
        "previous_period": {k: previous[k] for k in keys},
        "changes": {k: pct_change(current[k], previous[k]) for k in keys},
    }


@router.get("/comparative")
@degrade_on_db_error("reports.comparative", compare_figures(EMPTY_FIGURES, EMPTY_FIGURES))
def report_comparative(range_type: RangeParam = "month", date_from: Optional[date] = None, date_to: Optional[date] = None):
    cur_start, cur_end = resolve_window(range_type, date_from, date_to)
    prev_start, prev_end = resolve_window(range_type, date_from, date_to, previous=True)
    with get_conn() as conn:
        with conn.cursor() as cur:
            current = period_figures(cur, cur_start, cur_end)
            previous = period_figures(cur, prev_start, prev_end)
    return compare_figures(current, previous)

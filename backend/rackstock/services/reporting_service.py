# Overview: Read-only sales summary over an owner's active sales.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Sale
from ..validation import ValidationError
from rackstock.time_utils import parse_range_bound, to_utc_z, utc_date_key


TOP_ITEMS_LIMIT = 10


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_range_bound(start) if start else None
        end_dt = parse_range_bound(end, end=True) if end else None
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 dates or datetimes")
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must not be after end")
    return start_dt, end_dt


def active_sales(owner_id: int, start_dt: datetime | None, end_dt: datetime | None) -> list[Sale]:
    """Owner's non-voided sales with start <= sale_date <= end, oldest first."""
    query = db.session.query(Sale).filter(
        Sale.owner_id == owner_id,
        Sale.voided_at.is_(None),
    )
    if start_dt:
        query = query.filter(Sale.sale_date >= start_dt)
    if end_dt:
        query = query.filter(Sale.sale_date <= end_dt)
    return query.order_by(Sale.sale_date.asc(), Sale.id.asc()).all()


def summarize(owner_id: int, start: str | None = None, end: str | None = None) -> dict:
    """
    Fold the owner's active sales in [start, end] into summary figures.

    Bounds are inclusive; a date-only end covers the whole UTC day. Daily
    buckets use the UTC calendar date of sale_date. Top sellers are grouped
    by line name and ranked by quantity; ties keep the order in which the
    names were first seen.
    """
    start_dt, end_dt = _parse_range(start, end)
    sales = active_sales(owner_id, start_dt, end_dt)

    total_revenue_cents = 0
    total_items_sold = 0
    payment_method_stats: dict[str, int] = {}
    daily: dict[str, dict] = {}
    item_sales: dict[str, dict] = {}

    for sale in sales:
        total_revenue_cents += sale.total_cents

        method = sale.payment_method
        payment_method_stats[method] = payment_method_stats.get(method, 0) + sale.total_cents

        day = utc_date_key(sale.sale_date)
        bucket = daily.setdefault(day, {"date": day, "count": 0, "revenue_cents": 0})
        bucket["count"] += 1
        bucket["revenue_cents"] += sale.total_cents

        for line in sale.lines:
            total_items_sold += line.quantity
            entry = item_sales.setdefault(line.name, {"name": line.name, "quantity": 0, "revenue_cents": 0})
            entry["quantity"] += line.quantity
            entry["revenue_cents"] += line.line_total_cents

    total_sales = len(sales)
    average_order_value_cents = round(total_revenue_cents / total_sales, 2) if total_sales else 0

    # sorted() is stable: equal quantities keep first-seen order
    top_selling_items = sorted(item_sales.values(), key=lambda e: e["quantity"], reverse=True)[:TOP_ITEMS_LIMIT]

    return {
        "start": to_utc_z(start_dt) if start_dt else None,
        "end": to_utc_z(end_dt) if end_dt else None,
        "total_sales": total_sales,
        "total_revenue_cents": total_revenue_cents,
        "total_items_sold": total_items_sold,
        "average_order_value_cents": average_order_value_cents,
        "payment_method_stats": payment_method_stats,
        "daily_sales": [daily[day] for day in sorted(daily)],
        "top_selling_items": top_selling_items,
    }

"""
Business Intelligence Tracker

Derives KPI, product, segment, financial and growth tables from the
orders, inventory, support and analytics spreadsheets, and builds the
report payloads the dispatcher e-mails.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import polars as pl
import structlog

from commerce_tracking.coordination import KeyedLock
from commerce_tracking.errors import TrackingError
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.schemas import (
    CUSTOMER_SEGMENTS,
    FINANCIAL_SUMMARY,
    GROWTH_METRICS,
    INVENTORY_ALERTS,
    KPI_DASHBOARD,
    ORDER_ITEMS,
    ORDERS,
    PRODUCT_INVENTORY,
    PRODUCT_PERFORMANCE,
    SUPPORT_TICKETS,
    USER_ACTIVITIES,
    USER_JOURNEYS,
)

from .base import BaseTracker, Clock
from .formatting import format_date, mean, money, parse_timestamp, ratio, to_float, to_int
from .inventory import row_to_product
from .models import (
    ActivityType,
    AlertStatus,
    Order,
    OrderStatus,
    ProductInventory,
    SupportTicket,
    SyncResult,
    TicketStatus,
)
from .orders import row_to_order
from .support import row_to_ticket

logger = structlog.get_logger(__name__)

VIP_MIN_ORDERS = 3
VIP_MIN_REVENUE = 500.0
CHURN_DAYS = 90
TOP_PRODUCTS = 5
SEGMENT_ORDER = ("VIP", "Returning", "New")


def _day(value: str) -> Optional[date]:
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def growth(current: float, previous: float) -> float:
    """Percentage change, zero when there is no baseline"""
    return ratio(current - previous, previous)


@dataclass
class Dataset:
    """Snapshot of the source tables a BI run reads"""

    orders: List[Order]
    items: List[List[str]]
    products: List[ProductInventory]
    tickets: List[SupportTicket]
    activities: List[List[str]]
    journeys: List[List[str]]
    alerts: List[List[str]]

    def orders_between(self, start: date, end: date) -> List[Order]:
        return [o for o in self.orders if start <= o.created_at.date() <= end]

    def items_between(self, start: date, end: date) -> List[List[str]]:
        return [row for row in self.items if start <= (_day(row[10]) or date.min) <= end]

    def activities_between(self, start: date, end: date) -> List[List[str]]:
        return [row for row in self.activities if start <= (_day(row[10]) or date.min) <= end]

    def tickets_between(self, start: date, end: date) -> List[SupportTicket]:
        return [t for t in self.tickets if start <= t.created_at.date() <= end]

    def first_order_dates(self) -> Dict[str, date]:
        firsts: Dict[str, date] = {}
        for order in self.orders:
            day = order.created_at.date()
            if order.customer_id not in firsts or day < firsts[order.customer_id]:
                firsts[order.customer_id] = day
        return firsts

    def period_totals(self, start: date, end: date) -> Dict[str, Any]:
        orders = [o for o in self.orders_between(start, end) if o.status != OrderStatus.CANCELLED]
        activities = self.activities_between(start, end)
        revenue = sum(o.total_amount for o in orders)
        visitors = len({row[0] for row in activities})
        purchases = sum(1 for row in activities if row[2] == ActivityType.PURCHASE.value)
        return {
            "revenue": revenue,
            "orders": len(orders),
            "average_order_value": revenue / len(orders) if orders else 0.0,
            "customers": {o.customer_id for o in orders},
            "visitors": visitors,
            "purchases": purchases,
            "conversion_rate": ratio(purchases, visitors),
        }


class IntelligenceTracker(BaseTracker):
    """
    Business metrics over the other spreadsheets.

    ``store`` is the business-intelligence spreadsheet; the source stores
    are only ever read.
    """

    def __init__(
        self,
        store: TabularStore,
        orders_store: TabularStore,
        inventory_store: TabularStore,
        support_store: TabularStore,
        analytics_store: TabularStore,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None,
    ):
        super().__init__(store, clock, locks)
        self.orders_store = orders_store
        self.inventory_store = inventory_store
        self.support_store = support_store
        self.analytics_store = analytics_store

    async def load(self) -> Dataset:
        return Dataset(
            orders=[row_to_order(row) for row in await self.read_rows(ORDERS, self.orders_store)],
            items=await self.read_rows(ORDER_ITEMS, self.orders_store),
            products=[row_to_product(row) for row in await self.read_rows(PRODUCT_INVENTORY, self.inventory_store)],
            tickets=[row_to_ticket(row) for row in await self.read_rows(SUPPORT_TICKETS, self.support_store)],
            activities=await self.read_rows(USER_ACTIVITIES, self.analytics_store),
            journeys=await self.read_rows(USER_JOURNEYS, self.analytics_store),
            alerts=await self.read_rows(INVENTORY_ALERTS, self.inventory_store),
        )

    # =========================================================================
    # DASHBOARD TABLES
    # =========================================================================

    async def update_kpi_dashboard(self, day: Optional[date] = None, data: Optional[Dataset] = None) -> Dict[str, Any]:
        day = day or self.today()
        data = data or await self.load()
        totals = data.period_totals(day, day)

        cart_journeys = [
            row for row in data.journeys
            if _day(row[2]) == day and to_int(row[8]) > 0
        ]
        abandoned = sum(1 for row in cart_journeys if to_int(row[10]) == 0)
        returned = sum(1 for o in data.orders if o.status in (OrderStatus.RETURNED, OrderStatus.REFUNDED))
        billable = [o for o in data.orders if o.status != OrderStatus.CANCELLED]
        all_customers = {o.customer_id for o in billable}
        lifetime_value = sum(o.total_amount for o in billable) / len(all_customers) if all_customers else 0.0
        satisfaction = mean(t.satisfaction_score for t in data.tickets if t.satisfaction_score is not None)

        firsts = data.first_order_dates()
        new_customers = sum(1 for c in totals["customers"] if firsts.get(c) == day)
        returning_customers = len(totals["customers"]) - new_customers

        kpis = {
            "date": format_date(day),
            "total_revenue": totals["revenue"],
            "total_orders": totals["orders"],
            "average_order_value": totals["average_order_value"],
            "conversion_rate": totals["conversion_rate"],
            "customer_lifetime_value": lifetime_value,
            "cart_abandonment_rate": ratio(abandoned, len(cart_journeys)),
            "return_rate": ratio(returned, len(data.orders)),
            "customer_satisfaction": satisfaction,
            "website_visitors": totals["visitors"],
            "new_customers": new_customers,
            "returning_customers": returning_customers,
        }
        await self.upsert_by_date(KPI_DASHBOARD, day, [
            kpis["date"],
            money(kpis["total_revenue"]),
            kpis["total_orders"],
            money(kpis["average_order_value"]),
            money(kpis["conversion_rate"]),
            "",
            money(lifetime_value),
            "",
            money(kpis["cart_abandonment_rate"]),
            money(kpis["return_rate"]),
            money(satisfaction),
            "",
            kpis["website_visitors"],
            new_customers,
            returning_customers,
        ])
        logger.info("KPI dashboard updated", date=kpis["date"], revenue=kpis["total_revenue"])
        return kpis

    async def update_product_performance(self, day: Optional[date] = None, data: Optional[Dataset] = None) -> int:
        day = day or self.today()
        day_str = format_date(day)
        data = data or await self.load()

        activities = pl.DataFrame(
            {
                "product_id": [row[4] for row in data.activities_between(day, day)],
                "activity_type": [row[2] for row in data.activities_between(day, day)],
            },
            schema={"product_id": pl.Utf8, "activity_type": pl.Utf8},
        ).filter(pl.col("product_id") != "")
        engagement = activities.group_by("product_id").agg(
            (pl.col("activity_type") == ActivityType.PRODUCT_VIEW.value).sum().alias("views"),
            (pl.col("activity_type") == ActivityType.ADD_TO_CART.value).sum().alias("add_to_cart"),
        )

        returned_orders = {
            o.id for o in data.orders if o.status in (OrderStatus.RETURNED, OrderStatus.REFUNDED)
        }
        day_items = data.items_between(day, day)
        items = pl.DataFrame(
            {
                "product_id": [row[1] for row in day_items],
                "quantity": [to_int(row[4]) for row in day_items],
                "revenue": [to_float(row[6]) for row in day_items],
                "returned": [row[0] in returned_orders for row in day_items],
            },
            schema={"product_id": pl.Utf8, "quantity": pl.Int64, "revenue": pl.Float64, "returned": pl.Boolean},
        )
        sales = items.group_by("product_id").agg(
            pl.col("quantity").sum().alias("purchases"),
            pl.col("revenue").sum().alias("revenue"),
            pl.col("quantity").filter(pl.col("returned")).sum().alias("returned"),
        )

        catalog = {p.product_id: p for p in data.products}
        turnover = {row[0]: row[17] for row in await self.read_rows(PRODUCT_INVENTORY, self.inventory_store)}
        stats: Dict[str, Dict[str, Any]] = {}
        for record in engagement.iter_rows(named=True):
            stats.setdefault(record["product_id"], {}).update(record)
        for record in sales.iter_rows(named=True):
            stats.setdefault(record["product_id"], {}).update(record)

        rows = []
        for product_id in sorted(set(catalog) | set(stats)):
            product = catalog.get(product_id)
            stat = stats.get(product_id, {})
            views = stat.get("views") or 0
            purchases = stat.get("purchases") or 0
            selling = product.selling_price if product else 0.0
            cost = product.cost_price if product else 0.0
            rows.append([
                product_id,
                product.product_name if product else "",
                product.category if product else "",
                product.brand if product else "",
                views,
                stat.get("add_to_cart") or 0,
                purchases,
                money(stat.get("revenue") or 0.0),
                money(ratio(purchases, views)),
                money(ratio(stat.get("returned") or 0, purchases)),
                "",
                "",
                turnover.get(product_id, ""),
                money(ratio(selling - cost, selling)),
                day_str,
            ])

        written = await self.rewrite(PRODUCT_PERFORMANCE, rows, keep=lambda row: row[14] != day_str)
        logger.info("Product performance updated", date=day_str, products=written)
        return written

    async def update_customer_segments(self, day: Optional[date] = None, data: Optional[Dataset] = None) -> int:
        """
        Group customers into VIP, Returning and New.

        VIP is three or more orders or at least 500 in revenue; churned
        customers have not ordered in the last ninety days.
        """
        day = day or self.today()
        day_str = format_date(day)
        data = data or await self.load()
        billable = [o for o in data.orders if o.status != OrderStatus.CANCELLED]
        cutoff = datetime.combine(day, datetime.min.time()) - timedelta(days=CHURN_DAYS)

        orders = pl.DataFrame(
            {
                "order_id": [o.id for o in billable],
                "customer_id": [o.customer_id for o in billable],
                "amount": [o.total_amount for o in billable],
                "created_at": [o.created_at for o in billable],
            },
            schema={"order_id": pl.Utf8, "customer_id": pl.Utf8, "amount": pl.Float64, "created_at": pl.Datetime},
        )
        customers = (
            orders.group_by("customer_id")
            .agg(
                pl.col("order_id").count().alias("orders"),
                pl.col("amount").sum().alias("revenue"),
                pl.col("created_at").max().alias("last_order"),
            )
            .with_columns(
                pl.when((pl.col("orders") >= VIP_MIN_ORDERS) | (pl.col("revenue") >= VIP_MIN_REVENUE))
                .then(pl.lit("VIP"))
                .when(pl.col("orders") == 2)
                .then(pl.lit("Returning"))
                .otherwise(pl.lit("New"))
                .alias("segment"),
                (pl.col("last_order") < cutoff).alias("churned"),
            )
        )
        segments = {
            record["segment"]: record
            for record in customers.group_by("segment").agg(
                pl.col("customer_id").count().alias("customers"),
                pl.col("orders").sum().alias("orders"),
                pl.col("revenue").sum().alias("revenue"),
                pl.col("churned").sum().alias("churned"),
            ).iter_rows(named=True)
        }

        items = pl.DataFrame(
            {
                "order_id": [row[0] for row in data.items],
                "category": [row[7] for row in data.items],
                "quantity": [to_int(row[4]) for row in data.items],
            },
            schema={"order_id": pl.Utf8, "category": pl.Utf8, "quantity": pl.Int64},
        ).filter(pl.col("category") != "")
        preferred: Dict[str, List[str]] = {}
        for record in (
            items.join(orders.select("order_id", "customer_id"), on="order_id")
            .join(customers.select("customer_id", "segment"), on="customer_id")
            .group_by(["segment", "category"])
            .agg(pl.col("quantity").sum().alias("units"))
            .sort(["segment", "units", "category"], descending=[False, True, False])
            .iter_rows(named=True)
        ):
            preferred.setdefault(record["segment"], [])
            if len(preferred[record["segment"]]) < 3:
                preferred[record["segment"]].append(record["category"])

        members: Dict[str, Set[str]] = {}
        for record in customers.select("customer_id", "segment").iter_rows(named=True):
            members.setdefault(record["segment"], set()).add(record["customer_id"])

        total_revenue = sum(record["revenue"] for record in segments.values())
        rows = []
        for name in SEGMENT_ORDER:
            record = segments.get(name)
            if record is None:
                continue
            count = record["customers"]
            sessions = [to_int(row[11]) for row in data.journeys if row[0] in members.get(name, set())]
            rows.append([
                name,
                count,
                money(record["revenue"] / record["orders"] if record["orders"] else 0.0),
                money(record["orders"] / count if count else 0.0),
                money(record["revenue"] / count if count else 0.0),
                money(ratio(record["churned"], count)),
                money(ratio(record["revenue"], total_revenue)),
                ", ".join(preferred.get(name, [])),
                money(mean(sessions)),
                day_str,
            ])

        written = await self.rewrite(CUSTOMER_SEGMENTS, rows, keep=lambda row: row[9] != day_str)
        logger.info("Customer segments updated", date=day_str, segments=written)
        return written

    async def update_financial_summary(self, day: Optional[date] = None, data: Optional[Dataset] = None) -> Dict[str, Any]:
        day = day or self.today()
        data = data or await self.load()
        orders = [o for o in data.orders_between(day, day) if o.status != OrderStatus.CANCELLED]
        gross_revenue = sum(o.total_amount for o in orders)
        refunds = sum(o.total_amount for o in orders if o.status == OrderStatus.REFUNDED)
        net_revenue = gross_revenue - refunds

        billable_ids = {o.id for o in orders}
        cost = {p.product_id: p.cost_price for p in data.products}
        cogs = sum(
            to_int(row[4]) * cost.get(row[1], 0.0)
            for row in data.items_between(day, day)
            if row[0] in billable_ids
        )
        gross_profit = net_revenue - cogs

        summary = {
            "date": format_date(day),
            "gross_revenue": gross_revenue,
            "net_revenue": net_revenue,
            "cost_of_goods_sold": cogs,
            "gross_profit": gross_profit,
            "gross_profit_margin": ratio(gross_profit, net_revenue),
            "refunds": refunds,
        }
        await self.upsert_by_date(FINANCIAL_SUMMARY, day, [
            summary["date"],
            money(gross_revenue),
            money(net_revenue),
            money(cogs),
            money(gross_profit),
            money(summary["gross_profit_margin"]),
            "",
            "",
            "",
            money(refunds),
            "",
            "",
            "",
        ])
        logger.info("Financial summary updated", date=summary["date"], net_revenue=net_revenue)
        return summary

    async def update_growth_metrics(self, day: Optional[date] = None, data: Optional[Dataset] = None) -> Dict[str, Any]:
        """Day-over-day growth, plus trailing-30-day revenue against the 30 days before"""
        day = day or self.today()
        data = data or await self.load()
        current = data.period_totals(day, day)
        previous = data.period_totals(day - timedelta(days=1), day - timedelta(days=1))
        this_month = data.period_totals(day - timedelta(days=29), day)
        last_month = data.period_totals(day - timedelta(days=59), day - timedelta(days=30))

        firsts = data.first_order_dates()
        returning = sum(1 for c in current["customers"] if firsts.get(c, day) < day)

        metrics = {
            "date": format_date(day),
            "revenue_growth": growth(current["revenue"], previous["revenue"]),
            "order_growth": growth(current["orders"], previous["orders"]),
            "customer_growth": growth(len(current["customers"]), len(previous["customers"])),
            "average_order_value_growth": growth(current["average_order_value"], previous["average_order_value"]),
            "conversion_rate_growth": growth(current["conversion_rate"], previous["conversion_rate"]),
            "month_over_month_growth": growth(this_month["revenue"], last_month["revenue"]),
            "customer_retention_rate": ratio(returning, len(current["customers"])),
        }
        await self.upsert_by_date(GROWTH_METRICS, day, [
            metrics["date"],
            money(metrics["revenue_growth"]),
            money(metrics["order_growth"]),
            money(metrics["customer_growth"]),
            money(metrics["average_order_value_growth"]),
            money(metrics["conversion_rate_growth"]),
            money(metrics["month_over_month_growth"]),
            "",
            money(metrics["customer_retention_rate"]),
            "",
            "",
        ])
        logger.info("Growth metrics updated", date=metrics["date"])
        return metrics

    async def sync_business_intelligence(self, day: Optional[date] = None) -> SyncResult:
        result = SyncResult()
        day = day or self.today()
        try:
            data = await self.load()
        except TrackingError as e:
            result.errors.append(f"Source load: {e}")
            return result

        result.records_processed = len(data.orders)
        for name, step in (
            ("KPI dashboard", self.update_kpi_dashboard),
            ("Product performance", self.update_product_performance),
            ("Customer segments", self.update_customer_segments),
            ("Financial summary", self.update_financial_summary),
            ("Growth metrics", self.update_growth_metrics),
        ):
            try:
                await step(day, data)
                result.records_updated += 1
            except TrackingError as e:
                result.errors.append(f"{name}: {e}")
                logger.warning("BI update failed", step=name, error=str(e))

        logger.info("Business intelligence sync completed", date=format_date(day), errors=len(result.errors))
        return result

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def generate_business_report(
        self,
        start: date,
        end: date,
        data: Optional[Dataset] = None,
    ) -> Dict[str, Any]:
        data = data or await self.load()
        totals = data.period_totals(start, end)

        by_product: Dict[str, Dict[str, Any]] = {}
        for row in data.items_between(start, end):
            entry = by_product.setdefault(row[1], {"product_id": row[1], "product_name": row[2], "quantity": 0, "revenue": 0.0})
            entry["quantity"] += to_int(row[4])
            entry["revenue"] += to_float(row[6])
        top_products = sorted(by_product.values(), key=lambda p: p["revenue"], reverse=True)[:TOP_PRODUCTS]

        tickets = data.tickets_between(start, end)
        alerts_raised = [row for row in data.alerts if start <= (_day(row[8]) or date.min) <= end]

        return {
            "period": f"{format_date(start)} to {format_date(end)}",
            "revenue": round(totals["revenue"], 2),
            "orders": totals["orders"],
            "average_order_value": round(totals["average_order_value"], 2),
            "customers": len(totals["customers"]),
            "visitors": totals["visitors"],
            "conversion_rate": round(totals["conversion_rate"], 2),
            "top_products": [
                {**p, "revenue": round(p["revenue"], 2)} for p in top_products
            ],
            "tickets_created": len(tickets),
            "tickets_resolved": sum(
                1 for t in tickets if t.status in (TicketStatus.RESOLVED, TicketStatus.CLOSED)
            ),
            "customer_satisfaction": round(
                mean(t.satisfaction_score for t in tickets if t.satisfaction_score is not None), 2
            ),
            "alerts_raised": len(alerts_raised),
            "active_alerts": sum(1 for row in data.alerts if row[7] == AlertStatus.ACTIVE.value),
        }

    async def daily_report(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        report = await self.generate_business_report(day, day)
        report["date"] = format_date(day)
        return report

    async def weekly_report(self, end: Optional[date] = None) -> Dict[str, Any]:
        """This week's business report with trends against the previous week and recommendations"""
        end = end or self.today()
        data = await self.load()
        current = await self.generate_business_report(end - timedelta(days=6), end, data)
        previous = await self.generate_business_report(end - timedelta(days=13), end - timedelta(days=7), data)

        trends = {
            "revenue_growth": round(growth(current["revenue"], previous["revenue"]), 2),
            "order_growth": round(growth(current["orders"], previous["orders"]), 2),
            "average_order_value_growth": round(
                growth(current["average_order_value"], previous["average_order_value"]), 2
            ),
            "visitor_growth": round(growth(current["visitors"], previous["visitors"]), 2),
        }
        return {**current, "trends": trends, "recommendations": recommendations(current, trends)}


def recommendations(report: Dict[str, Any], trends: Dict[str, float]) -> List[str]:
    advice = []
    if trends["revenue_growth"] < 0:
        advice.append(
            f"Revenue fell {abs(trends['revenue_growth']):.2f}% week over week; review pricing and promotions."
        )
    if report["active_alerts"]:
        advice.append(f"{report['active_alerts']} stock alerts are active; review reorder schedules.")
    if report["visitors"] and report["conversion_rate"] < 2:
        advice.append("Conversion rate is below 2%; review the checkout funnel.")
    if report["tickets_created"] and report["customer_satisfaction"] and report["customer_satisfaction"] < 4:
        advice.append(
            f"Customer satisfaction averaged {report['customer_satisfaction']:.2f}; review support quality."
        )
    return advice or ["Performance is stable; no action required."]

"""
Unit Tests for the Business Intelligence Tracker
"""
from datetime import date

import pytest

from commerce_tracking.store.schemas import (
    CUSTOMER_SEGMENTS,
    FINANCIAL_SUMMARY,
    GROWTH_METRICS,
    KPI_DASHBOARD,
    PRODUCT_PERFORMANCE,
)
from commerce_tracking.tracking.intelligence import growth, recommendations
from commerce_tracking.tracking.models import Order, ProductInventory

DAY = date(2024, 3, 15)


def order(order_id: str, customer_id: str, amount: float, created: str, status: str = "delivered", **extra) -> Order:
    return Order.model_validate({
        "id": order_id,
        "customerId": customer_id,
        "status": status,
        "totalAmount": amount,
        "createdAt": created,
        "updatedAt": created,
        **extra,
    })


@pytest.fixture
async def seeded(order_tracker, inventory_tracker, journey_tracker, sample_order_payload):
    """Two days of orders, a small catalog and some storefront traffic"""
    await order_tracker.track_order(Order.model_validate(sample_order_payload))
    await order_tracker.track_order(order("ORD-1002", "CUST-2", 50.5, "2024-03-15T10:00:00Z", status="cancelled"))
    await order_tracker.track_order(order("ORD-0900", "CUST-1", 100.0, "2024-03-14T10:00:00Z"))

    for product_id, name, cost, price in (("P-1", "Kettle", 20.0, 49.75), ("P-2", "Mug", 10.0, 50.0)):
        await inventory_tracker.update_product_inventory(ProductInventory(
            product_id=product_id,
            product_name=name,
            category="Kitchen",
            brand="Acme",
            current_stock=40,
            cost_price=cost,
            selling_price=price,
        ))

    await journey_tracker.track_product_view("U1", "S1", "P-1")
    await journey_tracker.track_purchase("U1", "S1", "ORD-1001", 149.5, ["P-1", "P-2"])
    await journey_tracker.track_product_view("U2", "S2", "P-1")
    await journey_tracker.track_cart_action("U2", "S2", "P-1", "add", value=49.75)


class TestHelpers:
    """Tests for growth and recommendations"""

    def test_growth(self):
        """Percentage change with a zero baseline guard"""
        assert growth(150, 100) == 50.0
        assert growth(50, 100) == -50.0
        assert growth(5, 0) == 0.0

    def test_stable_recommendation(self):
        """Healthy numbers give the stable message"""
        report = {"active_alerts": 0, "visitors": 100, "conversion_rate": 3.0,
                  "tickets_created": 0, "customer_satisfaction": 0}
        assert recommendations(report, {"revenue_growth": 5.0}) == ["Performance is stable; no action required."]

    def test_recommendations_flag_problems(self):
        """Falling revenue, alerts, weak conversion and low satisfaction each add advice"""
        report = {"active_alerts": 2, "visitors": 100, "conversion_rate": 1.0,
                  "tickets_created": 4, "customer_satisfaction": 3.5}
        advice = recommendations(report, {"revenue_growth": -12.5})
        assert len(advice) == 4
        assert advice[0].startswith("Revenue fell 12.50%")
        assert "2 stock alerts" in advice[1]


class TestDashboards:
    """Tests for the derived BI tables"""

    async def test_kpi_dashboard(self, intelligence_tracker, stores, seeded):
        """One KPI row per day built from every source workbook"""
        kpis = await intelligence_tracker.update_kpi_dashboard(DAY)

        assert kpis["total_revenue"] == 149.5
        assert kpis["conversion_rate"] == 50.0
        assert kpis["cart_abandonment_rate"] == 100.0
        assert kpis["returning_customers"] == 1
        assert stores["business_intelligence"].rows(KPI_DASHBOARD.name) == [[
            "2024-03-15", "149.50", "1", "149.50", "50.00", "", "249.50", "",
            "100.00", "0.00", "0.00", "", "2", "0", "1",
        ]]

    async def test_kpi_dashboard_upsert(self, intelligence_tracker, stores, seeded):
        """Recomputing the day overwrites its row"""
        await intelligence_tracker.update_kpi_dashboard(DAY)
        await intelligence_tracker.update_kpi_dashboard(DAY)
        assert len(stores["business_intelligence"].rows(KPI_DASHBOARD.name)) == 1

    async def test_product_performance(self, intelligence_tracker, stores, seeded):
        """Engagement, sales and margin per catalog product"""
        written = await intelligence_tracker.update_product_performance(DAY)

        assert written == 2
        kettle, mug = stores["business_intelligence"].rows(PRODUCT_PERFORMANCE.name)
        assert kettle[:4] == ["P-1", "Kettle", "Kitchen", "Acme"]
        assert kettle[4:10] == ["2", "1", "2", "99.50", "100.00", "0.00"]
        assert kettle[13:] == ["59.80", "2024-03-15"]
        assert mug[4:8] == ["0", "0", "1", "50.00"]
        assert mug[13] == "80.00"

    async def test_product_performance_keeps_other_days(self, intelligence_tracker, stores, seeded):
        """Rows for other dates survive a recompute"""
        await intelligence_tracker.update_product_performance(date(2024, 3, 14))
        await intelligence_tracker.update_product_performance(DAY)
        await intelligence_tracker.update_product_performance(DAY)

        dates = [row[14] for row in stores["business_intelligence"].rows(PRODUCT_PERFORMANCE.name)]
        assert dates == ["2024-03-14", "2024-03-14", "2024-03-15", "2024-03-15"]

    async def test_financial_summary(self, intelligence_tracker, stores, seeded):
        """Cancelled orders are excluded and COGS uses catalog cost"""
        summary = await intelligence_tracker.update_financial_summary(DAY)

        assert summary["cost_of_goods_sold"] == 50.0
        row = stores["business_intelligence"].rows(FINANCIAL_SUMMARY.name)[0]
        assert row[:6] == ["2024-03-15", "149.50", "149.50", "50.00", "99.50", "66.56"]
        assert row[9] == "0.00"

    async def test_growth_metrics(self, intelligence_tracker, stores, seeded):
        """Day over day against the 14th"""
        metrics = await intelligence_tracker.update_growth_metrics(DAY)

        assert metrics["revenue_growth"] == pytest.approx(49.5)
        assert metrics["customer_retention_rate"] == 100.0
        row = stores["business_intelligence"].rows(GROWTH_METRICS.name)[0]
        assert row == ["2024-03-15", "49.50", "0.00", "0.00", "49.50", "0.00", "0.00", "", "100.00"]


class TestCustomerSegments:
    """Tests for customer segmentation"""

    async def test_segments(self, intelligence_tracker, order_tracker, stores, sample_order_payload):
        """VIP by revenue, returning by repeat orders, churned by inactivity"""
        await order_tracker.track_order(Order.model_validate(sample_order_payload))
        await order_tracker.track_order(order("ORD-0900", "CUST-1", 100.0, "2024-03-14T10:00:00Z"))
        await order_tracker.track_order(order("ORD-0500", "CUST-2", 30.0, "2023-10-01T10:00:00Z"))
        await order_tracker.track_order(order("ORD-1003", "CUST-3", 600.0, "2024-03-15T11:00:00Z"))

        written = await intelligence_tracker.update_customer_segments(DAY)

        assert written == 3
        vip, returning, new = stores["business_intelligence"].rows(CUSTOMER_SEGMENTS.name)
        assert vip[:7] == ["VIP", "1", "600.00", "1.00", "600.00", "0.00", "68.22"]
        assert returning[:8] == ["Returning", "1", "124.75", "2.00", "249.50", "0.00", "28.37", "Kitchen"]
        assert new[:7] == ["New", "1", "30.00", "1.00", "30.00", "100.00", "3.41"]
        assert new[9] == "2024-03-15"

    async def test_no_orders(self, intelligence_tracker, stores):
        """Without orders there are no segments"""
        assert await intelligence_tracker.update_customer_segments(DAY) == 0
        assert stores["business_intelligence"].rows(CUSTOMER_SEGMENTS.name) == []


class TestSync:
    """Tests for the combined BI sync"""

    async def test_sync_business_intelligence(self, intelligence_tracker, stores, seeded):
        """All five tables are refreshed"""
        result = await intelligence_tracker.sync_business_intelligence(DAY)

        assert result.success
        assert result.records_processed == 3
        assert result.records_updated == 5
        for table in (KPI_DASHBOARD, PRODUCT_PERFORMANCE, CUSTOMER_SEGMENTS, FINANCIAL_SUMMARY, GROWTH_METRICS):
            assert stores["business_intelligence"].rows(table.name), table.name

    async def test_sync_reports_missing_source(self, stores, clock):
        """An unreadable source workbook fails the run without raising"""
        from commerce_tracking.store import InMemoryStore
        from commerce_tracking.tracking.intelligence import IntelligenceTracker

        tracker = IntelligenceTracker(
            stores["business_intelligence"],
            orders_store=InMemoryStore("empty"),
            inventory_store=stores["inventory"],
            support_store=stores["support"],
            analytics_store=stores["analytics"],
            clock=clock,
        )
        result = await tracker.sync_business_intelligence(DAY)

        assert not result.success
        assert result.errors[0].startswith("Source load")


class TestReports:
    """Tests for the e-mailed report payloads"""

    async def test_business_report(self, intelligence_tracker, seeded):
        """Period totals and top products by revenue"""
        report = await intelligence_tracker.generate_business_report(date(2024, 3, 14), DAY)

        assert report["period"] == "2024-03-14 to 2024-03-15"
        assert report["revenue"] == 249.5
        assert report["orders"] == 2
        assert report["customers"] == 1
        assert [p["product_name"] for p in report["top_products"]] == ["Kettle", "Mug"]
        assert report["top_products"][0]["quantity"] == 2
        assert report["tickets_created"] == 0
        assert report["active_alerts"] == 0

    async def test_daily_report(self, intelligence_tracker, seeded):
        """The daily report covers the given day"""
        report = await intelligence_tracker.daily_report(DAY)

        assert report["date"] == "2024-03-15"
        assert report["revenue"] == 149.5
        assert report["visitors"] == 2
        assert report["conversion_rate"] == 50.0

    async def test_weekly_report_trends(self, intelligence_tracker, order_tracker, seeded):
        """Trends compare against the previous seven days"""
        await order_tracker.track_order(order("ORD-0800", "CUST-9", 500.0, "2024-03-05T10:00:00Z"))

        report = await intelligence_tracker.weekly_report(DAY)

        assert report["period"] == "2024-03-09 to 2024-03-15"
        assert report["revenue"] == 249.5
        assert report["trends"]["revenue_growth"] == -50.1
        assert report["trends"]["order_growth"] == 100.0
        assert report["recommendations"][0].startswith("Revenue fell 50.10%")

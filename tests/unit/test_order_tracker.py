"""
Unit Tests for the Order Tracker
"""
import asyncio
from datetime import date, datetime, timedelta

import pytest

from commerce_tracking.errors import NotFoundError
from commerce_tracking.store.schemas import DAILY_SUMMARY, ORDER_ITEMS, ORDERS, SHIPPING_UPDATES, STATUS_HISTORY
from commerce_tracking.tracking.models import Order, OrderStatus, StatusMetadata
from commerce_tracking.tracking.orders import order_to_row, row_to_order


@pytest.fixture
def order(sample_order_payload) -> Order:
    return Order.model_validate(sample_order_payload)


class TestOrderRows:
    """Tests for order row mapping"""

    def test_row_layout(self, order):
        """Money is two-decimal, items are summarized"""
        row = order_to_row(order)
        assert len(row) == ORDERS.width
        assert row[0] == "ORD-1001"
        assert row[4] == "pending"
        assert row[5] == "149.50"
        assert row[13] == 3
        assert row[14] == "Kettle (2); Mug (1)"
        assert row[15] == "1 Main St, London, UK"
        assert row[17] == "2024-03-15 09:00:00"

    def test_pending_order_has_no_processing_time(self, order):
        """Processing hours are blank until the order leaves pending"""
        assert order_to_row(order)[19] == ""

    def test_processing_time_after_status_change(self, order):
        """Hours between creation and last update"""
        moved = order.model_copy(update={"status": OrderStatus.CONFIRMED, "updated_at": datetime(2024, 3, 15, 12, 30)})
        assert order_to_row(moved)[19] == "3.50"

    def test_round_trip_keeps_core_fields(self, order):
        """Rows read back into an equivalent order"""
        restored = row_to_order(ORDERS.pad([str(v) for v in order_to_row(order)]))
        assert restored.id == order.id
        assert restored.status == OrderStatus.PENDING
        assert restored.total_amount == 149.5
        assert restored.item_count == 3

    def test_unknown_status_reads_as_pending(self):
        """Garbage in the status cell does not break reads"""
        row = ORDERS.pad(["ORD-1", "", "", "", "lost"])
        assert row_to_order(row).status == OrderStatus.PENDING


class TestTrackOrder:
    """Tests for order upserts"""

    async def test_new_order(self, order_tracker, stores, order):
        """First sighting writes the order, items and a creation entry"""
        added = await order_tracker.track_order(order)

        store = stores["orders"]
        assert added is True
        assert len(store.rows(ORDERS.name)) == 1
        assert len(store.rows(ORDER_ITEMS.name)) == 2
        history = store.rows(STATUS_HISTORY.name)
        assert history == [["ORD-1001", "", "pending", "System", "2024-03-15 12:00:00", "Order created"]]

    async def test_redelivery_is_idempotent(self, order_tracker, stores, order):
        """Tracking the same order twice leaves one row and one creation entry"""
        await order_tracker.track_order(order)
        added = await order_tracker.track_order(order)

        store = stores["orders"]
        assert added is False
        assert len(store.rows(ORDERS.name)) == 1
        assert len(store.rows(ORDER_ITEMS.name)) == 2
        assert len(store.rows(STATUS_HISTORY.name)) == 1

    async def test_status_change_on_retrack(self, order_tracker, stores, order, clock):
        """A changed status logs exactly one transition"""
        await order_tracker.track_order(order)
        clock.advance(hours=2)
        await order_tracker.track_order(order.model_copy(update={"status": OrderStatus.CONFIRMED}))

        history = stores["orders"].rows(STATUS_HISTORY.name)
        assert len(history) == 2
        assert history[1][1:3] == ["pending", "confirmed"]
        assert history[1][5] == "Order updated"

    async def test_retrack_without_items_keeps_summary(self, order_tracker, order):
        """Partial payloads do not blank the items columns"""
        await order_tracker.track_order(order)
        await order_tracker.track_order(order.model_copy(update={"items": []}))

        stored = await order_tracker.get_order("ORD-1001")
        assert stored.items_count == 3
        assert stored.items_summary == "Kettle (2); Mug (1)"

    async def test_concurrent_first_sighting(self, order_tracker, stores, order):
        """Concurrent deliveries of a new order still produce a single row"""
        results = await asyncio.gather(*(order_tracker.track_order(order) for _ in range(5)))

        assert results.count(True) == 1
        assert len(stores["orders"].rows(ORDERS.name)) == 1
        assert len(stores["orders"].rows(STATUS_HISTORY.name)) == 1


class TestUpdateOrderStatus:
    """Tests for status transitions"""

    async def test_unknown_order(self, order_tracker):
        """Updating a missing order raises NotFoundError"""
        with pytest.raises(NotFoundError):
            await order_tracker.update_order_status("ORD-404", OrderStatus.SHIPPED)

    async def test_shipped_writes_shipping_update(self, order_tracker, stores, order, clock):
        """Shipping metadata lands on the order and in Shipping Updates"""
        await order_tracker.track_order(order)
        clock.advance(hours=1)

        updated = await order_tracker.update_order_status(
            "ORD-1001",
            OrderStatus.SHIPPED,
            StatusMetadata(tracking_number="1Z999", carrier="UPS", estimated_delivery=datetime(2024, 3, 20)),
        )

        assert updated.status == OrderStatus.SHIPPED
        row = stores["orders"].rows(ORDERS.name)[0]
        assert row[4] == "shipped"
        assert row[9:12] == ["1Z999", "UPS", "2024-03-20"]
        shipping = stores["orders"].rows(SHIPPING_UPDATES.name)
        assert shipping == [["ORD-1001", "1Z999", "UPS", "Shipped", "", "2024-03-15 13:00:00", "2024-03-20"]]

    async def test_history_records_duration(self, order_tracker, stores, order, clock):
        """Duration is the hours spent in the previous status"""
        await order_tracker.track_order(order)
        clock.advance(hours=3)

        await order_tracker.update_order_status("ORD-1001", "confirmed", StatusMetadata(notes="Paid"))

        history = stores["orders"].rows(STATUS_HISTORY.name)[-1]
        assert history[1:4] == ["pending", "confirmed", "System"]
        assert history[5] == "Paid"
        # order.updated_at is 09:00, clock is 15:00
        assert history[6] == "6.00"

    @pytest.mark.parametrize("hours, expected", [(0, "0.00"), (1.5, "1.50"), (25, "25.00")])
    async def test_duration_in_previous_status(self, order_tracker, stores, order, clock, hours, expected):
        """Hours since the order's last update, two decimals"""
        await order_tracker.track_order(order)
        clock.now = order.updated_at + timedelta(hours=hours)

        await order_tracker.update_order_status("ORD-1001", OrderStatus.CONFIRMED)

        assert stores["orders"].rows(STATUS_HISTORY.name)[-1][6] == expected

    async def test_status_without_tracking_writes_no_shipping_update(self, order_tracker, stores, order):
        """Out-for-delivery without a tracking number skips Shipping Updates"""
        await order_tracker.track_order(order)
        await order_tracker.update_order_status("ORD-1001", OrderStatus.OUT_FOR_DELIVERY)
        assert stores["orders"].rows(SHIPPING_UPDATES.name) == []

    async def test_delay_sends_alert(self, order_tracker, order, sender):
        """Delayed shipments e-mail the alert recipients"""
        await order_tracker.track_order(order)

        await order_tracker.update_order_status(
            "ORD-1001",
            OrderStatus.SHIPPED,
            StatusMetadata(tracking_number="1Z999", shipment_exception=True),
        )

        assert sender.subjects == ["[Commerce Tracking] Order Delay Alert - ORD-1001"]
        assert sender.messages[0]["To"] == "alerts@example.com"

    async def test_delay_alert_failure_does_not_fail_update(self, stores, settings, failing_sender, clock, order):
        """The write succeeds even when SMTP is down"""
        from commerce_tracking.notifications.email import NotificationDispatcher
        from commerce_tracking.tracking.orders import OrderTracker

        tracker = OrderTracker(stores["orders"], NotificationDispatcher(settings.email, failing_sender), clock=clock)
        await tracker.track_order(order)

        updated = await tracker.update_order_status("ORD-1001", "shipped", StatusMetadata(delay_days=2))
        assert updated.status == OrderStatus.SHIPPED


class TestDailySummary:
    """Tests for the daily order summary"""

    async def test_summary_counts_and_revenue(self, order_tracker, stores, order):
        """Counts by status and revenue for the creation date"""
        await order_tracker.track_order(order)
        await order_tracker.track_order(order.model_copy(update={
            "id": "ORD-1002", "status": OrderStatus.CANCELLED, "total_amount": 50.5,
        }))

        summary = await order_tracker.update_daily_summary(date(2024, 3, 15))

        assert summary["total_orders"] == 2
        assert summary["pending_orders"] == 1
        assert summary["cancelled_orders"] == 1
        assert summary["total_revenue"] == 200.0
        assert summary["on_time_delivery_rate"] == 100.0
        row = stores["orders"].rows(DAILY_SUMMARY.name)[0]
        assert row[0] == "2024-03-15"
        assert row[7:9] == ["200.00", "100.00"]

    async def test_recompute_overwrites_row(self, order_tracker, stores, order):
        """Recomputing a date keeps a single row"""
        await order_tracker.update_daily_summary(date(2024, 3, 15))
        await order_tracker.track_order(order)
        await order_tracker.update_daily_summary(date(2024, 3, 15))

        rows = stores["orders"].rows(DAILY_SUMMARY.name)
        assert len(rows) == 1
        assert rows[0][1] == "1"

    async def test_empty_day(self, order_tracker):
        """No orders gives zeros and a full on-time rate"""
        summary = await order_tracker.update_daily_summary(date(2024, 1, 1))
        assert summary["total_orders"] == 0
        assert summary["average_order_value"] == 0.0
        assert summary["on_time_delivery_rate"] == 100.0


class TestStrapiSync:
    """Tests for the CMS order resync"""

    async def test_sync_adds_and_updates(self, order_tracker, cms, order):
        """New CMS orders are added, known ones updated"""
        await order_tracker.track_order(order)
        cms.orders = [
            {"id": "ORD-1001", "status": "confirmed", "totalAmount": 149.5},
            {"id": 7, "attributes": {"status": "pending", "totalAmount": 20,
                                     "customer": {"data": {"id": 3, "attributes": {"email": "c@example.com"}}}}},
        ]

        result = await order_tracker.sync_orders_from_strapi()

        assert result.success
        assert result.records_processed == 2
        assert result.records_added == 1
        assert result.records_updated == 1
        assert (await order_tracker.get_order("7")).customer_email == "c@example.com"

    async def test_bad_entry_is_collected(self, order_tracker, cms):
        """One invalid entry does not stop the sync"""
        cms.orders = [{"status": "pending"}, {"id": "ORD-2"}]

        result = await order_tracker.sync_orders_from_strapi()

        assert result.records_processed == 2
        assert result.records_added == 1
        assert len(result.errors) == 1

    @pytest.mark.parametrize("items", [
        [{"price": 10.0, "quantity": "two"}],
        ["not-an-item"],
        [{"price": "free", "quantity": 1}],
    ])
    async def test_malformed_line_items_are_collected(self, order_tracker, cms, items):
        """An entry with unusable line items is reported and later entries still sync"""
        cms.orders = [{"id": 1, "items": items}, {"id": 2}]

        result = await order_tracker.sync_orders_from_strapi()

        assert result.records_processed == 2
        assert result.records_added == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Order 1")
        assert await order_tracker.get_order("2") is not None

    async def test_non_dict_entry_is_collected(self, order_tracker, cms):
        """A CMS entry that is not an object is reported like any other bad entry"""
        cms.orders = ["garbage", {"id": 2}]

        result = await order_tracker.sync_orders_from_strapi()

        assert result.records_added == 1
        assert result.errors[0].startswith("Order ?")

    async def test_numeric_strings_are_coerced(self, order_tracker, cms, stores):
        """Quantities and prices sent as strings still total correctly"""
        cms.orders = [{"id": 3, "items": [{"price": "10", "quantity": "2"}]}]

        result = await order_tracker.sync_orders_from_strapi()

        assert result.errors == []
        item = stores["orders"].rows(ORDER_ITEMS.name)[0]
        assert item[4:7] == ["2", "10.00", "20.00"]

    async def test_sync_without_cms(self, stores, clock):
        """A tracker without a CMS client reports an error"""
        from commerce_tracking.tracking.orders import OrderTracker

        result = await OrderTracker(stores["orders"], clock=clock).sync_orders_from_strapi()
        assert not result.success

    async def test_sync_refreshes_daily_summary(self, order_tracker, stores):
        """The sync ends by recomputing today's summary"""
        await order_tracker.sync_orders_from_strapi()
        assert stores["orders"].rows(DAILY_SUMMARY.name)[0][0] == "2024-03-15"

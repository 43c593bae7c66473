"""
Order Tracker

Projects orders into the Orders spreadsheet:

- ``Orders``: one row per order id, overwritten on every change
- ``Order Items``: line items, appended once when the order is first seen
- ``Status History``: one row per status transition
- ``Shipping Updates``: carrier events for shipped orders
- ``Daily Summary``: one recomputed row per calendar date
"""

from datetime import date
from typing import Any, Dict, List, Optional, Union

import structlog

from commerce_tracking.cms.client import StrapiClient
from commerce_tracking.cms.mapping import map_strapi_order
from commerce_tracking.coordination import KeyedLock
from commerce_tracking.errors import NotFoundError, TrackingError
from commerce_tracking.notifications.email import NotificationDispatcher
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.schemas import (
    DAILY_SUMMARY,
    ORDER_ITEMS,
    ORDERS,
    SHIPPING_UPDATES,
    STATUS_HISTORY,
)

from .base import BaseTracker, Clock
from .formatting import (
    format_date,
    format_timestamp,
    hours_between,
    mean,
    money,
    parse_timestamp,
    to_float,
    to_int,
    utcnow,
)
from .models import Address, Order, OrderStatus, StatusMetadata, SyncResult

logger = structlog.get_logger(__name__)

SHIPMENT_STATUSES = {
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
}


# =============================================================================
# ROW MAPPING
# =============================================================================

def items_summary(order: Order) -> str:
    if order.items:
        return "; ".join(f"{item.product_name} ({item.quantity})" for item in order.items)
    return order.items_summary


def order_to_row(order: Order) -> List[Any]:
    processing_hours = ""
    if order.status != OrderStatus.PENDING:
        processing_hours = money(hours_between(order.created_at, order.updated_at))

    shipping_days = ""
    if order.actual_delivery and order.status == OrderStatus.DELIVERED:
        shipping_days = money(hours_between(order.created_at, order.actual_delivery) / 24)

    return [
        order.id,
        order.customer_id,
        order.customer_name,
        order.customer_email,
        order.status.value,
        money(order.total_amount),
        order.currency,
        order.payment_method,
        order.shipping_method,
        order.tracking_number,
        order.carrier,
        format_date(order.estimated_delivery),
        format_date(order.actual_delivery),
        order.item_count,
        items_summary(order),
        order.shipping_address.one_line() if order.shipping_address else "",
        order.billing_address.one_line() if order.billing_address else "",
        format_timestamp(order.created_at),
        format_timestamp(order.updated_at),
        processing_hours,
        shipping_days,
        order.notes,
    ]


def row_to_order(row: List[str]) -> Order:
    created_at = parse_timestamp(row[17]) or utcnow()
    try:
        status = OrderStatus(row[4])
    except ValueError:
        status = OrderStatus.PENDING

    return Order(
        id=row[0],
        customer_id=row[1],
        customer_name=row[2],
        customer_email=row[3],
        status=status,
        total_amount=to_float(row[5]),
        currency=row[6] or "USD",
        payment_method=row[7],
        shipping_method=row[8],
        tracking_number=row[9],
        carrier=row[10],
        estimated_delivery=parse_timestamp(row[11]),
        actual_delivery=parse_timestamp(row[12]),
        items_count=to_int(row[13]),
        items_summary=row[14],
        shipping_address=Address(address1=row[15]) if row[15] else None,
        billing_address=Address(address1=row[16]) if row[16] else None,
        created_at=created_at,
        updated_at=parse_timestamp(row[18]) or created_at,
        notes=row[21],
    )


class OrderTracker(BaseTracker):
    """
    Order lifecycle tracking.

    Status transitions are not validated against the lifecycle: any status
    may follow any other, callers supply sensible sequences.
    """

    def __init__(
        self,
        store: TabularStore,
        notifier: Optional[NotificationDispatcher] = None,
        cms: Optional[StrapiClient] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None,
    ):
        super().__init__(store, clock, locks)
        self.notifier = notifier
        self.cms = cms

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self.find_by_key(ORDERS, order_id)
        return row_to_order(row) if row else None

    async def list_orders(self) -> List[Order]:
        return [row_to_order(row) for row in await self.read_rows(ORDERS)]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def track_order(self, order: Order) -> bool:
        """
        Upsert an order.

        The first time an order is seen its line items and a creation entry
        are written. Re-tracking overwrites the row and logs a transition
        only if the status actually changed, so redelivered events leave a
        single row and a single creation entry.

        Returns:
            True if the order was added, False if it already existed
        """
        now = self.clock()
        async with self.lock("order", order.id):
            found = await self.find(ORDERS, lambda row: row[0] == order.id)

            if found is None:
                await self.store.append_rows(ORDERS.name, [order_to_row(order)])
                if order.items:
                    await self.store.append_rows(ORDER_ITEMS.name, [
                        [
                            order.id,
                            item.product_id,
                            item.product_name,
                            item.sku,
                            item.quantity,
                            money(item.unit_price),
                            money(item.line_total),
                            item.category,
                            item.brand,
                            item.variant,
                            format_timestamp(order.created_at),
                        ]
                        for item in order.items
                    ])
                await self._log_status_change(order.id, None, order.status, "System", "Order created", now)
                logger.info("Order tracked", order_id=order.id, status=order.status.value, items=len(order.items))
                return True

            row_number, existing_row = found
            previous = row_to_order(existing_row)
            if not order.items and not order.items_summary:
                order = order.model_copy(update={
                    "items_count": previous.items_count,
                    "items_summary": previous.items_summary,
                })
            await self.store.update_range(ORDERS.row_range(row_number), [order_to_row(order)])

            if previous.status != order.status:
                await self._log_status_change(
                    order.id,
                    previous.status,
                    order.status,
                    "System",
                    "Order updated",
                    now,
                    duration=hours_between(previous.updated_at, now),
                )
            logger.info("Order updated", order_id=order.id, status=order.status.value)
            return False

    async def update_order_status(
        self,
        order_id: str,
        new_status: Union[OrderStatus, str],
        metadata: Optional[StatusMetadata] = None,
    ) -> Order:
        """
        Move an order to a new status.

        Raises:
            NotFoundError: no row exists for ``order_id``
        """
        new_status = OrderStatus(new_status)
        metadata = metadata or StatusMetadata()

        async with self.lock("order", order_id):
            found = await self.find(ORDERS, lambda row: row[0] == order_id)
            if found is None:
                raise NotFoundError("Order", order_id)

            row_number, row = found
            current = row_to_order(row)
            now = self.clock()
            duration = hours_between(current.updated_at, now)

            changes: Dict[str, Any] = {"status": new_status, "updated_at": now}
            for field in ("tracking_number", "carrier", "estimated_delivery", "actual_delivery", "notes"):
                value = getattr(metadata, field)
                if value:
                    changes[field] = value
            updated = current.model_copy(update=changes)

            await self.store.update_range(ORDERS.row_range(row_number), [order_to_row(updated)])
            await self._log_status_change(
                order_id,
                current.status,
                new_status,
                metadata.changed_by,
                metadata.notes or "",
                now,
                duration=duration,
            )

            if new_status in SHIPMENT_STATUSES and updated.tracking_number:
                await self.store.append_rows(SHIPPING_UPDATES.name, [[
                    order_id,
                    updated.tracking_number,
                    updated.carrier or "Unknown",
                    SHIPMENT_STATUSES[new_status],
                    metadata.location,
                    format_timestamp(now),
                    format_date(updated.estimated_delivery),
                    metadata.notes or "",
                ]])

        logger.info(
            "Order status updated",
            order_id=order_id,
            previous_status=current.status.value,
            new_status=new_status.value,
            duration_hours=duration,
        )

        if metadata.is_delayed and self.notifier is not None:
            await self.notifier.send_order_delay_alert(
                order_id,
                customer_email=updated.customer_email,
                tracking_number=updated.tracking_number,
                delay_reason=metadata.delay_reason or ("Shipment exception" if metadata.shipment_exception else f"Delayed {metadata.delay_days} day(s)"),
                estimated_delivery=updated.estimated_delivery,
            )
        return updated

    async def _log_status_change(
        self,
        order_id: str,
        previous: Optional[OrderStatus],
        new: OrderStatus,
        changed_by: str,
        notes: str,
        changed_at,
        duration: Optional[float] = None,
    ) -> None:
        await self.store.append_rows(STATUS_HISTORY.name, [[
            order_id,
            previous.value if previous else "",
            new.value,
            changed_by,
            format_timestamp(changed_at),
            notes,
            money(duration) if duration is not None else "",
        ]])

    # =========================================================================
    # AGGREGATES
    # =========================================================================

    async def update_daily_summary(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Recompute the Daily Summary row for ``day`` (default today) from the Orders table"""
        day = day or self.today()
        orders = [o for o in await self.list_orders() if o.created_at and o.created_at.date() == day]

        counts = {status: 0 for status in OrderStatus}
        for order in orders:
            counts[order.status] += 1

        revenue = sum(order.total_amount for order in orders)
        average_order_value = revenue / len(orders) if orders else 0.0

        fulfilled = [o for o in orders if o.status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED)]
        average_processing = mean(hours_between(o.created_at, o.updated_at) for o in fulfilled)

        deliveries = [
            o for o in orders
            if o.status == OrderStatus.DELIVERED and o.actual_delivery and o.estimated_delivery
        ]
        on_time = sum(1 for o in deliveries if o.actual_delivery.date() <= o.estimated_delivery.date())
        on_time_rate = on_time / len(deliveries) * 100 if deliveries else 100.0

        summary = {
            "date": day.isoformat(),
            "total_orders": len(orders),
            "pending_orders": counts[OrderStatus.PENDING],
            "processing_orders": counts[OrderStatus.PROCESSING],
            "shipped_orders": counts[OrderStatus.SHIPPED],
            "delivered_orders": counts[OrderStatus.DELIVERED],
            "cancelled_orders": counts[OrderStatus.CANCELLED],
            "total_revenue": round(revenue, 2),
            "average_order_value": round(average_order_value, 2),
            "average_processing_time": round(average_processing, 2),
            "on_time_delivery_rate": round(on_time_rate, 2),
        }
        await self.upsert_by_date(DAILY_SUMMARY, day, [
            summary["date"],
            summary["total_orders"],
            summary["pending_orders"],
            summary["processing_orders"],
            summary["shipped_orders"],
            summary["delivered_orders"],
            summary["cancelled_orders"],
            money(revenue),
            money(average_order_value),
            money(average_processing),
            money(on_time_rate),
        ])
        logger.info("Daily order summary updated", date=summary["date"], orders=len(orders))
        return summary

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_orders_from_strapi(self) -> SyncResult:
        """Resync every CMS order; item failures are collected, not raised"""
        result = SyncResult()
        if self.cms is None:
            result.errors.append("CMS client not configured")
            return result

        logger.info("Starting order sync from CMS")
        try:
            async for entry in self.cms.iter_orders():
                result.records_processed += 1
                order_id = entry.get("id", "?") if isinstance(entry, dict) else "?"
                try:
                    added = await self.track_order(map_strapi_order(entry))
                except Exception as e:
                    # One bad entry must not end the batch
                    result.errors.append(f"Order {order_id}: {e}")
                    logger.warning("Order sync failed", order_id=order_id, error=str(e), error_type=type(e).__name__)
                    continue
                if added:
                    result.records_added += 1
                else:
                    result.records_updated += 1
        except TrackingError as e:
            result.errors.append(f"CMS fetch failed: {e}")
            logger.error("Order fetch from CMS failed", error=str(e))

        try:
            await self.update_daily_summary()
        except TrackingError as e:
            result.errors.append(f"Daily summary: {e}")

        logger.info(
            "Order sync completed",
            processed=result.records_processed,
            added=result.records_added,
            updated=result.records_updated,
            errors=len(result.errors),
        )
        return result

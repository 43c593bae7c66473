"""
Inventory Tracker

Keeps ``Product Inventory`` as the single source of truth for stock levels,
records every change in the ``Stock Movements`` ledger, raises
``Inventory Alerts`` on threshold crossings and recomputes the supplier and
forecasting tables from the ledger.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import polars as pl
import structlog

from commerce_tracking.cms.client import StrapiClient
from commerce_tracking.cms.mapping import map_strapi_product
from commerce_tracking.coordination import KeyedLock
from commerce_tracking.errors import NotFoundError, TrackingError
from commerce_tracking.notifications.email import NotificationDispatcher
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.schemas import (
    INVENTORY_ALERTS,
    INVENTORY_FORECASTING,
    PRODUCT_INVENTORY,
    STOCK_MOVEMENTS,
    SUPPLIER_PERFORMANCE,
)

from .base import BaseTracker, Clock
from .formatting import (
    format_date,
    format_timestamp,
    generate_id,
    money,
    parse_timestamp,
    to_float,
    to_int,
)
from .models import (
    AlertStatus,
    AlertType,
    MovementType,
    ProductInventory,
    StockLevel,
    StockMovement,
    SyncResult,
)

logger = structlog.get_logger(__name__)

# Sentinel written when there are no sales to divide by
NO_SALES_DAYS = 999
SALES_WINDOW_DAYS = 30
TREND_WINDOW_DAYS = 7
SAFETY_STOCK_DAYS = 7
COVERAGE_DAYS = 30

_MOVEMENT_SCHEMA = {
    "product_id": pl.Utf8,
    "movement_type": pl.Utf8,
    "quantity": pl.Int64,
    "moved_at": pl.Datetime,
    "cost_impact": pl.Float64,
}


# =============================================================================
# ROW MAPPING
# =============================================================================

def product_to_row(product: ProductInventory, days_of_inventory: int, turnover_rate: float) -> List:
    return [
        product.product_id,
        product.product_name,
        product.sku,
        product.category,
        product.sub_category,
        product.brand,
        product.current_stock,
        product.low_stock_threshold,
        product.reorder_point,
        product.reorder_quantity,
        money(product.cost_price),
        money(product.selling_price),
        money(product.compare_at_price) if product.compare_at_price is not None else "",
        product.supplier,
        format_date(product.last_restocked),
        product.stock_status.value,
        days_of_inventory,
        money(turnover_rate),
    ]


def row_to_product(row: List[str]) -> ProductInventory:
    return ProductInventory(
        product_id=row[0],
        product_name=row[1],
        sku=row[2],
        category=row[3],
        sub_category=row[4],
        brand=row[5],
        current_stock=to_int(row[6]),
        low_stock_threshold=to_int(row[7], 10),
        reorder_point=to_int(row[8], 10),
        reorder_quantity=to_int(row[9], 50),
        cost_price=to_float(row[10]),
        selling_price=to_float(row[11]),
        compare_at_price=to_float(row[12]) if row[12] else None,
        supplier=row[13],
        last_restocked=parse_timestamp(row[14]),
    )


def movements_frame(rows: List[List[str]]) -> pl.DataFrame:
    """Stock Movements rows as a typed frame"""
    return pl.DataFrame(
        {
            "product_id": [row[0] for row in rows],
            "movement_type": [row[2] for row in rows],
            "quantity": [abs(to_int(row[3])) for row in rows],
            "moved_at": [parse_timestamp(row[10]) for row in rows],
            "cost_impact": [to_float(row[11]) for row in rows],
        },
        schema=_MOVEMENT_SCHEMA,
    )


def daily_sales(movements: pl.DataFrame, now: datetime, days: int) -> Dict[str, float]:
    """Average units sold per day over the trailing window, per product"""
    since = now - timedelta(days=days)
    sold = (
        movements
        .filter((pl.col("movement_type") == MovementType.SALE.value) & (pl.col("moved_at") >= since))
        .group_by("product_id")
        .agg(pl.col("quantity").sum().alias("units"))
    )
    return {row["product_id"]: row["units"] / days for row in sold.iter_rows(named=True)}


def alert_type_for(stock: int, threshold: int) -> Optional[AlertType]:
    if stock <= 0:
        return AlertType.OUT_OF_STOCK
    if stock <= threshold:
        return AlertType.LOW_STOCK
    return None


class InventoryTracker(BaseTracker):
    """
    Stock levels, movement ledger and alerts.

    Every stock write and its ledger entry happen under the product's lock,
    so a movement's new stock always matches the inventory row it produced.
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

    async def get_product(self, product_id: str) -> Optional[ProductInventory]:
        row = await self.find_by_key(PRODUCT_INVENTORY, product_id)
        return row_to_product(row) if row else None

    async def list_products(self) -> List[ProductInventory]:
        return [row_to_product(row) for row in await self.read_rows(PRODUCT_INVENTORY)]

    async def load_movements(self) -> pl.DataFrame:
        return movements_frame(await self.read_rows(STOCK_MOVEMENTS))

    # =========================================================================
    # WRITES
    # =========================================================================

    async def track_stock_movement(self, movement: StockMovement) -> StockLevel:
        """
        Apply a stock movement.

        Sales and adjustments subtract the absolute quantity, everything
        else adds it.

        Raises:
            NotFoundError: the product has no inventory row
        """
        now = self.clock()
        quantity = abs(movement.quantity)

        async with self.lock("product", movement.product_id):
            found = await self.find(PRODUCT_INVENTORY, lambda row: row[0] == movement.product_id)
            if found is None:
                raise NotFoundError("Product", movement.product_id)

            row_number, row = found
            product = row_to_product(row)
            previous_stock = product.current_stock
            if movement.movement_type.decreases_stock:
                new_stock = previous_stock - quantity
            else:
                new_stock = previous_stock + quantity

            changes = {"current_stock": new_stock}
            if movement.movement_type.replenishes:
                changes["last_restocked"] = now
            product = product.model_copy(update=changes)

            new_row = product_to_row(product, to_int(row[16], NO_SALES_DAYS), to_float(row[17]))
            await self.store.update_range(PRODUCT_INVENTORY.row_range(row_number), [new_row])
            await self.store.append_rows(STOCK_MOVEMENTS.name, [[
                movement.product_id,
                movement.sku or product.sku,
                movement.movement_type.value,
                quantity,
                previous_stock,
                new_stock,
                movement.reason,
                movement.order_id,
                movement.reference,
                movement.moved_by,
                format_timestamp(now),
                money(movement.cost_impact),
                movement.notes,
            ]])

        logger.info(
            "Stock movement tracked",
            product_id=movement.product_id,
            movement_type=movement.movement_type.value,
            previous_stock=previous_stock,
            new_stock=new_stock,
        )
        alert_id = await self.evaluate_alerts(product, now)
        return StockLevel(movement.product_id, previous_stock, new_stock, product.stock_status, alert_id)

    async def update_product_inventory(
        self,
        product: ProductInventory,
        sales: Optional[Dict[str, float]] = None,
    ) -> bool:
        """
        Upsert the full inventory row for a product.

        Args:
            product: Catalog and stock data
            sales: Precomputed average daily sales per product (read from
                the ledger when omitted)

        Returns:
            True if the product was added
        """
        now = self.clock()
        if sales is None:
            sales = daily_sales(await self.load_movements(), now, SALES_WINDOW_DAYS)

        average_daily = sales.get(product.product_id, 0.0)
        stock = product.current_stock
        days_of_inventory = round(stock / average_daily) if average_daily > 0 else NO_SALES_DAYS
        turnover_rate = average_daily * SALES_WINDOW_DAYS / stock if stock > 0 else 0.0

        async with self.lock("product", product.product_id):
            added = await self.upsert(
                PRODUCT_INVENTORY,
                product.product_id,
                product_to_row(product, days_of_inventory, turnover_rate),
            )

        logger.info(
            "Product inventory updated",
            product_id=product.product_id,
            stock=stock,
            status=product.stock_status.value,
            added=added,
        )
        await self.evaluate_alerts(product, now)
        return added

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def evaluate_alerts(self, product: ProductInventory, now: datetime) -> Optional[str]:
        """
        Raise or refresh the alert matching the product's stock level.

        An active alert of the same type for the product is updated in place
        instead of creating another one.

        Returns:
            The alert id, or None when stock is above the threshold
        """
        alert_type = alert_type_for(product.current_stock, product.low_stock_threshold)
        if alert_type is None:
            return None

        async with self.lock("alerts"):
            found = await self.find(
                INVENTORY_ALERTS,
                lambda row: (
                    row[1] == product.product_id
                    and row[6] == alert_type.value
                    and row[7] == AlertStatus.ACTIVE.value
                ),
            )
            if found is not None:
                row_number, row = found
                created_at = parse_timestamp(row[8]) or now
                days_low = (now - created_at).days
                lost_sales = 0.0
                if alert_type == AlertType.OUT_OF_STOCK and days_low > 0:
                    sales = daily_sales(await self.load_movements(), now, SALES_WINDOW_DAYS)
                    lost_sales = days_low * sales.get(product.product_id, 0.0) * product.selling_price
                row[4] = str(product.current_stock)
                row[10] = str(days_low)
                row[11] = money(lost_sales)
                await self.store.update_range(INVENTORY_ALERTS.row_range(row_number), [row])
                logger.info("Inventory alert refreshed", alert_id=row[0], product_id=product.product_id)
                return row[0]

            alert_id = generate_id("ALERT", now)
            await self.store.append_rows(INVENTORY_ALERTS.name, [[
                alert_id,
                product.product_id,
                product.product_name,
                product.sku,
                product.current_stock,
                product.low_stock_threshold,
                alert_type.value,
                AlertStatus.ACTIVE.value,
                format_timestamp(now),
                "",
                0,
                money(0),
            ]])

        logger.warning(
            "Inventory alert created",
            alert_id=alert_id,
            product_id=product.product_id,
            alert_type=alert_type.value,
            stock=product.current_stock,
        )
        if self.notifier is not None:
            await self.notifier.send_inventory_low_alert(
                product.product_id,
                product.product_name,
                product.current_stock,
                product.low_stock_threshold,
                sku=product.sku,
            )
        return alert_id

    async def resolve_stock_alert(self, alert_id: str) -> None:
        """
        Raises:
            NotFoundError: no alert with that id
        """
        async with self.lock("alerts"):
            found = await self.find(INVENTORY_ALERTS, lambda row: row[0] == alert_id)
            if found is None:
                raise NotFoundError("Inventory alert", alert_id)
            row_number, row = found
            row[7] = AlertStatus.RESOLVED.value
            row[9] = format_timestamp(self.clock())
            await self.store.update_range(INVENTORY_ALERTS.row_range(row_number), [row])
        logger.info("Inventory alert resolved", alert_id=alert_id)

    async def list_alerts(self, status: Optional[AlertStatus] = None) -> List[List[str]]:
        rows = await self.read_rows(INVENTORY_ALERTS)
        if status is not None:
            rows = [row for row in rows if row[7] == status.value]
        return rows

    # =========================================================================
    # DERIVED TABLES
    # =========================================================================

    async def update_supplier_performance(self) -> int:
        """Recompute the Supplier Performance table from the catalog and the restock ledger"""
        products = await self.list_products()
        movements = await self.load_movements()

        catalog = pl.DataFrame(
            {
                "product_id": [p.product_id for p in products],
                "supplier": [p.supplier for p in products],
            },
            schema={"product_id": pl.Utf8, "supplier": pl.Utf8},
        ).filter(pl.col("supplier") != "")

        counts = catalog.group_by("supplier").agg(pl.col("product_id").count().alias("products_count"))
        restocks = (
            movements
            .filter(pl.col("movement_type").is_in([MovementType.PURCHASE.value, MovementType.RESTOCK.value]))
            .join(catalog, on="product_id", how="inner")
            .group_by("supplier")
            .agg(
                pl.col("product_id").count().alias("total_orders"),
                pl.col("moved_at").max().alias("last_order"),
                pl.col("cost_impact").abs().mean().alias("average_order_value"),
            )
        )
        summary = counts.join(restocks, on="supplier", how="left").sort("supplier")

        rows = [
            [
                record["supplier"],
                "",
                record["products_count"],
                "",
                "",
                "",
                format_date(record["last_order"]),
                record["total_orders"] or 0,
                money(record["average_order_value"] or 0.0),
                "",
            ]
            for record in summary.iter_rows(named=True)
        ]
        written = await self.rewrite(SUPPLIER_PERFORMANCE, rows)
        logger.info("Supplier performance updated", suppliers=written)
        return written

    async def update_inventory_forecasting(self) -> int:
        """Recompute the Inventory Forecasting table from trailing sales velocity"""
        now = self.clock()
        products = await self.list_products()
        movements = await self.load_movements()
        monthly = daily_sales(movements, now, SALES_WINDOW_DAYS)
        weekly = daily_sales(movements, now, TREND_WINDOW_DAYS)

        rows = []
        for product in products:
            velocity = monthly.get(product.product_id, 0.0)
            stock = product.current_stock
            safety_stock = math.ceil(velocity * SAFETY_STOCK_DAYS)
            reorder_quantity = max(
                product.reorder_quantity,
                math.ceil(velocity * COVERAGE_DAYS + safety_stock - stock),
            )

            if velocity > 0:
                days_remaining = max(0, math.floor(stock / velocity))
                stock_out = format_date(now + timedelta(days=days_remaining))
                days_to_reorder = max(0, math.floor((stock - product.reorder_point) / velocity))
                reorder_date = format_date(now + timedelta(days=days_to_reorder))
                trend = weekly.get(product.product_id, 0.0) / velocity
            else:
                days_remaining = NO_SALES_DAYS
                stock_out = ""
                reorder_date = format_date(now) if stock <= product.reorder_point else ""
                trend = 1.0

            rows.append([
                product.product_id,
                product.product_name,
                stock,
                money(velocity),
                days_remaining,
                stock_out,
                reorder_quantity,
                reorder_date,
                money(1.0),
                money(trend),
                safety_stock,
            ])

        written = await self.rewrite(INVENTORY_FORECASTING, rows)
        logger.info("Inventory forecasting updated", products=written)
        return written

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_inventory_data(self) -> SyncResult:
        """Resync the catalog from the CMS, then rebuild the derived tables"""
        result = SyncResult()
        if self.cms is None:
            result.errors.append("CMS client not configured")
            return result

        logger.info("Starting inventory sync from CMS")
        sales = daily_sales(await self.load_movements(), self.clock(), SALES_WINDOW_DAYS)
        try:
            async for entry in self.cms.iter_products():
                result.records_processed += 1
                product_id = entry.get("id", "?") if isinstance(entry, dict) else "?"
                try:
                    product = map_strapi_product(entry, default_reorder_quantity=100)
                    added = await self.update_product_inventory(product, sales=sales)
                except Exception as e:
                    # One bad entry must not end the batch
                    result.errors.append(f"Product {product_id}: {e}")
                    logger.warning(
                        "Product sync failed", product_id=product_id, error=str(e), error_type=type(e).__name__
                    )
                    continue
                if added:
                    result.records_added += 1
                else:
                    result.records_updated += 1
        except TrackingError as e:
            result.errors.append(f"CMS fetch failed: {e}")
            logger.error("Product fetch from CMS failed", error=str(e))

        for name, step in (
            ("Supplier performance", self.update_supplier_performance),
            ("Inventory forecasting", self.update_inventory_forecasting),
        ):
            try:
                await step()
            except TrackingError as e:
                result.errors.append(f"{name}: {e}")

        logger.info(
            "Inventory sync completed",
            processed=result.records_processed,
            added=result.records_added,
            updated=result.records_updated,
            errors=len(result.errors),
        )
        return result

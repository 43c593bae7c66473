"""
Webhook Endpoints

One endpoint per webhook family. Each request is parsed into its family's
event variant and dispatched to exactly one tracker operation; these
handlers are the error boundary for ingress, so any failure becomes a
generic 500 without internal detail.
"""

import json
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional, Type

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram

from commerce_tracking.cms.mapping import map_strapi_order, map_strapi_product
from commerce_tracking.errors import ValidationError
from commerce_tracking.tracking.models import ActivityType, OrderStatus, StatusMetadata, UserActivity

from ..events import (
    FAMILIES,
    ActivityEvent,
    AlertResolved,
    Family,
    LowStockReported,
    OrderCreated,
    OrderDelivered,
    OrderShipped,
    OrderUpdated,
    PaymentCompleted,
    PaymentFailed,
    ProductUpdated,
    PurchaseEvent,
    RefundProcessed,
    SatisfactionScored,
    ShippingEvent,
    ShippingDelivered,
    ShippingException,
    ShippingInTransit,
    ShippingOutForDelivery,
    StockMovementEvent,
    StrapiEntryEvent,
    TicketAssigned,
    TicketCreated,
    TicketUpdated,
    UnhandledEvent,
    WebhookEvent,
)
from ..signature import verify_signature

if TYPE_CHECKING:
    from commerce_tracking.service import TrackingService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

Handler = Callable[[Any], Awaitable[None]]


# =============================================================================
# METRICS
# =============================================================================

WEBHOOKS_RECEIVED = Counter(
    "tracking_webhooks_total",
    "Webhook deliveries by family and outcome",
    ["family", "outcome"],
)
WEBHOOK_DURATION = Histogram(
    "tracking_webhook_duration_seconds",
    "Webhook processing time",
    ["family"],
)


# =============================================================================
# DISPATCH
# =============================================================================

class FamilyRouter:
    """Dispatches a family's events; every variant must have a handler"""

    def __init__(self, family: Family, handlers: Mapping[Type[WebhookEvent], Handler]):
        missing = [event_type.__name__ for event_type in family.event_types if event_type not in handlers]
        if missing:
            raise TypeError(f"No handler for {family.name} events: {', '.join(missing)}")
        self.family = family
        self.handlers = dict(handlers)

    async def dispatch(self, event: WebhookEvent) -> str:
        if isinstance(event, UnhandledEvent):
            logger.warning("Unknown webhook action acknowledged", family=self.family.name, action=event.name)
            return "unhandled"
        await self.handlers[type(event)](event)
        return "processed"


class WebhookProcessor:
    """
    Binds each webhook family to the tracking service.

    Delivery ids (``X-Webhook-Id`` / ``X-Delivery-Id``) are claimed before
    processing so that redeliveries are acknowledged without reprocessing;
    a failed delivery releases its claim.
    """

    def __init__(self, service: "TrackingService"):
        self.service = service
        self.routers: Dict[str, FamilyRouter] = {
            name: FamilyRouter(FAMILIES[name], handlers)
            for name, handlers in self._handlers().items()
        }
        unrouted = set(FAMILIES) - set(self.routers)
        if unrouted:
            raise TypeError(f"No router for webhook families: {', '.join(sorted(unrouted))}")

    def _handlers(self) -> Dict[str, Dict[Type[WebhookEvent], Handler]]:
        shipping = {
            event_type: self.on_shipping_update
            for event_type in (ShippingInTransit, ShippingOutForDelivery, ShippingDelivered, ShippingException)
        }
        return {
            "order": {
                OrderCreated: self.on_order_created,
                OrderUpdated: self.on_order_updated,
                OrderShipped: self.on_order_shipped,
                OrderDelivered: self.on_order_delivered,
            },
            "payment": {
                PaymentCompleted: self.on_payment_completed,
                PaymentFailed: self.on_payment_failed,
                RefundProcessed: self.on_refund_processed,
            },
            "shipping": shipping,
            "user": {
                ActivityEvent: self.on_activity,
                PurchaseEvent: self.on_purchase,
            },
            "support": {
                TicketCreated: self.on_ticket_created,
                TicketUpdated: self.on_ticket_updated,
                TicketAssigned: self.on_ticket_assigned,
                SatisfactionScored: self.on_satisfaction_score,
            },
            "inventory": {
                StockMovementEvent: self.on_stock_movement,
                ProductUpdated: self.on_product_updated,
                LowStockReported: self.on_low_stock_reported,
                AlertResolved: self.on_alert_resolved,
            },
            "strapi_order": {StrapiEntryEvent: self.on_strapi_order},
            "strapi_product": {StrapiEntryEvent: self.on_strapi_product},
        }

    async def process(self, family_name: str, request: Request) -> JSONResponse:
        family = FAMILIES[family_name]
        delivery_id = request.headers.get("X-Webhook-Id") or request.headers.get("X-Delivery-Id")
        claim_key: Optional[str] = None
        if delivery_id:
            claim_key = f"delivery:{family.name}:{delivery_id}"
            ttl = self.service.settings.webhook.delivery_ttl_seconds
            if not await self.service.claims.claim(claim_key, ttl):
                WEBHOOKS_RECEIVED.labels(family=family.name, outcome="duplicate").inc()
                logger.info("Duplicate webhook delivery ignored", family=family.name, delivery_id=delivery_id)
                return JSONResponse({"success": True, "message": "Duplicate delivery ignored"})

        started = time.perf_counter()
        try:
            body = await request.body()
            try:
                payload = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValidationError(f"Malformed JSON body: {e}") from e
            event = family.parse(payload)
            logger.info("Processing webhook", family=family.name, event=type(event).__name__)
            outcome = await self.routers[family.name].dispatch(event)
        except Exception as e:
            if claim_key is not None:
                await self.service.claims.release(claim_key)
            WEBHOOKS_RECEIVED.labels(family=family.name, outcome="failed").inc()
            logger.error(
                "Error processing webhook",
                family=family.name,
                delivery_id=delivery_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return JSONResponse(
                {"success": False, "message": f"Failed to process {family.label.lower()} webhook"},
                status_code=500,
            )
        finally:
            WEBHOOK_DURATION.labels(family=family.name).observe(time.perf_counter() - started)

        WEBHOOKS_RECEIVED.labels(family=family.name, outcome=outcome).inc()
        return JSONResponse({"success": True, "message": f"{family.label} webhook processed"})

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def on_order_created(self, event: OrderCreated) -> None:
        await self.service.orders.track_order(event.order)

    async def on_order_updated(self, event: OrderUpdated) -> None:
        order = event.order
        if event.status_changed and await self.service.orders.get_order(order.id) is not None:
            await self.service.orders.update_order_status(
                order.id,
                order.status,
                StatusMetadata(
                    tracking_number=order.tracking_number or None,
                    carrier=order.carrier or None,
                    estimated_delivery=order.estimated_delivery,
                    notes=event.notes or None,
                ),
            )
        await self.service.orders.track_order(order)

    async def on_order_shipped(self, event: OrderShipped) -> None:
        await self.service.orders.update_order_status(
            event.order_id,
            OrderStatus.SHIPPED,
            StatusMetadata(
                tracking_number=event.tracking_number or None,
                carrier=event.carrier or None,
                estimated_delivery=event.estimated_delivery,
            ),
        )

    async def on_order_delivered(self, event: OrderDelivered) -> None:
        await self.service.orders.update_order_status(
            event.order_id,
            OrderStatus.DELIVERED,
            StatusMetadata(actual_delivery=event.delivered_at or self.service.orders.clock()),
        )

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def on_payment_completed(self, event: PaymentCompleted) -> None:
        await self.service.orders.update_order_status(event.order_id, OrderStatus.CONFIRMED)

    async def on_payment_failed(self, event: PaymentFailed) -> None:
        await self.service.orders.update_order_status(
            event.order_id, OrderStatus.CANCELLED, StatusMetadata(notes="Payment failed")
        )

    async def on_refund_processed(self, event: RefundProcessed) -> None:
        await self.service.orders.update_order_status(
            event.order_id, OrderStatus.REFUNDED, StatusMetadata(notes=f"Refund: ${event.amount:.2f}")
        )

    # =========================================================================
    # SHIPPING
    # =========================================================================

    async def on_shipping_update(self, event: ShippingEvent) -> None:
        if not event.order_id:
            logger.warning("Shipping update without order id", tracking_number=event.tracking_number)
            return
        await self.service.orders.update_order_status(
            event.order_id,
            event.order_status,
            StatusMetadata(
                tracking_number=event.tracking_number or None,
                carrier=event.carrier or None,
                estimated_delivery=event.estimated_delivery,
                notes=event.status_description or None,
                location=event.location,
                shipment_exception=event.exception,
                delay_days=event.delay_days,
                delay_reason=event.status_description,
            ),
        )

    # =========================================================================
    # USER ACTIVITY
    # =========================================================================

    async def on_activity(self, event: ActivityEvent) -> None:
        journey = self.service.journey
        if event.activity_type == ActivityType.ADD_TO_CART:
            await journey.track_cart_action(
                event.user_id,
                event.session_id,
                event.product_id,
                "add",
                value=event.value,
                timestamp=event.timestamp,
                page_url=event.page_url,
                referrer=event.referrer,
                user_agent=event.user_agent,
                ip_address=event.ip_address,
            )
            return
        activity = UserActivity.model_validate(event.model_dump(exclude={"value"}))
        await journey.track_user_activity(activity)

    async def on_purchase(self, event: PurchaseEvent) -> None:
        await self.service.journey.track_purchase(
            event.user_id,
            event.session_id,
            event.order_id,
            event.value,
            event.product_ids,
        )

    # =========================================================================
    # SUPPORT
    # =========================================================================

    async def on_ticket_created(self, event: TicketCreated) -> None:
        await self.service.support.create_ticket(event.ticket)

    async def on_ticket_updated(self, event: TicketUpdated) -> None:
        await self.service.support.update_ticket_status(
            event.ticket_id,
            event.status,
            event.updated_by,
            message=event.message,
            assigned_to=event.assigned_to,
        )

    async def on_ticket_assigned(self, event: TicketAssigned) -> None:
        await self.service.support.assign_ticket(event.ticket_id, event.assigned_to, event.assigned_by)

    async def on_satisfaction_score(self, event: SatisfactionScored) -> None:
        await self.service.support.add_customer_satisfaction_score(event.ticket_id, event.score, event.feedback)

    # =========================================================================
    # INVENTORY
    # =========================================================================

    async def on_stock_movement(self, event: StockMovementEvent) -> None:
        await self.service.inventory.track_stock_movement(event)

    async def on_product_updated(self, event: ProductUpdated) -> None:
        await self.service.inventory.update_product_inventory(event.product)

    async def on_low_stock_reported(self, event: LowStockReported) -> None:
        await self.service.notifier.send_inventory_low_alert(
            event.product_id,
            event.product_name,
            event.current_stock,
            event.threshold,
            sku=event.sku,
        )

    async def on_alert_resolved(self, event: AlertResolved) -> None:
        await self.service.inventory.resolve_stock_alert(event.alert_id)

    # =========================================================================
    # CMS
    # =========================================================================

    async def on_strapi_order(self, event: StrapiEntryEvent) -> None:
        if event.model != "order" or not event.entry:
            logger.info("Strapi order webhook ignored", model=event.model)
            return
        await self.service.orders.track_order(map_strapi_order(event.entry))

    async def on_strapi_product(self, event: StrapiEntryEvent) -> None:
        if event.model != "product" or not event.entry:
            logger.info("Strapi product webhook ignored", model=event.model)
            return
        await self.service.inventory.update_product_inventory(map_strapi_product(event.entry))


# =============================================================================
# ENDPOINTS
# =============================================================================

def _processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


@router.post("/order", dependencies=[Depends(verify_signature)])
async def order_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("order", request)


@router.post("/payment", dependencies=[Depends(verify_signature)])
async def payment_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("payment", request)


@router.post("/shipping", dependencies=[Depends(verify_signature)])
async def shipping_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("shipping", request)


@router.post("/user")
async def user_activity_webhook(request: Request) -> JSONResponse:
    """Client-side analytics beacon; not signed"""
    return await _processor(request).process("user", request)


@router.post("/support", dependencies=[Depends(verify_signature)])
async def support_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("support", request)


@router.post("/inventory", dependencies=[Depends(verify_signature)])
async def inventory_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("inventory", request)


@router.post("/strapi/order", dependencies=[Depends(verify_signature)])
async def strapi_order_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("strapi_order", request)


@router.post("/strapi/product", dependencies=[Depends(verify_signature)])
async def strapi_product_webhook(request: Request) -> JSONResponse:
    return await _processor(request).process("strapi_product", request)

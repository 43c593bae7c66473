"""
Webhook Event Variants

Each webhook family is a closed set of event models keyed by a
discriminator field. Payloads whose discriminator is not part of the
family parse into ``UnhandledEvent`` so they can be acknowledged.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from pydantic import AliasChoices, Field, ValidationError as PydanticValidationError, model_validator

from commerce_tracking.errors import ValidationError
from commerce_tracking.tracking.models import (
    Order,
    OrderStatus,
    ProductInventory,
    StockMovement,
    TicketRequest,
    TicketStatus,
    TrackingModel,
    UserActivity,
)


class WebhookEvent(TrackingModel):
    """Base for every parsed webhook payload"""


class UnhandledEvent(WebhookEvent):
    """A payload whose action is not known to its family"""
    family: str
    name: str = ""


class OrderReference(WebhookEvent):
    """Events addressing an existing order by ``orderId`` or ``order.id``"""
    order_id: str = Field(validation_alias=AliasChoices("orderId", "order_id"))

    @model_validator(mode="before")
    @classmethod
    def _lift_order_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "orderId" not in data and "order_id" not in data:
            order = data.get("order")
            if isinstance(order, dict) and order.get("id") is not None:
                return {**data, "orderId": order["id"]}
        return data


# =============================================================================
# ORDERS
# =============================================================================

class OrderCreated(WebhookEvent):
    order: Order


class OrderUpdated(WebhookEvent):
    order: Order
    status_changed: bool = Field(default=False, validation_alias=AliasChoices("statusChanged", "status_changed"))
    notes: str = ""


class OrderShipped(OrderReference):
    tracking_number: str = ""
    carrier: str = ""
    estimated_delivery: Optional[datetime] = None


class OrderDelivered(OrderReference):
    delivered_at: Optional[datetime] = None


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentCompleted(OrderReference):
    amount: float = 0.0


class PaymentFailed(OrderReference):
    amount: float = 0.0
    reason: str = ""


class RefundProcessed(OrderReference):
    amount: float = 0.0


# =============================================================================
# SHIPPING
# =============================================================================

class ShippingEvent(WebhookEvent):
    """Carrier status update; the order status it implies is ``order_status``"""
    order_status: ClassVar[OrderStatus] = OrderStatus.SHIPPED
    exception: ClassVar[bool] = False

    order_id: str = Field(default="", validation_alias=AliasChoices("orderId", "order_id"))
    tracking_number: str = ""
    carrier: str = ""
    estimated_delivery: Optional[datetime] = None
    status_description: str = ""
    location: str = ""
    delay_days: int = 0


class ShippingInTransit(ShippingEvent):
    pass


class ShippingOutForDelivery(ShippingEvent):
    order_status: ClassVar[OrderStatus] = OrderStatus.OUT_FOR_DELIVERY


class ShippingDelivered(ShippingEvent):
    order_status: ClassVar[OrderStatus] = OrderStatus.DELIVERED


class ShippingException(ShippingEvent):
    exception: ClassVar[bool] = True


# =============================================================================
# USER ACTIVITY
# =============================================================================

class ActivityEvent(WebhookEvent, UserActivity):
    page_url: str = Field(default="", validation_alias=AliasChoices("pageUrl", "page_url", "page"))
    value: float = 0.0


class PurchaseEvent(WebhookEvent):
    user_id: str
    session_id: str
    order_id: str = ""
    value: float = 0.0
    product_ids: List[str] = Field(default_factory=list)


# =============================================================================
# SUPPORT
# =============================================================================

class TicketCreated(WebhookEvent):
    ticket: TicketRequest


class TicketUpdated(WebhookEvent):
    ticket_id: str
    status: TicketStatus
    updated_by: str = "System"
    message: Optional[str] = None
    assigned_to: Optional[str] = None


class TicketAssigned(WebhookEvent):
    ticket_id: str
    assigned_to: str
    assigned_by: str = "System"


class SatisfactionScored(WebhookEvent):
    ticket_id: str
    score: int
    feedback: Optional[str] = None


# =============================================================================
# INVENTORY
# =============================================================================

class StockMovementEvent(WebhookEvent, StockMovement):
    pass


class ProductUpdated(WebhookEvent):
    product: ProductInventory


class LowStockReported(WebhookEvent):
    product_id: str
    product_name: str = ""
    sku: str = ""
    current_stock: int = 0
    threshold: int = 0


class AlertResolved(WebhookEvent):
    alert_id: str


# =============================================================================
# CMS
# =============================================================================

class StrapiEntryEvent(WebhookEvent):
    model: str = ""
    entry: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# FAMILIES
# =============================================================================

@dataclass(frozen=True)
class Family:
    """A webhook endpoint's closed set of event variants"""

    name: str
    label: str
    keys: Tuple[str, ...]
    variants: Mapping[str, Type[WebhookEvent]]

    @property
    def event_types(self) -> Sequence[Type[WebhookEvent]]:
        return list(dict.fromkeys(self.variants.values()))

    def discriminator(self, payload: Mapping[str, Any]) -> str:
        for key in self.keys:
            value = payload.get(key)
            if isinstance(value, str) and value:
                prefix = f"{self.name}."
                return value[len(prefix):] if value.startswith(prefix) else value
        return ""

    def parse(self, payload: Any) -> WebhookEvent:
        """
        Raises:
            ValidationError: payload is not an object or fails its variant's schema
        """
        if not isinstance(payload, dict):
            raise ValidationError(f"{self.label} webhook payload must be a JSON object")
        name = self.discriminator(payload)
        model = self.variants.get(name)
        if model is None:
            return UnhandledEvent(family=self.name, name=name)
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {self.name} '{name}' payload: {e.error_count()} field errors"
            ) from e


_ACTIVITY_TYPES = (
    "page_view", "product_view", "category_view", "search",
    "add_to_cart", "remove_from_cart", "checkout_started",
)

FAMILIES: Dict[str, Family] = {
    family.name: family
    for family in (
        Family("order", "Order", ("action", "event"), {
            "created": OrderCreated,
            "updated": OrderUpdated,
            "shipped": OrderShipped,
            "delivered": OrderDelivered,
        }),
        Family("payment", "Payment", ("action", "type", "event"), {
            "payment_completed": PaymentCompleted,
            "payment_failed": PaymentFailed,
            "refund_processed": RefundProcessed,
        }),
        Family("shipping", "Shipping", ("status", "type", "event"), {
            "in_transit": ShippingInTransit,
            "out_for_delivery": ShippingOutForDelivery,
            "delivered": ShippingDelivered,
            "exception": ShippingException,
        }),
        Family("user", "User activity", ("type", "activityType", "event"), {
            **{name: ActivityEvent for name in _ACTIVITY_TYPES},
            "purchase": PurchaseEvent,
        }),
        Family("support", "Support", ("action", "type", "event"), {
            "ticket_created": TicketCreated,
            "ticket_updated": TicketUpdated,
            "ticket_assigned": TicketAssigned,
            "satisfaction_score": SatisfactionScored,
        }),
        Family("inventory", "Inventory", ("action", "type", "event"), {
            "stock_movement": StockMovementEvent,
            "product_updated": ProductUpdated,
            "low_stock_alert": LowStockReported,
            "alert_resolved": AlertResolved,
        }),
        Family("strapi_order", "Strapi order", ("event",), {
            "entry.create": StrapiEntryEvent,
            "entry.update": StrapiEntryEvent,
        }),
        Family("strapi_product", "Strapi product", ("event",), {
            "entry.create": StrapiEntryEvent,
            "entry.update": StrapiEntryEvent,
        }),
    )
}

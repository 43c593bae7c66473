"""
Domain models shared by the trackers, the webhook layer and the CMS client.

Payloads arrive in camelCase; fields are snake_case and accept either.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .formatting import to_naive_utc, utcnow


class TrackingModel(BaseModel):
    """Base model: camelCase aliases, naive UTC datetimes"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )

    @field_validator("*", mode="after")
    @classmethod
    def _naive_utc(cls, value):
        if isinstance(value, datetime):
            return to_naive_utc(value)
        return value


# =============================================================================
# ORDERS
# =============================================================================

class OrderStatus(str, Enum):
    """
    Order lifecycle.

    pending -> confirmed -> processing -> shipped -> out_for_delivery -> delivered,
    plus any -> cancelled and delivered -> refunded / returned. The tracker
    accepts any status after any other.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class Address(TrackingModel):
    address1: str = ""
    address2: str = ""
    city: str = ""
    province: str = ""
    country: str = ""
    zip: str = ""

    def one_line(self) -> str:
        return ", ".join(part for part in (self.address1, self.city, self.province, self.country) if part)


class OrderItem(TrackingModel):
    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id", "id"))
    product_name: str = Field(default="", validation_alias=AliasChoices("productName", "product_name", "name"))
    sku: str = ""
    quantity: int = 1
    unit_price: float = Field(default=0.0, validation_alias=AliasChoices("unitPrice", "unit_price", "price"))
    total_price: Optional[float] = None
    category: str = ""
    brand: str = ""
    variant: str = ""

    @property
    def line_total(self) -> float:
        if self.total_price is not None:
            return self.total_price
        return self.unit_price * self.quantity


class Order(TrackingModel):
    id: str = Field(validation_alias=AliasChoices("id", "orderId", "order_id"))
    customer_id: str = ""
    customer_name: str = ""
    customer_email: str = ""
    status: OrderStatus = OrderStatus.PENDING
    total_amount: float = 0.0
    currency: str = "USD"
    payment_method: str = ""
    shipping_method: str = ""
    tracking_number: str = ""
    carrier: str = ""
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)
    items_count: Optional[int] = None
    items_summary: str = ""
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    notes: str = ""

    @property
    def item_count(self) -> int:
        """Units across line items; rows read back from the store carry only the count"""
        if self.items:
            return sum(item.quantity for item in self.items)
        return self.items_count or 0


class StatusMetadata(TrackingModel):
    """Optional context attached to a status change"""
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    changed_by: str = "System"
    location: str = ""
    shipment_exception: bool = False
    delay_days: int = 0
    delay_reason: str = ""

    @property
    def is_delayed(self) -> bool:
        return self.shipment_exception or self.delay_days > 0


# =============================================================================
# INVENTORY
# =============================================================================

class StockStatus(str, Enum):
    IN_STOCK = "In Stock"
    LOW_STOCK = "Low Stock"
    OUT_OF_STOCK = "Out of Stock"

    @classmethod
    def derive(cls, stock: int, low_stock_threshold: int) -> "StockStatus":
        if stock <= 0:
            return cls.OUT_OF_STOCK
        if stock <= low_stock_threshold:
            return cls.LOW_STOCK
        return cls.IN_STOCK


class MovementType(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    RESTOCK = "restock"

    @property
    def decreases_stock(self) -> bool:
        return self in (MovementType.SALE, MovementType.ADJUSTMENT)

    @property
    def replenishes(self) -> bool:
        return self in (MovementType.PURCHASE, MovementType.RESTOCK)


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    OVERSTOCK = "overstock"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class ProductInventory(TrackingModel):
    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id", "id"))
    product_name: str = Field(default="", validation_alias=AliasChoices("productName", "product_name", "name"))
    sku: str = ""
    category: str = ""
    sub_category: str = ""
    brand: str = ""
    current_stock: int = 0
    low_stock_threshold: int = 10
    reorder_point: int = 10
    reorder_quantity: int = 50
    cost_price: float = 0.0
    selling_price: float = Field(default=0.0, validation_alias=AliasChoices("sellingPrice", "selling_price", "price"))
    compare_at_price: Optional[float] = None
    supplier: str = ""
    last_restocked: Optional[datetime] = None

    @property
    def stock_status(self) -> StockStatus:
        return StockStatus.derive(self.current_stock, self.low_stock_threshold)


class StockMovement(TrackingModel):
    product_id: str
    sku: str = ""
    movement_type: MovementType = Field(validation_alias=AliasChoices("movementType", "movement_type", "type"))
    quantity: int
    reason: str = ""
    order_id: str = ""
    reference: str = ""
    moved_by: str = "System"
    cost_impact: float = 0.0
    notes: str = ""


@dataclass
class StockLevel:
    """Outcome of a stock write"""
    product_id: str
    previous_stock: int
    new_stock: int
    stock_status: StockStatus
    alert_id: Optional[str] = None


# =============================================================================
# SUPPORT
# =============================================================================

class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_CUSTOMER = "waiting_customer"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketCategory(str, Enum):
    ORDER_ISSUE = "order_issue"
    SHIPPING = "shipping"
    PRODUCT_QUESTION = "product_question"
    RETURN_REFUND = "return_refund"
    TECHNICAL = "technical"
    PAYMENT = "payment"
    ACCOUNT = "account"
    GENERAL = "general"


class TicketChannel(str, Enum):
    EMAIL = "email"
    CHAT = "chat"
    PHONE = "phone"
    SOCIAL = "social"
    WEBSITE = "website"


class TicketRequest(TrackingModel):
    """Data needed to open a ticket"""
    customer_id: str = ""
    customer_email: str = ""
    customer_name: str = ""
    subject: str
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM
    channel: TicketChannel = TicketChannel.EMAIL
    order_id: str = ""
    assigned_to: str = ""
    tags: List[str] = Field(default_factory=list)
    notes: str = Field(default="", validation_alias=AliasChoices("notes", "description", "message"))


class SupportTicket(TrackingModel):
    ticket_id: str
    customer_id: str = ""
    customer_email: str = ""
    customer_name: str = ""
    subject: str = ""
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM
    status: TicketStatus = TicketStatus.OPEN
    assigned_to: str = ""
    channel: TicketChannel = TicketChannel.EMAIL
    order_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    response_time: Optional[int] = None
    resolution_time: Optional[int] = None
    satisfaction_score: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    notes: str = ""

    @property
    def is_escalated(self) -> bool:
        return "escalated" in self.tags or self.priority == TicketPriority.URGENT


# =============================================================================
# USER ANALYTICS
# =============================================================================

class ActivityType(str, Enum):
    PAGE_VIEW = "page_view"
    PRODUCT_VIEW = "product_view"
    CATEGORY_VIEW = "category_view"
    SEARCH = "search"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    CHECKOUT_STARTED = "checkout_started"
    PURCHASE = "purchase"


class ConversionType(str, Enum):
    ADD_TO_CART = "add_to_cart"
    CHECKOUT_STARTED = "checkout_started"
    PURCHASE = "purchase"
    NEWSLETTER_SIGNUP = "newsletter_signup"
    ACCOUNT_CREATED = "account_created"


class UserActivity(TrackingModel):
    user_id: str
    session_id: str
    activity_type: ActivityType = Field(validation_alias=AliasChoices("activityType", "activity_type", "type"))
    page_url: str = ""
    product_id: str = ""
    category_id: str = ""
    search_query: str = ""
    referrer: str = ""
    user_agent: str = ""
    ip_address: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    duration: Optional[int] = None


class ConversionEvent(TrackingModel):
    user_id: str
    session_id: str
    conversion_type: ConversionType
    value: float = 0.0
    product_ids: List[str] = Field(default_factory=list)
    order_id: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = ""


# =============================================================================
# SYNC
# =============================================================================

@dataclass
class SyncResult:
    """Outcome of a batch sync; item failures are collected, not raised"""
    records_processed: int = 0
    records_added: int = 0
    records_updated: int = 0
    errors: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return not self.errors

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.records_processed += other.records_processed
        self.records_added += other.records_added
        self.records_updated += other.records_updated
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "records_processed": self.records_processed,
            "records_added": self.records_added,
            "records_updated": self.records_updated,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }

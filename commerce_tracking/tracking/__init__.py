"""
Domain Trackers Module

Trackers live in their own modules (``orders``, ``inventory``, ``support``,
``journey``, ``intelligence``); only the shared models are re-exported here
so that the CMS mapping layer can import them without pulling the trackers in.
"""
from .models import (
    ConversionEvent,
    Order,
    OrderStatus,
    ProductInventory,
    StockMovement,
    SupportTicket,
    SyncResult,
    TicketRequest,
    UserActivity,
)

__all__ = [
    "ConversionEvent",
    "Order",
    "OrderStatus",
    "ProductInventory",
    "StockMovement",
    "SupportTicket",
    "SyncResult",
    "TicketRequest",
    "UserActivity",
]

"""
API Routes Module
"""
from .health import router as health_router
from .webhooks import router as webhooks_router, WebhookProcessor

__all__ = [
    "health_router",
    "webhooks_router",
    "WebhookProcessor",
]

"""
Notifications Module
"""
from .email import NotificationDispatcher, NotificationType

__all__ = ["NotificationDispatcher", "NotificationType"]

"""
Notification module for lifecycle events.

Provides the dispatcher contract plus logging and webhook implementations.
"""

from src.notifications.dispatcher import (
    LifecycleEvent,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEventType,
    WebhookNotificationDispatcher,
)

__all__ = [
    "LifecycleEvent",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationEventType",
    "WebhookNotificationDispatcher",
]

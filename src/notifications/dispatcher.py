"""
Lifecycle notifications.

The coordinator announces publishes, suspensions, activations and rejected
publishes through a NotificationDispatcher. Delivery is best effort: the
coordinator logs and drops any exception a dispatcher raises.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class NotificationEventType(str, Enum):
    """Lifecycle events sent to subscribers."""
    PUBLISHED = "PUBLISHED"
    SUSPENDED = "SUSPENDED"
    ACTIVATED = "ACTIVATED"
    REJECTED = "REJECTED"


class LifecycleEvent(BaseModel):
    """Payload describing one lifecycle transition."""
    event_type: NotificationEventType
    tenant_id: str
    app_id: Optional[str] = None
    context_id: Optional[str] = None
    template_key: str
    template_name: Optional[str] = None
    published_id: Optional[str] = Field(
        default=None,
        description="Published version the event refers to (None for rejections)"
    )
    version: Optional[int] = None
    process_definition_id: Optional[str] = None
    user_id: str = "system"
    reason: Optional[str] = Field(
        default=None,
        description="Failure message for REJECTED events"
    )
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationDispatcher(Protocol):
    def dispatch(self, event: LifecycleEvent) -> None:
        ...


class LoggingNotificationDispatcher:
    """Writes every event to the application log."""

    def dispatch(self, event: LifecycleEvent) -> None:
        logger.info(
            f"Notification {event.event_type.value}: {event.template_key} "
            f"v{event.version} (tenant {event.tenant_id}, by {event.user_id})"
        )


class WebhookNotificationDispatcher:
    """
    POSTs each event as JSON to a webhook URL.

    Raises httpx errors on delivery failure; the coordinator swallows them.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def dispatch(self, event: LifecycleEvent) -> None:
        response = self._client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()
        logger.debug(f"Delivered {event.event_type.value} for {event.template_key} to {self.url}")

    def close(self) -> None:
        self._client.close()

"""Activity bus and durable activity store."""

from mcp_compose.core.activity.bus import (
    ActivityBus,
    ActivityPublisher,
    NullPublisher,
    QueueSink,
    Subscriber,
    WebhookPublisher,
)
from mcp_compose.core.activity.storage import ActivityStore, open_store

__all__ = [
    "ActivityBus",
    "ActivityPublisher",
    "ActivityStore",
    "NullPublisher",
    "QueueSink",
    "Subscriber",
    "WebhookPublisher",
    "open_store",
]

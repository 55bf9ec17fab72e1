"""Type definitions and protocols for the notification dispatch engine.

This package provides:
- Type aliases (PEP 695 syntax) for injected callables
- Data models (dataclasses and enumerations)
- Request models (pydantic, validated at the boundary)
- Protocol definitions (structural subtyping interfaces)
"""

from notification_router.types.aliases import (
    Clock,
    IdFactory,
    JobExecutor,
    Sleeper,
)
from notification_router.types.models import (
    BatchResult,
    BatchStatistics,
    BatchStatus,
    CancellationResult,
    ChannelType,
    DeadLetterEntry,
    DeliveryOutcome,
    EventType,
    Lane,
    Notification,
    NotificationEvent,
    NotificationStatus,
    Page,
    Priority,
    Recipient,
    RecipientResult,
    Response,
    ScheduledJob,
)
from notification_router.types.protocols import (
    Channel,
    HTTPClient,
    NotificationStore,
    RecipientDirectory,
    ScheduledJobStore,
)
from notification_router.types.requests import (
    BatchRequest,
    BatchSettings,
    NotificationRequest,
)

__all__ = [
    # Type aliases
    "Clock",
    "IdFactory",
    "JobExecutor",
    "Sleeper",
    # Enumerations
    "BatchStatus",
    "ChannelType",
    "EventType",
    "Lane",
    "NotificationStatus",
    "Priority",
    # Data models
    "BatchResult",
    "BatchStatistics",
    "CancellationResult",
    "DeadLetterEntry",
    "DeliveryOutcome",
    "Notification",
    "NotificationEvent",
    "Page",
    "Recipient",
    "RecipientResult",
    "Response",
    "ScheduledJob",
    # Request models
    "BatchRequest",
    "BatchSettings",
    "NotificationRequest",
    # Protocols
    "Channel",
    "HTTPClient",
    "NotificationStore",
    "RecipientDirectory",
    "ScheduledJobStore",
]

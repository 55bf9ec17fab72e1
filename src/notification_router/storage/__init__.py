"""Store and directory implementations."""

from notification_router.storage.memory import (
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryScheduledJobStore,
)

__all__ = [
    "InMemoryNotificationStore",
    "InMemoryRecipientDirectory",
    "InMemoryScheduledJobStore",
]

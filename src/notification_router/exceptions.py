"""Exception hierarchy for the notification dispatch engine.

Only programmer and configuration errors propagate as exceptions. Delivery
failures travel as ``DeliveryOutcome`` values and retry exhaustion is an
escalation, not an exception.
"""

from __future__ import annotations

__all__ = [
    "NotificationNotFoundError",
    "NotificationRouterError",
    "RecipientNotFoundError",
    "SchedulingError",
]


class NotificationRouterError(Exception):
    """Base class for engine errors."""


class RecipientNotFoundError(NotificationRouterError):
    """Raised when a single-recipient submission names an unknown user."""

    user_id: int

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User not found with id: {user_id}")
        self.user_id = user_id


class NotificationNotFoundError(NotificationRouterError):
    """Raised when an operation requires a notification that does not exist."""

    notification_id: int

    def __init__(self, notification_id: int) -> None:
        super().__init__(f"Notification not found with id: {notification_id}")
        self.notification_id = notification_id


class SchedulingError(NotificationRouterError):
    """Raised when a deferred delivery cannot be armed."""

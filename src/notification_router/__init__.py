"""Notification Router - multi-channel notification dispatch engine.

This package routes notifications to users over email, SMS and push
channels with immediate, scheduled and batched delivery, retry with
exponential backoff, and dead-letter escalation.
"""

from notification_router.__main__ import main
from notification_router.core.engine import NotificationEngine

__all__ = ["NotificationEngine", "main"]

"""Notification service: submission, query, cancellation and batches.

This is the entry point callers use. A submission is persisted first and then
either scheduled (deferred delivery), published on the bus (when an event
producer is wired in), or delivered directly with retry handling.
"""

from __future__ import annotations

import logging
from datetime import datetime

from notification_router.core.batch import BatchOrchestrator
from notification_router.core.events import NotificationEventProducer
from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.retry import RetryCoordinator
from notification_router.core.scheduler import NotificationScheduler
from notification_router.exceptions import NotificationNotFoundError, RecipientNotFoundError, SchedulingError
from notification_router.types import (
    BatchRequest,
    BatchResult,
    CancellationResult,
    Clock,
    DeliveryOutcome,
    Notification,
    NotificationRequest,
    NotificationStatus,
    NotificationStore,
    Page,
    RecipientDirectory,
)
from notification_router.types.models import ensure_utc, utc_now
from notification_router.utils.logging import get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = ["NotificationService"]


class NotificationService:
    """Accept notification requests and route them through the engine.

    Args:
        store: Notification store
        directory: Recipient lookup
        pipeline: Delivery pipeline
        coordinator: Retry coordinator applied to direct deliveries
        scheduler: Scheduler for deferred deliveries
        batches: Batch orchestrator
        producer: Event producer; when set, immediate submissions are
            published on the bus instead of delivered inline
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: RecipientDirectory,
        pipeline: DeliveryPipeline,
        coordinator: RetryCoordinator,
        scheduler: NotificationScheduler,
        batches: BatchOrchestrator,
        *,
        producer: NotificationEventProducer | None = None,
        clock: Clock = utc_now,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        self._store: NotificationStore = store
        self._directory: RecipientDirectory = directory
        self._pipeline: DeliveryPipeline = pipeline
        self._coordinator: RetryCoordinator = coordinator
        self._scheduler: NotificationScheduler = scheduler
        self._batches: BatchOrchestrator = batches
        self._producer: NotificationEventProducer | None = producer
        self._clock: Clock = clock
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    async def send_notification(self, request: NotificationRequest) -> Notification:
        """Create a notification for one user and dispatch it.

        Raises:
            RecipientNotFoundError: If the user does not exist
            ValueError: If ``scheduled_at`` is in the past
            SchedulingError: If a deferred delivery cannot be armed
        """
        recipient = await self._directory.get(request.user_id)
        if recipient is None:
            raise RecipientNotFoundError(request.user_id)

        scheduled_at = request.scheduled_at
        if scheduled_at is not None:
            self._require_future(scheduled_at)

        notification = Notification(
            recipient=recipient,
            title=request.title,
            content=request.content,
            channel_type=request.channel_type,
            priority=request.priority,
            status=NotificationStatus.SCHEDULED if scheduled_at is not None else NotificationStatus.PENDING,
            metadata=dict(request.metadata),
            scheduled_at=scheduled_at,
        )
        _ = await self._store.save(notification)

        log_with_context(
            self._logger,
            logging.INFO,
            "Created notification",
            extra={
                "notification_id": notification.id,
                "user_id": recipient.user_id,
                "channel_type": notification.channel_type.value,
                "scheduled": scheduled_at is not None,
            },
        )

        if scheduled_at is not None:
            await self._schedule(notification)
        elif self._producer is not None:
            _ = await self._producer.publish_notification(notification)
        else:
            _ = await self.deliver_with_retry(notification)
        return notification

    async def deliver_with_retry(self, notification: Notification) -> DeliveryOutcome:
        """Deliver once now; failures are re-armed or escalated by the coordinator."""
        return await self._coordinator.attempt(notification)

    async def get_notification(self, notification_id: int) -> Notification:
        """Raises NotificationNotFoundError for unknown ids."""
        notification = await self._store.get(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def get_user_notifications(self, user_id: int, page: int = 0, size: int = 20) -> Page[Notification]:
        return await self._store.list_by_recipient(user_id, page=page, size=size)

    async def cancel_notification(self, notification_id: int) -> CancellationResult:
        """Cancel a scheduled notification. Never raises when nothing is armed."""
        if not await self._scheduler.cancel(notification_id):
            return CancellationResult(
                cancelled=False,
                message=f"No active scheduled job found for notification {notification_id}",
            )

        notification = await self._store.get(notification_id)
        if notification is not None:
            notification.status = NotificationStatus.CANCELLED
            _ = await self._store.save(notification)

        log_with_context(
            self._logger,
            logging.INFO,
            "Cancelled notification",
            extra={"notification_id": notification_id},
        )
        return CancellationResult(
            cancelled=True,
            message=f"Notification {notification_id} cancelled successfully",
        )

    async def reschedule_notification(self, notification_id: int, scheduled_at: datetime) -> Notification:
        """Move a notification to a new delivery time, replacing any armed job.

        Raises:
            NotificationNotFoundError: If the notification does not exist
            ValueError: If the new time is in the past or the notification
                was already sent
        """
        notification = await self.get_notification(notification_id)
        if notification.status in {NotificationStatus.SENT, NotificationStatus.DELIVERED}:
            msg = f"Notification {notification_id} was already sent and cannot be rescheduled"
            raise ValueError(msg)

        scheduled_at = ensure_utc(scheduled_at)
        self._require_future(scheduled_at)

        notification.scheduled_at = scheduled_at
        notification.status = NotificationStatus.SCHEDULED
        _ = await self._store.save(notification)
        try:
            _ = await self._scheduler.reschedule(notification)
        except SchedulingError:
            await self._mark_scheduling_failed(notification, "Rescheduling failed")
            raise
        return notification

    async def send_batch(self, request: BatchRequest) -> BatchResult:
        return await self._batches.process(request)

    async def _schedule(self, notification: Notification) -> None:
        try:
            _ = await self._scheduler.schedule(notification)
        except SchedulingError as exc:
            await self._mark_scheduling_failed(notification, sanitize_exception(exc))
            raise

    async def _mark_scheduling_failed(self, notification: Notification, reason: str) -> None:
        notification.status = NotificationStatus.FAILED
        notification.error_message = reason
        _ = await self._store.save(notification)
        log_with_context(
            self._logger,
            logging.ERROR,
            "Failed to schedule notification",
            extra={"notification_id": notification.id, "error": reason},
        )

    def _require_future(self, scheduled_at: datetime) -> None:
        if ensure_utc(scheduled_at) <= self._clock():
            msg = "Scheduled time must be in the future"
            raise ValueError(msg)

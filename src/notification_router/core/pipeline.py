"""Delivery pipeline executing one delivery attempt for one notification.

The pipeline resolves a channel through the registry, persists ``PENDING``
before invoking it, and records the terminal state of the attempt (``SENT``
or ``FAILED``). Channel exceptions and timeouts are converted into retryable
failure outcomes; the pipeline itself never decides whether to retry.
"""

from __future__ import annotations

import asyncio
import logging
import time

from notification_router.core.registry import ChannelRegistry
from notification_router.types import (
    Clock,
    DeliveryOutcome,
    Notification,
    NotificationStatus,
    NotificationStore,
)
from notification_router.types.models import utc_now
from notification_router.utils.logging import correlation_scope, get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = ["ALREADY_IN_PROGRESS", "DeliveryPipeline"]

ALREADY_IN_PROGRESS = "Delivery already in progress"


class DeliveryPipeline:
    """Run single delivery attempts against the channel registry."""

    def __init__(
        self,
        registry: ChannelRegistry,
        store: NotificationStore,
        *,
        send_timeout_seconds: float = 15.0,
        clock: Clock = utc_now,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if send_timeout_seconds <= 0:
            msg = "send_timeout_seconds must be greater than zero"
            raise ValueError(msg)

        self._registry: ChannelRegistry = registry
        self._store: NotificationStore = store
        self._send_timeout_seconds: float = send_timeout_seconds
        self._clock: Clock = clock
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._in_flight: set[int] = set()

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._in_flight)

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        """Execute one delivery attempt and persist its result.

        ``notification`` is updated in place to mirror the stored state.

        Returns:
            Outcome of the attempt. Unsupported channel types yield a
            non-retryable failure; channel crashes yield a retryable one.
        """
        if notification.id is None:
            _ = await self._store.save(notification)
        notification_id = notification.id
        if notification_id is None:
            msg = "Notification store did not assign an id"
            raise RuntimeError(msg)

        if notification_id in self._in_flight:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Delivery refused, another attempt is in flight",
                extra={"notification_id": notification_id},
            )
            return DeliveryOutcome.failure(ALREADY_IN_PROGRESS, retryable=False)

        self._in_flight.add(notification_id)
        try:
            with correlation_scope(f"notification-{notification_id}"):
                return await self._deliver(notification)
        finally:
            self._in_flight.discard(notification_id)

    async def deliver_scheduled(self, notification_id: int) -> bool:
        """Deliver a notification whose scheduled time has arrived.

        Returns:
            True only when the notification was SCHEDULED and was sent
        """
        notification = await self._store.get(notification_id)
        if notification is None:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Scheduled notification not found",
                extra={"notification_id": notification_id},
            )
            return False

        if notification.status is not NotificationStatus.SCHEDULED:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Notification is no longer scheduled, skipping",
                extra={"notification_id": notification_id, "status": notification.status.value},
            )
            return False

        outcome = await self.deliver(notification)
        return outcome.success

    async def _deliver(self, notification: Notification) -> DeliveryOutcome:
        channel = self._registry.resolve(notification.channel_type)
        if channel is None:
            message = f"Unsupported channel type: {notification.channel_type.value}"
            notification.status = NotificationStatus.FAILED
            notification.error_message = message
            _ = await self._store.save(notification)
            log_with_context(
                self._logger,
                logging.ERROR,
                "No channel registered for notification",
                extra={"notification_id": notification.id, "channel_type": notification.channel_type.value},
            )
            return DeliveryOutcome.failure(message, retryable=False)

        notification.status = NotificationStatus.PENDING
        _ = await self._store.save(notification)

        start = time.perf_counter()
        try:
            async with asyncio.timeout(self._send_timeout_seconds):
                outcome = await channel.send(notification)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            outcome = DeliveryOutcome.failure(
                f"Channel processing failed: timed out after {self._send_timeout_seconds:.1f}s",
                retryable=True,
            )
        except Exception as exc:
            outcome = DeliveryOutcome.failure(
                f"Channel processing failed: {sanitize_exception(exc)}",
                retryable=True,
            )
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        if outcome.success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = self._clock()
            notification.error_message = None
            notification.next_retry_at = None
            log_level = logging.INFO
            log_message = "Notification sent"
        else:
            notification.status = NotificationStatus.FAILED
            notification.error_message = outcome.message
            log_level = logging.WARNING
            log_message = "Notification delivery failed"

        _ = await self._store.save(notification)
        log_with_context(
            self._logger,
            log_level,
            log_message,
            extra={
                "notification_id": notification.id,
                "channel": channel.display_name,
                "outcome": outcome.message,
                "error_detail": outcome.error_detail,
                "retryable": outcome.retryable,
                "delivery_time_ms": round(elapsed_ms, 2),
            },
        )
        return outcome

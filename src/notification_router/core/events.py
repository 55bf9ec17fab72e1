"""Event bus lanes, producer and consumer for asynchronous delivery.

Submissions travel as immutable ``NotificationEvent`` envelopes on one of
four lanes. HIGH priority events use the high-priority lane, everything else
the normal lane. Failed processing is re-published on the retry lane after a
capped exponential delay (scheduled as a separate task, never a blocking
sleep in the consumer), and retry-lane events past the transport ceiling go
to the dead-letter lane.

The bundled ``InMemoryEventBus`` gives one FIFO queue and one consumer task
per lane, which preserves per-key ordering within a lane.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from uuid import uuid4

from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.retry import MAX_RETRIES_REASON, DeadLetterQueue
from notification_router.types import (
    Clock,
    DeadLetterEntry,
    EventType,
    Lane,
    Notification,
    NotificationEvent,
    NotificationStatus,
    NotificationStore,
    Priority,
    Sleeper,
)
from notification_router.types.models import utc_now
from notification_router.utils.logging import correlation_scope, get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = [
    "BusMessage",
    "EventRouter",
    "InMemoryEventBus",
    "NotificationEventConsumer",
    "NotificationEventProducer",
]

type EventHandler = Callable[[NotificationEvent], Awaitable[None]]

UNKNOWN_PARTITION_KEY = "unknown"


class EventRouter:
    """Lane selection and partitioning rules."""

    @staticmethod
    def select_lane(event: NotificationEvent) -> Lane:
        if event.priority is Priority.HIGH:
            return Lane.HIGH_PRIORITY
        return Lane.NORMAL

    @staticmethod
    def partition_key(event: NotificationEvent) -> str:
        return str(event.user_id) if event.user_id is not None else UNKNOWN_PARTITION_KEY

    @staticmethod
    def transport_retry_delay(retry_count: int, *, base_delay_ms: int = 1000, max_delay_ms: int = 10000) -> float:
        """Seconds to wait before re-publishing: ``min(base * 2**retry_count, max)``."""
        return min(base_delay_ms * (2**retry_count), max_delay_ms) / 1000.0


@dataclass(slots=True, frozen=True)
class BusMessage:
    """One message on a lane."""

    lane: Lane
    key: str
    event: NotificationEvent


@dataclass(slots=True)
class _LaneState:
    queue: asyncio.Queue[BusMessage] = field(default_factory=lambda: asyncio.Queue[BusMessage]())
    handlers: list[EventHandler] = field(default_factory=list)
    task: asyncio.Task[None] | None = None


class InMemoryEventBus:
    """In-process bus with one FIFO queue per lane."""

    def __init__(self, logger_obj: logging.Logger | None = None) -> None:
        self._lanes: dict[Lane, _LaneState] = {lane: _LaneState() for lane in Lane}
        self._history: list[BusMessage] = []
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    @property
    def history(self) -> tuple[BusMessage, ...]:
        """Every message published, in publish order."""
        return tuple(self._history)

    def messages_on(self, lane: Lane) -> tuple[NotificationEvent, ...]:
        return tuple(message.event for message in self._history if message.lane is lane)

    def subscribe(self, lane: Lane, handler: EventHandler) -> None:
        self._lanes[lane].handlers.append(handler)

    async def publish(self, lane: Lane, key: str, event: NotificationEvent) -> None:
        message = BusMessage(lane=lane, key=key, event=event)
        self._history.append(message)
        await self._lanes[lane].queue.put(message)
        log_with_context(
            self._logger,
            logging.DEBUG,
            "Published event",
            extra={"topic": lane.topic, "key": key, "event_id": event.event_id},
        )

    async def start(self) -> None:
        for lane, state in self._lanes.items():
            if state.handlers and (state.task is None or state.task.done()):
                state.task = asyncio.create_task(self._consume(lane, state), name=f"consumer-{lane.topic}")

    async def stop(self) -> None:
        tasks = [state.task for state in self._lanes.values() if state.task is not None]
        for task in tasks:
            _ = task.cancel()
        _ = await asyncio.gather(*tasks, return_exceptions=True)
        for state in self._lanes.values():
            state.task = None

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        for state in self._lanes.values():
            await state.queue.join()

    async def _consume(self, lane: Lane, state: _LaneState) -> None:
        while True:
            message = await state.queue.get()
            try:
                for handler in state.handlers:
                    await handler(message.event)
            except Exception as exc:
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Event handler crashed",
                    extra={"topic": lane.topic, "event_id": message.event.event_id, "error": sanitize_exception(exc)},
                )
            finally:
                state.queue.task_done()


class NotificationEventProducer:
    """Publish notification events onto the bus."""

    def __init__(
        self,
        bus: InMemoryEventBus,
        *,
        clock: Clock = utc_now,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        self._bus: InMemoryEventBus = bus
        self._clock: Clock = clock
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    def new_event_id(self, notification_id: int) -> str:
        return f"evt_{time.time_ns() // 1_000_000}_{notification_id}_{uuid4().hex[:6]}"

    async def publish_notification(self, notification: Notification) -> NotificationEvent:
        """Build a CREATED event for a saved notification and publish it."""
        if notification.id is None:
            msg = "Cannot publish an unsaved notification"
            raise ValueError(msg)
        event = NotificationEvent.from_notification(
            notification,
            event_id=self.new_event_id(notification.id),
        )
        _ = await self.publish_notification_event(event)
        return event

    async def publish_notification_event(self, event: NotificationEvent) -> Lane:
        lane = EventRouter.select_lane(event)
        await self._bus.publish(lane, EventRouter.partition_key(event), event)
        log_with_context(
            self._logger,
            logging.INFO,
            "Published notification event",
            extra={"event_id": event.event_id, "notification_id": event.notification_id, "topic": lane.topic},
        )
        return lane

    async def publish_retry_event(self, event: NotificationEvent) -> NotificationEvent:
        retry_event = replace(
            event,
            event_id=self.new_event_id(event.notification_id),
            event_type=EventType.RETRY,
            retry_count=event.retry_count + 1,
            metadata={**event.metadata, "original_event_id": event.metadata.get("original_event_id", event.event_id)},
        )
        await self._bus.publish(Lane.RETRY, EventRouter.partition_key(retry_event), retry_event)
        log_with_context(
            self._logger,
            logging.INFO,
            "Published retry event",
            extra={"event_id": retry_event.event_id, "retry_count": retry_event.retry_count},
        )
        return retry_event

    async def publish_to_dlq(self, event: NotificationEvent, reason: str) -> NotificationEvent:
        dlq_event = replace(
            event,
            event_id=self.new_event_id(event.notification_id),
            event_type=EventType.DLQ,
            metadata={**event.metadata, "dlq_reason": reason, "dlq_timestamp": self._clock().isoformat()},
        )
        await self._bus.publish(Lane.DEAD_LETTER, EventRouter.partition_key(dlq_event), dlq_event)
        log_with_context(
            self._logger,
            logging.WARNING,
            "Published event to dead-letter lane",
            extra={"event_id": dlq_event.event_id, "notification_id": dlq_event.notification_id, "reason": reason},
        )
        return dlq_event

    async def escalate_notification(self, notification: Notification, reason: str) -> None:
        """Escalation hook for the retry coordinator."""
        if notification.id is None:
            return
        event = NotificationEvent.from_notification(
            notification,
            event_id=self.new_event_id(notification.id),
        )
        _ = await self.publish_to_dlq(event, reason)


class NotificationEventConsumer:
    """Process events from every lane.

    Args:
        store: Notification store
        pipeline: Delivery pipeline
        producer: Used to re-publish on the retry and dead-letter lanes
        dead_letters: Terminal record for dead-letter lane events
        max_transport_retries: Retry-lane redeliveries before dead-letter
        base_delay_ms: Base delay for retry-lane re-publishing
        max_delay_ms: Ceiling on the re-publishing delay
        sleeper: Awaitable pause used by delayed re-publish tasks
    """

    def __init__(
        self,
        store: NotificationStore,
        pipeline: DeliveryPipeline,
        producer: NotificationEventProducer,
        dead_letters: DeadLetterQueue,
        *,
        max_transport_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        clock: Clock = utc_now,
        sleeper: Sleeper = asyncio.sleep,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        self._store: NotificationStore = store
        self._pipeline: DeliveryPipeline = pipeline
        self._producer: NotificationEventProducer = producer
        self._dead_letters: DeadLetterQueue = dead_letters
        self._max_transport_retries: int = max_transport_retries
        self._base_delay_ms: int = base_delay_ms
        self._max_delay_ms: int = max_delay_ms
        self._clock: Clock = clock
        self._sleeper: Sleeper = sleeper
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._redeliveries: set[asyncio.Task[None]] = set()

    def subscribe(self, bus: InMemoryEventBus) -> None:
        bus.subscribe(Lane.NORMAL, self.consume_notification_event)
        bus.subscribe(Lane.HIGH_PRIORITY, self.consume_notification_event)
        bus.subscribe(Lane.RETRY, self.consume_retry_event)
        bus.subscribe(Lane.DEAD_LETTER, self.consume_dead_letter_event)

    @property
    def pending_redeliveries(self) -> int:
        return len(self._redeliveries)

    async def wait_for_redeliveries(self) -> None:
        """Wait until every scheduled re-publish has happened."""
        while self._redeliveries:
            _ = await asyncio.gather(*list(self._redeliveries), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel scheduled re-publishes."""
        tasks = list(self._redeliveries)
        for task in tasks:
            _ = task.cancel()
        _ = await asyncio.gather(*tasks, return_exceptions=True)
        self._redeliveries.clear()

    async def consume_notification_event(self, event: NotificationEvent) -> None:
        """Handle an event from the normal or high-priority lane."""
        with correlation_scope(event.event_id):
            error = await self._process(event)
            if error is not None:
                self._schedule_redelivery(event, error)

    async def consume_retry_event(self, event: NotificationEvent) -> None:
        with correlation_scope(event.event_id):
            if event.retry_count >= self._max_transport_retries:
                log_with_context(
                    self._logger,
                    logging.WARNING,
                    "Max retry attempts reached for event, sending to dead-letter",
                    extra={"event_id": event.event_id, "retry_count": event.retry_count},
                )
                _ = await self._producer.publish_to_dlq(event, MAX_RETRIES_REASON)
                return

            error = await self._process(event)
            if error is not None:
                self._schedule_redelivery(event, error)

    async def consume_dead_letter_event(self, event: NotificationEvent) -> None:
        reason = str(event.metadata.get("dlq_reason", "Unknown"))
        log_with_context(
            self._logger,
            logging.WARNING,
            "Received dead-letter event",
            extra={"event_id": event.event_id, "notification_id": event.notification_id, "reason": reason},
        )

        notification = await self._store.get(event.notification_id)
        if notification is not None and notification.escalated_at is None:
            notification.escalated_at = self._clock()
            notification.metadata["dlq_reason"] = reason
            _ = await self._store.save(notification)

        self._dead_letters.record(
            DeadLetterEntry(
                notification_id=event.notification_id,
                reason=reason,
                event=event,
                recorded_at=self._clock(),
            )
        )

    async def _process(self, event: NotificationEvent) -> str | None:
        """Deliver the event's notification.

        Returns:
            None when the event is settled, otherwise the error that should
            trigger a redelivery
        """
        notification = await self._store.get(event.notification_id)
        if notification is None:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Notification not found for event",
                extra={"event_id": event.event_id, "notification_id": event.notification_id},
            )
            return f"Notification not found: {event.notification_id}"

        if notification.status in {NotificationStatus.SENT, NotificationStatus.DELIVERED, NotificationStatus.CANCELLED}:
            log_with_context(
                self._logger,
                logging.INFO,
                "Notification already settled, skipping duplicate event",
                extra={"event_id": event.event_id, "status": notification.status.value},
            )
            return None

        try:
            outcome = await self._pipeline.deliver(notification)
        except Exception as exc:
            return f"Event processing failed: {sanitize_exception(exc)}"

        if outcome.success:
            log_with_context(
                self._logger,
                logging.INFO,
                "Processed notification event",
                extra={"event_id": event.event_id, "notification_id": event.notification_id},
            )
            return None

        if not outcome.retryable:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Permanent failure for event, not redelivering",
                extra={"event_id": event.event_id, "reason": outcome.message},
            )
            return None

        return f"Failed to process notification {event.notification_id}: {outcome.message}"

    def _schedule_redelivery(self, event: NotificationEvent, error: str) -> None:
        annotated = replace(
            event,
            metadata={**event.metadata, "last_error": error, "error_timestamp": self._clock().isoformat()},
        )
        delay = EventRouter.transport_retry_delay(
            event.retry_count,
            base_delay_ms=self._base_delay_ms,
            max_delay_ms=self._max_delay_ms,
        )
        log_with_context(
            self._logger,
            logging.INFO,
            "Scheduling event redelivery",
            extra={"event_id": event.event_id, "delay_seconds": delay, "error": error},
        )
        task = asyncio.create_task(self._redeliver_later(annotated, delay), name=f"redeliver-{event.event_id}")
        self._redeliveries.add(task)
        task.add_done_callback(self._redeliveries.discard)

    async def _redeliver_later(self, event: NotificationEvent, delay: float) -> None:
        await self._sleeper(delay)
        _ = await self._producer.publish_retry_event(event)

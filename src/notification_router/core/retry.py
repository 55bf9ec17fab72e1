"""Retry policy, escalation and the delayed re-enqueue machinery.

A failed delivery is either re-armed for a later attempt (exponential backoff
of ``2**retry_count`` minutes) or, once the retry ceiling is reached,
escalated to the dead-letter path exactly once. Re-attempts are driven by a
``RetryRedriver`` task that wakes when the earliest ``next_retry_at`` comes
due; nothing sleeps for a backoff interval while holding work.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum

from notification_router.core.pipeline import DeliveryPipeline
from notification_router.types import (
    Clock,
    DeadLetterEntry,
    DeliveryOutcome,
    Notification,
    NotificationStatus,
    NotificationStore,
)
from notification_router.types.models import utc_now
from notification_router.utils.logging import correlation_scope, get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = [
    "DEFAULT_MAX_RETRIES",
    "MAX_RETRIES_REASON",
    "DeadLetterQueue",
    "DelayQueue",
    "RetryCoordinator",
    "RetryDecision",
    "RetryRedriver",
    "backoff_delay",
]

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_REASON = "Max retry attempts exceeded"

type EscalationHook = Callable[[Notification, str], Awaitable[None]]


def backoff_delay(retry_count: int) -> timedelta:
    """Return the wait before attempt number ``retry_count``: ``2**retry_count`` minutes."""
    if retry_count < 0:
        msg = f"retry_count must be >= 0, got {retry_count}"
        raise ValueError(msg)
    return timedelta(minutes=2**retry_count)


class RetryDecision(Enum):
    """What the coordinator did with an attempt's outcome."""

    NONE = "none"
    RETRY_SCHEDULED = "retry_scheduled"
    ESCALATED = "escalated"
    PERMANENT_FAILURE = "permanent_failure"


class DeadLetterQueue:
    """Terminal record of notifications that will not be attempted again."""

    def __init__(self, logger_obj: logging.Logger | None = None) -> None:
        self._entries: list[DeadLetterEntry] = []
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    def record(self, entry: DeadLetterEntry) -> None:
        self._entries.append(entry)
        log_with_context(
            self._logger,
            logging.ERROR,
            "Notification moved to dead-letter",
            extra={"notification_id": entry.notification_id, "reason": entry.reason},
        )

    @property
    def entries(self) -> tuple[DeadLetterEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, notification_id: int) -> bool:
        return any(entry.notification_id == notification_id for entry in self._entries)


class DelayQueue:
    """Min-heap of notification ids keyed by their due time.

    Pushing an id again supersedes its earlier entry. Waiters are woken when
    an entry is pushed so a sleeping re-driver can shorten its wait.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, int]] = []
        self._due: dict[int, datetime] = {}
        self._sequence: itertools.count[int] = itertools.count()
        self._changed: asyncio.Event = asyncio.Event()

    def push(self, notification_id: int, due: datetime) -> None:
        self._due[notification_id] = due
        heapq.heappush(self._heap, (due, next(self._sequence), notification_id))
        self._changed.set()

    def discard(self, notification_id: int) -> None:
        _ = self._due.pop(notification_id, None)

    def pop_due(self, now: datetime) -> list[int]:
        """Remove and return ids whose due time is at or before ``now``."""
        ready: list[int] = []
        while self._heap and self._heap[0][0] <= now:
            due, _, notification_id = heapq.heappop(self._heap)
            if self._due.get(notification_id) != due:
                continue  # superseded or discarded
            del self._due[notification_id]
            ready.append(notification_id)
        return ready

    def next_due(self) -> datetime | None:
        while self._heap and self._due.get(self._heap[0][2]) != self._heap[0][0]:
            _ = heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, notification_id: int) -> bool:
        return notification_id in self._due

    async def wait_for_change(self, timeout: float) -> None:
        """Return after ``timeout`` seconds or as soon as an entry is pushed."""
        self._changed.clear()
        try:
            async with asyncio.timeout(max(timeout, 0.0)):
                _ = await self._changed.wait()
        except TimeoutError:
            pass


class RetryCoordinator:
    """Decide, after each failed attempt, whether to re-arm or escalate.

    Args:
        store: Notification store
        pipeline: Pipeline used for each attempt
        dead_letters: Fallback dead-letter sink when no escalation hook is set
        max_retries: Re-attempts allowed before escalation
        delay_queue: Queue receiving re-armed notifications
        escalation_hook: Optional async hook replacing the direct dead-letter
            record (the engine routes escalations to the bus dead-letter lane
            when the bus is enabled)
        clock: Time source
    """

    def __init__(
        self,
        store: NotificationStore,
        pipeline: DeliveryPipeline,
        dead_letters: DeadLetterQueue,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        delay_queue: DelayQueue | None = None,
        escalation_hook: EscalationHook | None = None,
        clock: Clock = utc_now,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        self._store: NotificationStore = store
        self._pipeline: DeliveryPipeline = pipeline
        self._dead_letters: DeadLetterQueue = dead_letters
        self._max_retries: int = max_retries
        self._delay_queue: DelayQueue = delay_queue if delay_queue is not None else DelayQueue()
        self._escalation_hook: EscalationHook | None = escalation_hook
        self._clock: Clock = clock
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def delay_queue(self) -> DelayQueue:
        return self._delay_queue

    def set_escalation_hook(self, hook: EscalationHook | None) -> None:
        self._escalation_hook = hook

    def should_retry(self, notification: Notification, outcome: DeliveryOutcome | None = None) -> bool:
        """True when the notification failed, is under the ceiling, and the failure is transient."""
        if outcome is not None and not outcome.retryable:
            return False
        return notification.status is NotificationStatus.FAILED and notification.retry_count < self._max_retries

    async def schedule_retry(self, notification: Notification) -> Notification:
        """Re-arm a failed notification for a later attempt."""
        if notification.id is None:
            msg = "Cannot schedule a retry for an unsaved notification"
            raise ValueError(msg)

        notification.retry_count += 1
        notification.next_retry_at = self._clock() + backoff_delay(notification.retry_count)
        notification.status = NotificationStatus.PENDING
        _ = await self._store.save(notification)
        self._delay_queue.push(notification.id, notification.next_retry_at)

        log_with_context(
            self._logger,
            logging.INFO,
            "Scheduled notification retry",
            extra={
                "notification_id": notification.id,
                "retry_count": notification.retry_count,
                "next_retry_at": notification.next_retry_at.isoformat(),
            },
        )
        return notification

    async def escalate(self, notification: Notification, reason: str = MAX_RETRIES_REASON) -> bool:
        """Move a notification to the dead-letter path.

        Returns:
            False if the notification had already been escalated
        """
        if notification.escalated_at is not None or notification.id is None:
            return False

        notification.escalated_at = self._clock()
        notification.next_retry_at = None
        notification.metadata["dlq_reason"] = reason
        _ = await self._store.save(notification)
        self._delay_queue.discard(notification.id)

        if self._escalation_hook is not None:
            await self._escalation_hook(notification, reason)
        else:
            self._dead_letters.record(
                DeadLetterEntry(notification_id=notification.id, reason=reason, recorded_at=self._clock())
            )
        return True

    async def handle_outcome(self, notification: Notification, outcome: DeliveryOutcome) -> RetryDecision:
        """Apply the retry policy to the result of one attempt."""
        if outcome.success or notification.status is not NotificationStatus.FAILED:
            return RetryDecision.NONE

        if not outcome.retryable:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Permanent delivery failure, not retrying",
                extra={"notification_id": notification.id, "reason": outcome.message},
            )
            return RetryDecision.PERMANENT_FAILURE

        if self.should_retry(notification, outcome):
            _ = await self.schedule_retry(notification)
            return RetryDecision.RETRY_SCHEDULED

        if await self.escalate(notification):
            log_with_context(
                self._logger,
                logging.ERROR,
                "Retry attempts exhausted, escalated to dead-letter",
                extra={"notification_id": notification.id, "retry_count": notification.retry_count},
            )
            return RetryDecision.ESCALATED
        return RetryDecision.NONE

    async def attempt(self, notification: Notification) -> DeliveryOutcome:
        """Deliver once through the pipeline and apply the retry policy."""
        outcome = await self._pipeline.deliver(notification)
        _ = await self.handle_outcome(notification, outcome)
        return outcome


class RetryRedriver:
    """Background task re-attempting notifications whose retry time has come.

    Due ids come from the coordinator's delay queue, plus a periodic scan of
    the store for PENDING notifications past ``next_retry_at`` (covering
    retries armed before a restart).
    """

    def __init__(
        self,
        coordinator: RetryCoordinator,
        store: NotificationStore,
        *,
        poll_seconds: float = 30.0,
        clock: Clock = utc_now,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if poll_seconds <= 0:
            msg = "poll_seconds must be greater than zero"
            raise ValueError(msg)
        self._coordinator: RetryCoordinator = coordinator
        self._store: NotificationStore = store
        self._poll_seconds: float = poll_seconds
        self._clock: Clock = clock
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="retry-redriver")
        self._logger.info("Retry re-driver started")

    async def stop(self) -> None:
        if self._task is None:
            return
        _ = self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._logger.info("Retry re-driver stopped")

    async def redrive_due(self) -> int:
        """Attempt every notification that is due now.

        Returns:
            Number of notifications re-attempted
        """
        now = self._clock()
        due_ids = dict.fromkeys(self._coordinator.delay_queue.pop_due(now))
        for notification in await self._store.find_due_retries(now):
            if notification.id is not None:
                due_ids.setdefault(notification.id)

        attempted = 0
        for notification_id in due_ids:
            if await self._redrive(notification_id, now):
                attempted += 1
        return attempted

    async def _redrive(self, notification_id: int, now: datetime) -> bool:
        notification = await self._store.get(notification_id)
        if (
            notification is None
            or notification.status is not NotificationStatus.PENDING
            or notification.next_retry_at is None
            or notification.next_retry_at > now
        ):
            return False

        with correlation_scope(f"notification-{notification_id}"):
            log_with_context(
                self._logger,
                logging.INFO,
                "Re-attempting notification",
                extra={"notification_id": notification_id, "retry_count": notification.retry_count},
            )
            try:
                _ = await self._coordinator.attempt(notification)
            except Exception as exc:
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Retry attempt crashed",
                    extra={"notification_id": notification_id, "error": sanitize_exception(exc)},
                )
                return False
        return True

    async def _run(self) -> None:
        while True:
            try:
                _ = await self.redrive_due()
            except Exception as exc:
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Retry re-drive pass failed",
                    extra={"error": sanitize_exception(exc)},
                )
            await self._coordinator.delay_queue.wait_for_change(self._seconds_until_next())

    def _seconds_until_next(self) -> float:
        next_due = self._coordinator.delay_queue.next_due()
        if next_due is None:
            return self._poll_seconds
        return min(max((next_due - self._clock()).total_seconds(), 0.0), self._poll_seconds)

"""Batch orchestrator fanning one message out to many recipients.

Recipients are resolved through the directory, one notification is created
per recipient, and the notifications are either handed to the scheduler (for
deferred batches) or delivered through the pipeline in contiguous chunks of
``batch_size``. Chunks run sequentially or concurrently; concurrent chunks
are bounded by ``max_parallel_chunks`` and collect results into per-chunk
lists that are merged in chunk order once every chunk has finished.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import uuid4

from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.scheduler import NotificationScheduler
from notification_router.types import (
    BatchRequest,
    BatchResult,
    BatchSettings,
    BatchStatistics,
    BatchStatus,
    Clock,
    IdFactory,
    Notification,
    NotificationStatus,
    NotificationStore,
    Recipient,
    RecipientDirectory,
    RecipientResult,
    Sleeper,
)
from notification_router.types.models import utc_now
from notification_router.utils.logging import correlation_scope, get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = [
    "FAILED_MESSAGE",
    "NO_VALID_USERS",
    "PAST_SCHEDULE_MESSAGE",
    "SENT_MESSAGE",
    "BatchOrchestrator",
    "partition",
]

NO_VALID_USERS = "No valid users found"
PAST_SCHEDULE_MESSAGE = "Scheduled time must be in the future"
SENT_MESSAGE = "Sent successfully"
FAILED_MESSAGE = "Failed to send"


def _batch_id() -> str:
    return f"batch_{uuid4().hex}"


def partition[T](items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into contiguous chunks of at most ``size`` elements."""
    if size <= 0:
        msg = f"Chunk size must be greater than zero, got {size}"
        raise ValueError(msg)
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


@dataclass(slots=True)
class _ChunkRun:
    results: list[RecipientResult]
    elapsed_ms: float
    stopped_early: bool = False


class BatchOrchestrator:
    """Run batch requests against the pipeline or the scheduler.

    Args:
        directory: Recipient lookup
        store: Notification store
        pipeline: Delivery pipeline used for immediate batches
        scheduler: Scheduler used for deferred batches
        defaults: Settings applied when a request carries none
        max_parallel_chunks: Upper bound on concurrently running chunks
        sleeper: Awaitable pause between chunks
    """

    def __init__(
        self,
        directory: RecipientDirectory,
        store: NotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        *,
        defaults: BatchSettings | None = None,
        max_parallel_chunks: int = 8,
        clock: Clock = utc_now,
        sleeper: Sleeper = asyncio.sleep,
        id_factory: IdFactory = _batch_id,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if max_parallel_chunks <= 0:
            msg = "max_parallel_chunks must be greater than zero"
            raise ValueError(msg)
        self._directory: RecipientDirectory = directory
        self._store: NotificationStore = store
        self._pipeline: DeliveryPipeline = pipeline
        self._scheduler: NotificationScheduler = scheduler
        self._defaults: BatchSettings = defaults if defaults is not None else BatchSettings()
        self._max_parallel_chunks: int = max_parallel_chunks
        self._clock: Clock = clock
        self._sleeper: Sleeper = sleeper
        self._id_factory: IdFactory = id_factory
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    async def process(self, request: BatchRequest) -> BatchResult:
        """Fan the request out and return the aggregated result."""
        result = BatchResult(
            batch_id=self._id_factory(),
            total_users=len(request.user_ids),
            started_at=self._clock(),
        )
        start = time.perf_counter()

        with correlation_scope(result.batch_id):
            log_with_context(
                self._logger,
                logging.INFO,
                "Starting batch",
                extra={
                    "batch_id": result.batch_id,
                    "total_users": result.total_users,
                    "channel_type": request.channel_type.value,
                    "scheduled": request.scheduled_at is not None,
                },
            )
            result.status = BatchStatus.PROCESSING
            try:
                await self._process(request, result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                result.status = BatchStatus.FAILED
                result.error_message = f"Processing failed: {sanitize_exception(exc)}"
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Batch processing failed",
                    extra={"batch_id": result.batch_id, "error": result.error_message},
                )

            result.completed_at = self._clock()
            result.processing_time_ms = round((time.perf_counter() - start) * 1000.0, 2)
            log_with_context(
                self._logger,
                logging.INFO,
                "Batch finished",
                extra={
                    "batch_id": result.batch_id,
                    "status": result.status.value,
                    "success_count": result.success_count,
                    "failure_count": result.failure_count,
                    "processing_time_ms": result.processing_time_ms,
                },
            )
        return result

    async def _process(self, request: BatchRequest, result: BatchResult) -> None:
        if request.scheduled_at is not None and request.scheduled_at <= self._clock():
            result.status = BatchStatus.FAILED
            result.error_message = PAST_SCHEDULE_MESSAGE
            log_with_context(
                self._logger,
                logging.WARNING,
                "Rejected batch scheduled in the past",
                extra={"batch_id": result.batch_id, "scheduled_at": request.scheduled_at.isoformat()},
            )
            return

        recipients = await self._resolve_recipients(request.user_ids)
        if not recipients:
            result.status = BatchStatus.FAILED
            result.error_message = NO_VALID_USERS
            return

        notifications = [await self._create_notification(request, recipient) for recipient in recipients]

        if request.scheduled_at is not None:
            start = time.perf_counter()
            results = await self._schedule_all(notifications)
            chunk_runs = [_ChunkRun(results=results, elapsed_ms=(time.perf_counter() - start) * 1000.0)]
            total_chunks = 1
        else:
            settings = request.settings if request.settings is not None else self._defaults
            chunks = partition(notifications, settings.batch_size)
            total_chunks = len(chunks)
            if settings.parallel:
                chunk_runs = await self._run_parallel(chunks, settings)
            else:
                chunk_runs = await self._run_sequential(chunks, settings)

        for run in chunk_runs:
            result.results.extend(run.results)
        self._aggregate(result, chunk_runs, total_chunks)

    async def _resolve_recipients(self, user_ids: Sequence[int]) -> list[Recipient]:
        recipients = list(await self._directory.get_many(user_ids))
        missing = set(user_ids) - {recipient.user_id for recipient in recipients}
        if missing:
            log_with_context(
                self._logger,
                logging.WARNING,
                "Some users in batch were not found",
                extra={"missing_user_ids": sorted(missing)},
            )
        return recipients

    async def _create_notification(self, request: BatchRequest, recipient: Recipient) -> Notification:
        notification = Notification(
            recipient=recipient,
            title=request.title,
            content=request.content,
            channel_type=request.channel_type,
            priority=request.priority,
            status=NotificationStatus.SCHEDULED if request.scheduled_at is not None else NotificationStatus.PENDING,
            metadata=dict(request.metadata),
            scheduled_at=request.scheduled_at,
        )
        _ = await self._store.save(notification)
        return notification

    async def _schedule_all(self, notifications: Sequence[Notification]) -> list[RecipientResult]:
        results: list[RecipientResult] = []
        for notification in notifications:
            try:
                job = await self._scheduler.schedule(notification)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                results.append(
                    self._recipient_result(notification, False, f"Scheduling failed: {sanitize_exception(exc)}")
                )
            else:
                results.append(
                    self._recipient_result(
                        notification,
                        True,
                        f"Scheduled successfully for {job.scheduled_time.isoformat()}",
                    )
                )
        return results

    async def _run_sequential(self, chunks: list[list[Notification]], settings: BatchSettings) -> list[_ChunkRun]:
        runs: list[_ChunkRun] = []
        for index, chunk in enumerate(chunks):
            runs.append(await self._run_chunk(chunk, settings.continue_on_error))
            if index < len(chunks) - 1:
                await self._pause(settings.delay_between_batches_ms)
        return runs

    async def _run_parallel(self, chunks: list[list[Notification]], settings: BatchSettings) -> list[_ChunkRun]:
        semaphore = asyncio.Semaphore(self._max_parallel_chunks)
        runs: list[_ChunkRun | None] = [None] * len(chunks)
        last_index = len(chunks) - 1

        async def _chunk_task(index: int, chunk: list[Notification]) -> None:
            async with semaphore:
                runs[index] = await self._run_chunk(chunk, settings.continue_on_error)
            if index != last_index:
                await self._pause(settings.delay_between_batches_ms)

        async with asyncio.TaskGroup() as group:
            for index, chunk in enumerate(chunks):
                _ = group.create_task(_chunk_task(index, chunk), name=f"batch-chunk-{index}")

        return [run for run in runs if run is not None]

    async def _run_chunk(self, chunk: Sequence[Notification], continue_on_error: bool) -> _ChunkRun:
        start = time.perf_counter()
        results: list[RecipientResult] = []
        stopped_early = False

        for notification in chunk:
            try:
                outcome = await self._pipeline.deliver(notification)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                item = self._recipient_result(notification, False, f"Error: {sanitize_exception(exc)}")
            else:
                item = self._recipient_result(
                    notification,
                    outcome.success,
                    SENT_MESSAGE if outcome.success else FAILED_MESSAGE,
                )
            results.append(item)

            if not item.success and not continue_on_error:
                stopped_early = True
                log_with_context(
                    self._logger,
                    logging.WARNING,
                    "Stopping chunk after first failure",
                    extra={"notification_id": notification.id, "remaining": len(chunk) - len(results)},
                )
                break

        return _ChunkRun(
            results=results,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
            stopped_early=stopped_early,
        )

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleeper(delay_ms / 1000.0)

    def _recipient_result(self, notification: Notification, success: bool, message: str) -> RecipientResult:
        return RecipientResult(
            user_id=notification.recipient.user_id,
            notification_id=notification.id,
            success=success,
            message=message,
            processed_at=self._clock(),
        )

    def _aggregate(self, result: BatchResult, runs: Sequence[_ChunkRun], total_chunks: int) -> None:
        result.success_count = sum(1 for item in result.results if item.success)
        result.failure_count = sum(1 for item in result.results if not item.success)

        if result.failure_count == 0:
            result.status = BatchStatus.COMPLETED
        elif result.success_count > 0:
            result.status = BatchStatus.PARTIALLY_FAILED
        else:
            result.status = BatchStatus.FAILED

        processed = len(result.results)
        result.statistics = BatchStatistics(
            total_batches=total_chunks,
            processed_batches=len(runs),
            average_processing_time_per_batch=(
                round(sum(run.elapsed_ms for run in runs) / len(runs), 2) if runs else 0.0
            ),
            success_rate=round(result.success_count / processed * 100.0, 2) if processed else 0.0,
            stopped_batches=sum(1 for run in runs if run.stopped_early),
            error_breakdown=dict(Counter(item.message for item in result.results if not item.success)),
        )

"""Deferred delivery: durable job records plus APScheduler date triggers.

Each scheduled notification gets a ``ScheduledJob`` record (persisted before
the job is armed) and a one-shot ``DateTrigger`` job on an injected
``AsyncIOScheduler``. When the job fires, the executor delivers the
notification and the record is marked completed with a completion message.
Cancellation removes the armed job and marks the record completed with a
cancellation reason; job records are never deleted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # pyright: ignore[reportMissingTypeStubs]
from apscheduler.triggers.date import DateTrigger  # pyright: ignore[reportMissingTypeStubs]

from notification_router.exceptions import SchedulingError
from notification_router.types import (
    Clock,
    IdFactory,
    JobExecutor,
    Notification,
    ScheduledJob,
    ScheduledJobStore,
)
from notification_router.types.models import ensure_utc, utc_now
from notification_router.utils.logging import correlation_scope, get_logger, log_with_context
from notification_router.utils.sanitization import sanitize_exception

__all__ = [
    "CANCELLATION_REASON",
    "DEFAULT_JOB_GROUP",
    "JOB_FAILED_MESSAGE",
    "JOB_SUCCESS_MESSAGE",
    "NotificationScheduler",
    "create_job_runner",
]

DEFAULT_JOB_GROUP = "notification_jobs"
DEFAULT_MISFIRE_BUFFER_SECONDS = 30.0
JOB_SUCCESS_MESSAGE = "Notification sent successfully"
JOB_FAILED_MESSAGE = "Failed to send notification"
CANCELLATION_REASON = "Manually cancelled"

type JobIdentity = tuple[str, str]


def _short_id() -> str:
    return uuid4().hex[:8]


def create_job_runner() -> AsyncIOScheduler:
    """Build the APScheduler instance that fires delivery jobs.

    Late jobs always run: fire times in the past are already pushed forward
    by the misfire buffer before a job is armed.
    """
    return AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": None,
        },
    )


class NotificationScheduler:
    """Arm, fire, cancel and recover single-shot delivery jobs.

    The scheduler must be started before jobs can be armed and should be
    shut down with the engine. It starts the job runner if it is not running
    yet and shuts it down again on ``shutdown()``.

    Args:
        job_store: Persistence for job records
        executor: Called with the notification id when a job fires
        runner: APScheduler instance that fires jobs; built by
            ``create_job_runner`` when omitted
        job_group: Group shared by all jobs created here
        misfire_buffer_seconds: Delay applied when a fire time already passed
        recover_on_start: Re-arm uncompleted jobs found in the store on start
        clock: Time source for fire times and record timestamps
        id_factory: Suffix generator for job keys
    """

    def __init__(
        self,
        job_store: ScheduledJobStore,
        executor: JobExecutor,
        *,
        runner: AsyncIOScheduler | None = None,
        job_group: str = DEFAULT_JOB_GROUP,
        misfire_buffer_seconds: float = DEFAULT_MISFIRE_BUFFER_SECONDS,
        recover_on_start: bool = True,
        clock: Clock = utc_now,
        id_factory: IdFactory = _short_id,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if misfire_buffer_seconds < 0:
            msg = "misfire_buffer_seconds must be >= 0"
            raise ValueError(msg)
        self._job_store: ScheduledJobStore = job_store
        self._executor: JobExecutor = executor
        self._runner: AsyncIOScheduler = runner if runner is not None else create_job_runner()
        self._job_group: str = job_group
        self._misfire_buffer: timedelta = timedelta(seconds=misfire_buffer_seconds)
        self._recover_on_start: bool = recover_on_start
        self._clock: Clock = clock
        self._id_factory: IdFactory = id_factory
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._executing: set[asyncio.Task[object]] = set()
        self._running: bool = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start accepting jobs and re-arm uncompleted ones from the store."""
        if self._running:
            return
        if not self._runner.running:
            self._runner.start()
        self._running = True

        recovered = 0
        if self._recover_on_start:
            for job in await self._job_store.find_active():
                if self._runner.get_job(job.job_key) is not None:
                    continue
                self._arm(job, self._fire_time(job.scheduled_time, job.job_key))
                recovered += 1

        log_with_context(
            self._logger,
            logging.INFO,
            "Scheduler started",
            extra={"job_group": self._job_group, "recovered_jobs": recovered},
        )

    async def shutdown(self) -> None:
        """Stop firing jobs and wait for deliveries already in progress.

        Armed jobs are dropped from the runner; their records stay
        uncompleted so the next ``start()`` recovers them.
        """
        self._running = False
        dropped = 0
        if self._runner.running:
            dropped = len(self._runner.get_jobs())
            self._runner.pause()

        in_flight = list(self._executing)
        if in_flight:
            _ = await asyncio.gather(*in_flight, return_exceptions=True)

        if self._runner.running:
            self._runner.shutdown(wait=False)

        log_with_context(
            self._logger,
            logging.INFO,
            "Scheduler shut down",
            extra={"dropped_jobs": dropped, "awaited_deliveries": len(in_flight)},
        )

    async def schedule(self, notification: Notification) -> ScheduledJob:
        """Persist a job for the notification and arm it.

        Raises:
            ValueError: If the notification has no ``scheduled_at`` or no id
            SchedulingError: If the scheduler is not running
        """
        if notification.scheduled_at is None:
            msg = "Notification scheduled_at cannot be null"
            raise ValueError(msg)
        if notification.id is None:
            msg = "Notification must be saved before it can be scheduled"
            raise ValueError(msg)
        if not self._running:
            msg = f"Failed to schedule notification {notification.id}: scheduler is not running"
            raise SchedulingError(msg)

        job_key = f"notification_{notification.id}_{self._id_factory()}"
        scheduled_time = ensure_utc(notification.scheduled_at)
        fire_at = self._fire_time(scheduled_time, job_key)
        now = self._clock()

        job = ScheduledJob(
            job_key=job_key,
            job_group=self._job_group,
            notification_id=notification.id,
            scheduled_time=scheduled_time,
            job_data={
                "notificationId": notification.id,
                "channelType": notification.channel_type.value,
                "priority": notification.priority.value,
                "title": notification.title,
                "scheduledBy": "system",
                "createdAt": now.isoformat(),
                "fireAt": fire_at.isoformat(),
            },
            created_at=now,
        )
        job = await self._job_store.save(job)
        self._arm(job, fire_at)

        log_with_context(
            self._logger,
            logging.INFO,
            "Scheduled notification",
            extra={
                "notification_id": notification.id,
                "job_key": job_key,
                "fire_at": fire_at.isoformat(),
            },
        )
        return job

    async def cancel(self, notification_id: int) -> bool:
        """Cancel the active job for the notification.

        Returns:
            True if an active job was cancelled, False if none existed
        """
        job = await self._job_store.find_active_by_notification(notification_id)
        if job is None:
            log_with_context(
                self._logger,
                logging.WARNING,
                "No active scheduled job found",
                extra={"notification_id": notification_id},
            )
            return False

        # A job that already fired has left the runner
        if self._runner.get_job(job.job_key) is not None:
            self._runner.remove_job(job.job_key)

        job.is_completed = True
        job.job_data["cancellationReason"] = CANCELLATION_REASON
        job.job_data["cancelledAt"] = self._clock().isoformat()
        _ = await self._job_store.save(job)

        log_with_context(
            self._logger,
            logging.INFO,
            "Cancelled scheduled notification",
            extra={"notification_id": notification_id, "job_key": job.job_key},
        )
        return True

    async def reschedule(self, notification: Notification) -> ScheduledJob:
        """Cancel any active job for the notification and schedule a new one."""
        if notification.id is not None:
            _ = await self.cancel(notification.id)
        return await self.schedule(notification)

    async def is_job_scheduled(self, notification_id: int) -> bool:
        return await self._job_store.find_active_by_notification(notification_id) is not None

    def scheduler_info(self) -> dict[str, object]:
        """Return a summary of the scheduler state."""
        return {
            "running": self._running,
            "job_group": self._job_group,
            "armed_jobs": len(self._runner.get_jobs()),
            "executing_jobs": len(self._executing),
            "misfire_buffer_seconds": self._misfire_buffer.total_seconds(),
        }

    def _fire_time(self, scheduled_time: datetime, job_key: str) -> datetime:
        now = self._clock()
        if scheduled_time <= now:
            fire_at = now + self._misfire_buffer
            log_with_context(
                self._logger,
                logging.WARNING,
                "Scheduled time is in the past, delaying job",
                extra={
                    "job_key": job_key,
                    "scheduled_time": scheduled_time.isoformat(),
                    "fire_at": fire_at.isoformat(),
                },
            )
            return fire_at
        return scheduled_time

    def _arm(self, job: ScheduledJob, fire_at: datetime) -> None:
        _ = self._runner.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=fire_at),
            args=[job.identity, job.notification_id],
            id=job.job_key,
            name=f"Deliver notification {job.notification_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _run_job(self, identity: JobIdentity, notification_id: int) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._executing.add(task)
        try:
            with correlation_scope(identity[0]):
                try:
                    sent = await self._executor(notification_id)
                    message = JOB_SUCCESS_MESSAGE if sent else JOB_FAILED_MESSAGE
                    level = logging.INFO if sent else logging.WARNING
                except Exception as exc:
                    message = f"Job execution failed: {sanitize_exception(exc)}"
                    level = logging.ERROR

                log_with_context(
                    self._logger,
                    level,
                    "Scheduled job executed",
                    extra={"notification_id": notification_id, "job_key": identity[0], "result": message},
                )
                await self._complete(identity, message)
        finally:
            if task is not None:
                self._executing.discard(task)

    async def _complete(self, identity: JobIdentity, message: str) -> None:
        job = await self._job_store.get(*identity)
        if job is None:
            return
        job.is_completed = True
        job.job_data["completionMessage"] = message
        job.job_data["completedAt"] = self._clock().isoformat()
        _ = await self._job_store.save(job)

"""Tests for batch fan-out."""

from __future__ import annotations

from collections.abc import AsyncIterator, Collection, Sequence
from datetime import timedelta
from typing import override

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # pyright: ignore[reportMissingTypeStubs]

from notification_router.core.batch import (
    FAILED_MESSAGE,
    NO_VALID_USERS,
    PAST_SCHEDULE_MESSAGE,
    SENT_MESSAGE,
    BatchOrchestrator,
    partition,
)
from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.registry import ChannelRegistry
from notification_router.core.scheduler import NotificationScheduler
from notification_router.storage.memory import (
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryScheduledJobStore,
)
from notification_router.types import (
    BatchRequest,
    BatchSettings,
    BatchStatus,
    ChannelType,
    DeliveryOutcome,
    Notification,
    NotificationStatus,
    Recipient,
)
from tests.fixtures.engine_doubles import FIXED_NOW, FakeClock, RecordingSleeper, StubChannel, make_recipient

OK = DeliveryOutcome.ok("Email sent successfully")
FAIL = DeliveryOutcome.failure("SMTP email failed", "mailbox unavailable")


class ExplodingPipeline(DeliveryPipeline):
    """Pipeline double whose deliver raises."""

    @override
    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        msg = "store offline"
        raise RuntimeError(msg)


class TrackingChannel(StubChannel):
    """Channel double recording peak concurrent sends; fails listed recipients."""

    def __init__(self, *, failing_user_ids: Collection[int] = (), delay: float = 0.01) -> None:
        super().__init__(delay=delay)
        self.failing_user_ids: set[int] = set(failing_user_ids)
        self.in_flight: int = 0
        self.peak: int = 0

    @override
    async def send(self, notification: Notification) -> DeliveryOutcome:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            outcome = await super().send(notification)
        finally:
            self.in_flight -= 1
        if notification.recipient.user_id in self.failing_user_ids:
            return FAIL
        return outcome


class BrokenDirectory:
    async def get(self, user_id: int) -> Recipient | None:
        return None

    async def get_many(self, user_ids: Sequence[int]) -> Sequence[Recipient]:
        msg = "directory unavailable"
        raise ConnectionError(msg)


def email_batch(user_ids: list[int], **overrides: object) -> BatchRequest:
    data: dict[str, object] = {
        "user_ids": user_ids,
        "title": "Service update",
        "content": "Maintenance tonight",
        "channel_type": ChannelType.EMAIL,
    }
    data.update(overrides)
    return BatchRequest.model_validate(data)


@pytest.fixture
async def scheduler(
    job_store: InMemoryScheduledJobStore,
    pipeline: DeliveryPipeline,
    clock: FakeClock,
    job_runner: AsyncIOScheduler,
) -> AsyncIterator[NotificationScheduler]:
    scheduler = NotificationScheduler(job_store, pipeline.deliver_scheduled, runner=job_runner, clock=clock)
    await scheduler.start()
    yield scheduler
    await scheduler.shutdown()


def build_orchestrator(
    directory: InMemoryRecipientDirectory,
    store: InMemoryNotificationStore,
    pipeline: DeliveryPipeline,
    scheduler: NotificationScheduler,
    clock: FakeClock,
    sleeper: RecordingSleeper,
) -> BatchOrchestrator:
    return BatchOrchestrator(
        directory,
        store,
        pipeline,
        scheduler,
        clock=clock,
        sleeper=sleeper,
        id_factory=lambda: "batch_test",
    )


def pipeline_with(channel: StubChannel, store: InMemoryNotificationStore, clock: FakeClock) -> DeliveryPipeline:
    registry = ChannelRegistry()
    _ = registry.register(channel)
    return DeliveryPipeline(registry, store, clock=clock)


class TestPartition:
    def test_contiguous_chunks(self) -> None:
        assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_empty(self) -> None:
        assert partition([], 3) == []

    def test_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="greater than zero"):
            _ = partition([1], 0)


class TestImmediateBatch:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [True, False])
    async def test_all_recipients_sent_in_order(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
        email_channel: StubChannel,
        parallel: bool,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        request = email_batch([1, 2, 3], settings=BatchSettings(batch_size=2, parallel=parallel))

        result = await orchestrator.process(request)

        assert result.batch_id == "batch_test"
        assert result.status is BatchStatus.COMPLETED
        assert result.total_users == 3
        assert result.success_count == 3
        assert result.failure_count == 0
        assert [item.user_id for item in result.results] == [1, 2, 3]
        assert {item.message for item in result.results} == {SENT_MESSAGE}
        assert result.statistics.total_batches == 2
        assert result.statistics.processed_batches == 2
        assert result.statistics.success_rate == 100.0
        assert result.completed_at == FIXED_NOW
        assert result.processing_time_ms is not None
        assert email_channel.calls == 3
        # one pause between two chunks
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_sequential_pause_between_chunks(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        settings = BatchSettings(batch_size=1, delay_between_batches_ms=500, parallel=False)

        result = await orchestrator.process(email_batch([1, 2, 3], settings=settings))

        assert result.statistics.total_batches == 3
        assert sleeper.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_zero_delay_never_sleeps(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        settings = BatchSettings(batch_size=1, delay_between_batches_ms=0)

        _ = await orchestrator.process(email_batch([1, 2, 3], settings=settings))

        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_partial_failure_statistics(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        channel = StubChannel(outcomes=[OK, FAIL, OK])
        pipeline = pipeline_with(channel, store, clock)
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([1, 2, 3], settings=BatchSettings(parallel=False)))

        assert result.status is BatchStatus.PARTIALLY_FAILED
        assert result.success_count == 2
        assert result.failure_count == 1
        assert [item.message for item in result.results] == [SENT_MESSAGE, FAILED_MESSAGE, SENT_MESSAGE]
        assert result.statistics.success_rate == 66.67
        assert result.statistics.error_breakdown == {FAILED_MESSAGE: 1}

        failed_id = result.results[1].notification_id
        assert failed_id is not None
        failed = await store.get(failed_id)
        assert failed is not None
        assert failed.status is NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_stop_on_first_failure(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        channel = StubChannel(outcomes=[OK, FAIL, OK])
        pipeline = pipeline_with(channel, store, clock)
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        settings = BatchSettings(parallel=False, continue_on_error=False)

        result = await orchestrator.process(email_batch([1, 2, 3], settings=settings))

        assert [item.user_id for item in result.results] == [1, 2]
        assert result.status is BatchStatus.PARTIALLY_FAILED
        assert channel.calls == 2
        assert result.statistics.stopped_batches == 1
        statistics = result.to_dict()["statistics"]
        assert isinstance(statistics, dict)
        assert statistics["stopped_batches"] == 1

    @pytest.mark.asyncio
    async def test_parallel_stop_only_cuts_failing_chunk(
        self,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        directory = InMemoryRecipientDirectory([make_recipient(user_id) for user_id in range(1, 7)])
        channel = TrackingChannel(failing_user_ids={1})
        pipeline = pipeline_with(channel, store, clock)
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        settings = BatchSettings(batch_size=3, parallel=True, continue_on_error=False)

        result = await orchestrator.process(email_batch([1, 2, 3, 4, 5, 6], settings=settings))

        assert [item.user_id for item in result.results] == [1, 4, 5, 6]
        assert [item.success for item in result.results] == [False, True, True, True]
        assert result.status is BatchStatus.PARTIALLY_FAILED
        assert result.statistics.total_batches == 2
        assert result.statistics.processed_batches == 2
        assert result.statistics.stopped_batches == 1
        assert sorted(item.recipient.user_id for item in channel.sent) == [1, 4, 5, 6]
        for skipped_user in (2, 3):
            (skipped,) = (await store.list_by_recipient(skipped_user, page=0, size=10)).items
            assert skipped.status is NotificationStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("max_parallel_chunks", "expected_peak"), [(1, 1), (2, 2), (8, 6)])
    async def test_max_parallel_chunks_caps_concurrency(
        self,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
        max_parallel_chunks: int,
        expected_peak: int,
    ) -> None:
        directory = InMemoryRecipientDirectory([make_recipient(user_id) for user_id in range(1, 7)])
        channel = TrackingChannel()
        pipeline = pipeline_with(channel, store, clock)
        orchestrator = BatchOrchestrator(
            directory,
            store,
            pipeline,
            scheduler,
            max_parallel_chunks=max_parallel_chunks,
            clock=clock,
            sleeper=sleeper,
        )
        settings = BatchSettings(batch_size=1, parallel=True, delay_between_batches_ms=0)

        result = await orchestrator.process(email_batch([1, 2, 3, 4, 5, 6], settings=settings))

        assert result.status is BatchStatus.COMPLETED
        assert result.success_count == 6
        assert [item.user_id for item in result.results] == [1, 2, 3, 4, 5, 6]
        assert channel.peak == expected_peak

    @pytest.mark.asyncio
    async def test_all_failures_mark_batch_failed(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        pipeline = pipeline_with(StubChannel(outcomes=[FAIL]), store, clock)
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([1, 2]))

        assert result.status is BatchStatus.FAILED
        assert result.statistics.success_rate == 0.0
        assert result.statistics.error_breakdown == {FAILED_MESSAGE: 2}

    @pytest.mark.asyncio
    async def test_pipeline_exception_recorded_per_recipient(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        pipeline = ExplodingPipeline(ChannelRegistry(), store, clock=clock)
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([1]))

        assert [item.message for item in result.results] == ["Error: RuntimeError: store offline"]
        assert result.status is BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_users_skipped(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([1, 42]))

        assert result.total_users == 2
        assert [item.user_id for item in result.results] == [1]
        assert result.status is BatchStatus.COMPLETED


class TestBatchFailures:
    @pytest.mark.asyncio
    async def test_no_valid_users(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([98, 99]))

        assert result.status is BatchStatus.FAILED
        assert result.error_message == NO_VALID_USERS
        assert result.results == []
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_batch(
        self,
        store: InMemoryNotificationStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        orchestrator = BatchOrchestrator(BrokenDirectory(), store, pipeline, scheduler, clock=clock, sleeper=sleeper)

        result = await orchestrator.process(email_batch([1]))

        assert result.status is BatchStatus.FAILED
        assert result.error_message == "Processing failed: ConnectionError: directory unavailable"
        assert result.batch_id.startswith("batch_")
        assert result.completed_at is not None


class TestScheduledBatch:
    @pytest.mark.asyncio
    async def test_every_recipient_scheduled(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        job_store: InMemoryScheduledJobStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
        email_channel: StubChannel,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)
        when = FIXED_NOW + timedelta(hours=1)

        result = await orchestrator.process(email_batch([1, 2], scheduled_at=when))

        assert result.status is BatchStatus.COMPLETED
        assert result.statistics.total_batches == 1
        assert [item.message for item in result.results] == [f"Scheduled successfully for {when.isoformat()}"] * 2
        assert email_channel.calls == 0
        assert len(await job_store.find_active()) == 2
        for item in result.results:
            assert item.notification_id is not None
            stored = await store.get(item.notification_id)
            assert stored is not None
            assert stored.status is NotificationStatus.SCHEDULED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(minutes=-5)])
    async def test_past_schedule_rejected_without_notifications(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        job_store: InMemoryScheduledJobStore,
        pipeline: DeliveryPipeline,
        scheduler: NotificationScheduler,
        clock: FakeClock,
        sleeper: RecordingSleeper,
        email_channel: StubChannel,
        offset: timedelta,
    ) -> None:
        orchestrator = build_orchestrator(directory, store, pipeline, scheduler, clock, sleeper)

        result = await orchestrator.process(email_batch([1, 2], scheduled_at=FIXED_NOW + offset))

        assert result.status is BatchStatus.FAILED
        assert result.error_message == PAST_SCHEDULE_MESSAGE
        assert result.results == []
        assert result.completed_at == FIXED_NOW
        assert await store.count() == 0
        assert await job_store.find_active() == []
        assert email_channel.calls == 0

    @pytest.mark.asyncio
    async def test_scheduling_failure_recorded(
        self,
        directory: InMemoryRecipientDirectory,
        store: InMemoryNotificationStore,
        job_store: InMemoryScheduledJobStore,
        pipeline: DeliveryPipeline,
        clock: FakeClock,
        sleeper: RecordingSleeper,
    ) -> None:
        stopped = NotificationScheduler(job_store, pipeline.deliver_scheduled, clock=clock)
        orchestrator = build_orchestrator(directory, store, pipeline, stopped, clock, sleeper)

        result = await orchestrator.process(email_batch([1], scheduled_at=FIXED_NOW + timedelta(hours=1)))

        assert result.status is BatchStatus.FAILED
        assert result.results[0].message.startswith("Scheduling failed: SchedulingError: ")


def test_max_parallel_chunks_must_be_positive(
    directory: InMemoryRecipientDirectory,
    store: InMemoryNotificationStore,
    pipeline: DeliveryPipeline,
    job_store: InMemoryScheduledJobStore,
) -> None:
    scheduler = NotificationScheduler(job_store, pipeline.deliver_scheduled)
    with pytest.raises(ValueError, match="max_parallel_chunks"):
        _ = BatchOrchestrator(directory, store, pipeline, scheduler, max_parallel_chunks=0)

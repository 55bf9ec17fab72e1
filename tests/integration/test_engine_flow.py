"""End-to-end flows through a fully wired engine."""

from __future__ import annotations

import asyncio
import io
from datetime import timedelta

import pytest

from notification_router.core.config import MainConfig
from notification_router.core.engine import NotificationEngine
from notification_router.core.registry import ChannelRegistry
from notification_router.core.retry import MAX_RETRIES_REASON
from notification_router.storage.memory import InMemoryRecipientDirectory
from notification_router.types import (
    BatchRequest,
    BatchStatus,
    ChannelType,
    DeliveryOutcome,
    Lane,
    NotificationRequest,
    NotificationStatus,
    Priority,
    Recipient,
)
from notification_router.types.models import utc_now
from tests.fixtures.engine_doubles import FakeClock, StubChannel

pytestmark = pytest.mark.integration


def stub_engine(
    recipients: list[Recipient],
    clock: FakeClock,
    channel: StubChannel,
    config: MainConfig | None = None,
) -> NotificationEngine:
    registry = ChannelRegistry()
    _ = registry.register(channel)
    return NotificationEngine(
        config,
        directory=InMemoryRecipientDirectory(recipients),
        registry=registry,
        clock=clock,
    )


class TestRetryFlow:
    """Failed deliveries are re-attempted with growing delays, then escalated."""

    @pytest.mark.asyncio
    async def test_retries_exhausted_end_in_dead_letter(self, recipients: list[Recipient], clock: FakeClock) -> None:
        channel = StubChannel(outcomes=[DeliveryOutcome.failure("SMTP email failed", "421 try later")])
        engine = stub_engine(recipients, clock, channel)
        request = NotificationRequest(user_id=1, title="Invoice", content="Due", channel_type=ChannelType.EMAIL)

        created = await engine.service.send_notification(request)
        assert created.id is not None
        retry_times = [created.next_retry_at]

        for minutes in (2, 4, 8):
            assert await engine.redriver.redrive_due() == 0
            _ = clock.advance(minutes=minutes)
            assert await engine.redriver.redrive_due() == 1
            stored = await engine.service.get_notification(created.id)
            retry_times.append(stored.next_retry_at)

        final = await engine.service.get_notification(created.id)
        assert channel.calls == 4
        assert final.status is NotificationStatus.FAILED
        assert final.retry_count == 3
        assert final.escalated_at == clock.now
        assert final.metadata["dlq_reason"] == MAX_RETRIES_REASON
        assert final.is_terminal
        assert [entry.notification_id for entry in engine.dead_letters.entries] == [created.id]
        start = clock.now - timedelta(minutes=14)
        assert retry_times == [
            start + timedelta(minutes=2),
            start + timedelta(minutes=6),
            start + timedelta(minutes=14),
            None,
        ]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, recipients: list[Recipient], clock: FakeClock) -> None:
        channel = StubChannel(outcomes=[DeliveryOutcome.failure("SMTP email failed"), DeliveryOutcome.ok("sent")])
        engine = stub_engine(recipients, clock, channel)

        created = await engine.service.send_notification(
            NotificationRequest(user_id=1, title="Invoice", content="Due", channel_type=ChannelType.EMAIL)
        )
        _ = clock.advance(minutes=2)
        _ = await engine.redriver.redrive_due()

        assert created.id is not None
        stored = await engine.service.get_notification(created.id)
        assert stored.status is NotificationStatus.SENT
        assert stored.retry_count == 1
        assert stored.sent_at == clock.now
        assert engine.dead_letters.entries == ()


class TestConsoleFlows:
    """Console channels with the real clock."""

    @pytest.mark.asyncio
    async def test_batch_with_missing_contacts(self, recipients: list[Recipient]) -> None:
        stream = io.StringIO()
        request = BatchRequest(
            user_ids=[1, 2, 3, 99],
            title="Outage",
            content="Service restored",
            channel_type=ChannelType.SMS,
        )

        async with NotificationEngine(
            directory=InMemoryRecipientDirectory(recipients),
            channel_stream=stream,
        ) as engine:
            result = await engine.service.send_batch(request)

        assert result.total_users == 4
        assert result.status is BatchStatus.PARTIALLY_FAILED
        assert [(item.user_id, item.success) for item in result.results] == [(1, True), (2, False), (3, True)]
        assert result.statistics.error_breakdown == {"Failed to send": 1}
        assert stream.getvalue().count("📱 SMS NOTIFICATION SENT") == 2

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_scheduled_notification_fires(self, recipients: list[Recipient]) -> None:
        stream = io.StringIO()

        async with NotificationEngine(
            directory=InMemoryRecipientDirectory(recipients),
            channel_stream=stream,
        ) as engine:
            created = await engine.service.send_notification(
                NotificationRequest(
                    user_id=1,
                    title="Reminder",
                    content="Standup in 5",
                    channel_type=ChannelType.PUSH,
                    scheduled_at=utc_now() + timedelta(milliseconds=200),
                )
            )
            assert created.id is not None
            assert created.status is NotificationStatus.SCHEDULED

            async with asyncio.timeout(5):
                while (await engine.service.get_notification(created.id)).status is not NotificationStatus.SENT:
                    await asyncio.sleep(0.05)

        assert "📲 PUSH NOTIFICATION SENT" in stream.getvalue()
        assert "Device Token: device-token-1" in stream.getvalue()

    @pytest.mark.asyncio
    async def test_high_priority_routed_on_own_lane(self, recipients: list[Recipient]) -> None:
        config = MainConfig.model_validate({"bus": {"enabled": True}})

        async with NotificationEngine(
            config,
            directory=InMemoryRecipientDirectory(recipients),
            channel_stream=io.StringIO(),
        ) as engine:
            created = await engine.service.send_notification(
                NotificationRequest(
                    user_id=1,
                    title="Security alert",
                    content="New sign-in",
                    channel_type=ChannelType.EMAIL,
                    priority=Priority.HIGH,
                )
            )
            await engine.drain()
            assert created.id is not None
            stored = await engine.service.get_notification(created.id)

        assert engine.bus is not None
        (event,) = engine.bus.messages_on(Lane.HIGH_PRIORITY)
        assert event.notification_id == created.id
        assert engine.bus.messages_on(Lane.NORMAL) == ()
        assert stored.status is NotificationStatus.SENT

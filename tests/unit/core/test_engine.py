"""Tests for engine wiring and lifecycle."""

from __future__ import annotations

import io

import pytest

from notification_router.core.config import MainConfig
from notification_router.core.engine import NotificationEngine
from notification_router.core.registry import ChannelRegistry
from notification_router.core.retry import MAX_RETRIES_REASON
from notification_router.storage.memory import InMemoryRecipientDirectory
from notification_router.types import (
    ChannelType,
    DeliveryOutcome,
    Lane,
    NotificationRequest,
    NotificationStatus,
    Recipient,
)
from tests.fixtures.engine_doubles import FakeClock, RecordingSleeper, StubChannel, make_notification


def request_for(user_id: int, channel_type: ChannelType) -> NotificationRequest:
    return NotificationRequest(user_id=user_id, title="Welcome", content="Thanks", channel_type=channel_type)


class TestWiring:
    def test_default_config_registers_console_channels(self) -> None:
        engine = NotificationEngine(channel_stream=io.StringIO())

        assert [descriptor.name for descriptor in engine.registry.list_all()] == [
            "Console Email Channel",
            "Console SMS Channel",
            "Push Notification Channel",
        ]
        assert engine.bus is None
        assert engine.producer is None
        assert engine.consumer is None

    def test_bus_enabled_wires_producer_and_consumer(self) -> None:
        config = MainConfig.model_validate({"bus": {"enabled": True}})

        engine = NotificationEngine(config, channel_stream=io.StringIO())

        assert engine.bus is not None
        assert engine.producer is not None
        assert engine.consumer is not None

    def test_webhook_channel_built_with_http_client(self) -> None:
        config = MainConfig.model_validate(
            {"channels": {"push": {"webhook": {"enabled": True, "url": "https://push.example.com/send"}}}}
        )

        engine = NotificationEngine(config, channel_stream=io.StringIO())

        push_channel = engine.registry.resolve(ChannelType.PUSH)
        assert push_channel is not None
        assert push_channel.display_name == "Webhook Push Channel"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops(self, recipients: list[Recipient]) -> None:
        stream = io.StringIO()
        engine = NotificationEngine(directory=InMemoryRecipientDirectory(recipients), channel_stream=stream)

        async with engine as running:
            assert running.is_running is True
            assert running.scheduler.is_running is True
            assert running.redriver.is_running is True

            notification = await running.service.send_notification(request_for(1, ChannelType.EMAIL))

        assert engine.is_running is False
        assert engine.scheduler.is_running is False
        assert notification.status is NotificationStatus.SENT
        assert "📧 EMAIL NOTIFICATION SENT" in stream.getvalue()
        assert "To: alice@example.com" in stream.getvalue()

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self) -> None:
        engine = NotificationEngine(channel_stream=io.StringIO())

        await engine.start()
        await engine.start()
        await engine.stop()
        await engine.stop()

        assert engine.is_running is False

    @pytest.mark.asyncio
    async def test_sms_without_phone_fails_permanently(self, recipients: list[Recipient]) -> None:
        async with NotificationEngine(
            directory=InMemoryRecipientDirectory(recipients),
            channel_stream=io.StringIO(),
        ) as engine:
            notification = await engine.service.send_notification(request_for(2, ChannelType.SMS))

        assert notification.status is NotificationStatus.FAILED
        assert notification.error_message == "SMS failed"
        assert notification.retry_count == 0


class TestBusFlow:
    @pytest.mark.asyncio
    async def test_submission_delivered_through_bus(self, recipients: list[Recipient]) -> None:
        config = MainConfig.model_validate({"bus": {"enabled": True}})

        async with NotificationEngine(
            config,
            directory=InMemoryRecipientDirectory(recipients),
            channel_stream=io.StringIO(),
        ) as engine:
            created = await engine.service.send_notification(request_for(1, ChannelType.PUSH))
            await engine.drain()
            assert created.id is not None
            stored = await engine.service.get_notification(created.id)

        assert engine.bus is not None
        assert len(engine.bus.messages_on(Lane.NORMAL)) == 1
        assert stored.status is NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_transport_retries_exhausted_end_in_dead_letter(
        self,
        recipients: list[Recipient],
        clock: FakeClock,
    ) -> None:
        config = MainConfig.model_validate({"bus": {"enabled": True, "transport_max_retries": 3}})
        channel = StubChannel(outcomes=[DeliveryOutcome.failure("SMTP email failed")])
        registry = ChannelRegistry()
        _ = registry.register(channel)
        sleeper = RecordingSleeper()

        async with NotificationEngine(
            config,
            directory=InMemoryRecipientDirectory(recipients),
            registry=registry,
            clock=clock,
            sleeper=sleeper,
        ) as engine:
            created = await engine.service.send_notification(request_for(1, ChannelType.EMAIL))
            await engine.drain()
            assert created.id is not None
            stored = await engine.service.get_notification(created.id)

        assert engine.bus is not None
        assert [event.retry_count for event in engine.bus.messages_on(Lane.RETRY)] == [1, 2, 3]
        (dlq_event,) = engine.bus.messages_on(Lane.DEAD_LETTER)
        assert dlq_event.metadata["dlq_reason"] == MAX_RETRIES_REASON
        assert channel.calls == 3
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert [entry.notification_id for entry in engine.dead_letters.entries] == [created.id]
        assert stored.escalated_at is not None

    @pytest.mark.asyncio
    async def test_coordinator_escalation_published_on_dead_letter_lane(
        self,
        recipients: list[Recipient],
        clock: FakeClock,
    ) -> None:
        config = MainConfig.model_validate({"bus": {"enabled": True}, "retry": {"max_retries": 0}})
        registry = ChannelRegistry()
        _ = registry.register(StubChannel(outcomes=[DeliveryOutcome.failure("SMTP email failed")]))

        async with NotificationEngine(
            config,
            directory=InMemoryRecipientDirectory(recipients),
            registry=registry,
            clock=clock,
            sleeper=RecordingSleeper(),
        ) as engine:
            notification = make_notification(recipient=recipients[0])
            _ = await engine.store.save(notification)
            _ = await engine.service.deliver_with_retry(notification)
            await engine.drain()

        assert engine.bus is not None
        (dlq_event,) = engine.bus.messages_on(Lane.DEAD_LETTER)
        assert dlq_event.notification_id == notification.id
        assert engine.bus.messages_on(Lane.RETRY) == ()
        assert [entry.notification_id for entry in engine.dead_letters.entries] == [notification.id]

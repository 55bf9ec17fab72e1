"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # pyright: ignore[reportMissingTypeStubs]

from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.registry import ChannelRegistry
from notification_router.core.scheduler import create_job_runner
from notification_router.storage.memory import (
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryScheduledJobStore,
)
from notification_router.types import Recipient
from notification_router.utils.logging import clear_correlation_id
from tests.fixtures.engine_doubles import FakeClock, RecordingSleeper, StubChannel, make_recipient


@pytest.fixture(autouse=True)
def reset_correlation_id() -> Iterator[None]:
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def recipients() -> list[Recipient]:
    """Alice has every contact detail, Bob only email, Carol only a phone."""
    return [
        make_recipient(1, username="alice", email="alice@example.com", phone_number="+15551230001"),
        make_recipient(2, username="bob", email="bob@example.com", phone_number=None, device_token=None),
        make_recipient(3, username="carol", email=None, phone_number="+15551230003", device_token=None),
    ]


@pytest.fixture
def directory(recipients: list[Recipient]) -> InMemoryRecipientDirectory:
    return InMemoryRecipientDirectory(recipients)


@pytest.fixture
def store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def job_store() -> InMemoryScheduledJobStore:
    return InMemoryScheduledJobStore()


@pytest.fixture
def email_channel() -> StubChannel:
    return StubChannel("Stub Email Channel")


@pytest.fixture
def registry(email_channel: StubChannel) -> ChannelRegistry:
    registry = ChannelRegistry()
    _ = registry.register(email_channel, priority=1)
    return registry


@pytest.fixture
def pipeline(registry: ChannelRegistry, store: InMemoryNotificationStore, clock: FakeClock) -> DeliveryPipeline:
    return DeliveryPipeline(registry, store, send_timeout_seconds=1.0, clock=clock)


@pytest.fixture
async def job_runner() -> AsyncIterator[AsyncIOScheduler]:
    """Job runner started paused: armed jobs fire only after ``resume()``."""
    runner = create_job_runner()
    runner.start(paused=True)
    yield runner
    if runner.running:
        runner.shutdown(wait=False)

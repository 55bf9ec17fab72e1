"""Test doubles shared by unit and integration tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from notification_router.types import ChannelType, DeliveryOutcome, Notification, Recipient

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now: datetime = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSleeper:
    """Sleeper that records requested delays.

    By default it only yields to the event loop. With ``block=True`` every
    sleep waits until ``release()`` is called.
    """

    def __init__(self, *, block: bool = False) -> None:
        self.delays: list[float] = []
        self._block: bool = block
        self._released: asyncio.Event = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._block:
            _ = await self._released.wait()
        else:
            await asyncio.sleep(0)

    def release(self) -> None:
        self._released.set()


class StubChannel:
    """Channel double returning scripted outcomes.

    ``outcomes`` is consumed in order; once exhausted the last outcome is
    repeated. ``fail_with`` makes ``send`` raise instead.
    """

    def __init__(
        self,
        name: str = "Stub Email Channel",
        channel_type: ChannelType = ChannelType.EMAIL,
        *,
        outcomes: Sequence[DeliveryOutcome] | None = None,
        fail_with: Exception | None = None,
        delay: float = 0.0,
        extra_types: Sequence[ChannelType] = (),
    ) -> None:
        self._name: str = name
        self._channel_type: ChannelType = channel_type
        self._outcomes: list[DeliveryOutcome] = list(outcomes or [DeliveryOutcome.ok(f"{name} delivered")])
        self._supported: set[ChannelType] = {channel_type, *extra_types}
        self.fail_with: Exception | None = fail_with
        self.delay: float = delay
        self.sent: list[Notification] = []

    @property
    def channel_type(self) -> ChannelType:
        return self._channel_type

    @property
    def display_name(self) -> str:
        return self._name

    @property
    def calls(self) -> int:
        return len(self.sent)

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type in self._supported

    async def send(self, notification: Notification) -> DeliveryOutcome:
        self.sent.append(notification)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if len(self._outcomes) > 1:
            return self._outcomes.pop(0)
        return self._outcomes[0]


def make_recipient(
    user_id: int = 1,
    *,
    username: str | None = None,
    email: str | None = "user@example.com",
    phone_number: str | None = "+15551234567",
    device_token: str | None = "device-token-1",
) -> Recipient:
    return Recipient(
        user_id=user_id,
        username=username or f"user{user_id}",
        email=email,
        phone_number=phone_number,
        device_token=device_token,
    )


def make_notification(
    *,
    recipient: Recipient | None = None,
    channel_type: ChannelType = ChannelType.EMAIL,
    title: str = "Welcome",
    content: str = "Thanks for signing up",
    **overrides: object,
) -> Notification:
    notification = Notification(
        recipient=recipient or make_recipient(),
        title=title,
        content=content,
        channel_type=channel_type,
    )
    for name, value in overrides.items():
        setattr(notification, name, value)
    return notification

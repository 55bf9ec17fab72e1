"""Protocol definitions for component interfaces.

This module defines structural subtyping protocols for the engine's ports:
delivery channels and the stores it persists to. Concrete implementations
live in ``notification_router.channels`` and ``notification_router.storage``.
"""

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from notification_router.types.models import (
    ChannelType,
    DeliveryOutcome,
    Notification,
    Page,
    Recipient,
    Response,
    ScheduledJob,
)


@runtime_checkable
class Channel(Protocol):
    """Protocol for notification delivery channels.

    Ordinary delivery failures are reported through the returned outcome;
    implementations should not raise for them.
    """

    @property
    def channel_type(self) -> ChannelType:
        """Channel type this implementation primarily serves."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable channel name used in logs and the registry."""
        ...

    def supports(self, channel_type: ChannelType) -> bool:
        """Return True if this channel can deliver the given type."""
        ...

    async def send(self, notification: Notification) -> DeliveryOutcome:
        """Deliver the notification.

        Args:
            notification: Notification to deliver, with recipient contact data

        Returns:
            Outcome of the attempt
        """
        ...


class NotificationStore(Protocol):
    """Persistence port for notifications. Each call is one atomic step."""

    async def save(self, notification: Notification) -> Notification:
        """Insert or update; assigns ``id`` on first save and returns the stored copy."""
        ...

    async def get(self, notification_id: int) -> Notification | None:
        ...

    async def list_by_recipient(self, user_id: int, *, page: int, size: int) -> Page[Notification]:
        """Return the user's notifications, newest first."""
        ...

    async def find_due_retries(self, now: datetime) -> Sequence[Notification]:
        """Return PENDING notifications whose ``next_retry_at`` has passed."""
        ...


class ScheduledJobStore(Protocol):
    """Persistence port for scheduled job records."""

    async def save(self, job: ScheduledJob) -> ScheduledJob:
        ...

    async def get(self, job_key: str, job_group: str) -> ScheduledJob | None:
        ...

    async def find_active_by_notification(self, notification_id: int) -> ScheduledJob | None:
        """Return the uncompleted job for the notification, if any."""
        ...

    async def find_active(self) -> Sequence[ScheduledJob]:
        """Return every uncompleted job."""
        ...


class RecipientDirectory(Protocol):
    """Lookup port for recipient contact data."""

    async def get(self, user_id: int) -> Recipient | None:
        ...

    async def get_many(self, user_ids: Sequence[int]) -> Sequence[Recipient]:
        """Return recipients that exist, in request order; unknown ids are skipped."""
        ...


class HTTPClient(Protocol):
    """Protocol for the HTTP client used by gateway-backed channels."""

    async def post(
        self,
        url: str,
        payload: Mapping[str, object],
        *,
        timeout: float,
    ) -> Response:
        """Send one HTTP POST request with a timeout."""
        ...

    async def post_with_retry(
        self,
        url: str,
        payload: Mapping[str, object],
    ) -> Response:
        """Send HTTP POST, retrying timeouts and 5xx responses with jittered backoff.

        Raises:
            RuntimeError: If retries are exhausted, the response is a
                non-retryable error, or the circuit for ``url`` is open
        """
        ...

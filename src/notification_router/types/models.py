"""Data models for the notification dispatch engine.

This module defines the dataclasses and enumerations shared by every component:
notifications and their recipients, delivery outcomes, scheduled jobs, bus
events, and batch results.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum


def utc_now() -> datetime:
    """Return timezone-aware current datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ChannelType(StrEnum):
    """Delivery medium for a notification."""

    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"


class Priority(StrEnum):
    """Notification urgency; HIGH routes to the high-priority lane."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class NotificationStatus(StrEnum):
    """Lifecycle state of a notification."""

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    DELIVERED = "DELIVERED"


class BatchStatus(StrEnum):
    """Aggregate state of a batch fan-out."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIALLY_FAILED = "PARTIALLY_FAILED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class EventType(StrEnum):
    """Kind of bus event envelope."""

    CREATED = "NOTIFICATION_CREATED"
    RETRY = "NOTIFICATION_RETRY"
    DLQ = "NOTIFICATION_DLQ"


class Lane(Enum):
    """Bus lanes and their topic names."""

    NORMAL = "notification-events"
    HIGH_PRIORITY = "notification-events-high-priority"
    RETRY = "notification-events-retry"
    DEAD_LETTER = "notification-events-dlq"

    @property
    def topic(self) -> str:
        """Return the topic name backing this lane."""
        return self.value


@dataclass(slots=True)
class Recipient:
    """Contact details of the user a notification is addressed to."""

    user_id: int
    username: str
    email: str | None = None
    phone_number: str | None = None
    device_token: str | None = None


@dataclass(slots=True)
class Notification:
    """A single message to a single recipient over one channel.

    The store assigns ``id`` on first save. The Delivery Pipeline owns status
    transitions during an attempt; the Retry Coordinator owns ``retry_count``
    and ``next_retry_at``.
    """

    recipient: Recipient
    title: str
    content: str
    channel_type: ChannelType
    priority: Priority = Priority.MEDIUM
    status: NotificationStatus = NotificationStatus.PENDING
    metadata: dict[str, object] = field(default_factory=dict)
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    error_message: str | None = None
    escalated_at: datetime | None = None
    id: int | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def user_id(self) -> int:
        return self.recipient.user_id

    @property
    def is_terminal(self) -> bool:
        """True once no further delivery attempt will be made."""
        return self.status in {
            NotificationStatus.SENT,
            NotificationStatus.DELIVERED,
            NotificationStatus.CANCELLED,
        } or (self.status is NotificationStatus.FAILED and self.escalated_at is not None)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.recipient.user_id,
            "title": self.title,
            "content": self.content,
            "channel_type": self.channel_type.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "scheduled_at": _iso(self.scheduled_at),
            "sent_at": _iso(self.sent_at),
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt through a channel.

    ``retryable`` is False for permanent failures such as a missing contact
    detail or an unsupported channel type; those are never retried.
    """

    success: bool
    message: str
    error_detail: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, message: str) -> DeliveryOutcome:
        return cls(success=True, message=message)

    @classmethod
    def failure(
        cls,
        message: str,
        error_detail: str | None = None,
        *,
        retryable: bool = True,
    ) -> DeliveryOutcome:
        return cls(success=False, message=message, error_detail=error_detail, retryable=retryable)


@dataclass(slots=True)
class ScheduledJob:
    """Durable record of a deferred delivery. Never deleted, only completed."""

    job_key: str
    job_group: str
    notification_id: int
    scheduled_time: datetime
    job_data: dict[str, object] = field(default_factory=dict)
    is_recurring: bool = False
    is_completed: bool = False
    id: int | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.job_key, self.job_group)


@dataclass(slots=True, frozen=True)
class NotificationEvent:
    """Immutable bus envelope describing a notification.

    ``retry_count`` counts transport-level redeliveries and is independent of
    the notification's own retry counter.
    """

    event_id: str
    notification_id: int
    user_id: int | None
    title: str
    content: str
    channel_type: ChannelType
    priority: Priority
    metadata: Mapping[str, object] = field(default_factory=dict)
    scheduled_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    event_type: EventType = EventType.CREATED
    retry_count: int = 0

    @classmethod
    def from_notification(
        cls,
        notification: Notification,
        *,
        event_id: str,
        event_type: EventType = EventType.CREATED,
    ) -> NotificationEvent:
        if notification.id is None:
            msg = "Cannot build an event for an unsaved notification"
            raise ValueError(msg)
        return cls(
            event_id=event_id,
            notification_id=notification.id,
            user_id=notification.recipient.user_id,
            title=notification.title,
            content=notification.content,
            channel_type=notification.channel_type,
            priority=notification.priority,
            metadata=dict(notification.metadata),
            scheduled_at=notification.scheduled_at,
            event_type=event_type,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "eventId": self.event_id,
            "notificationId": self.notification_id,
            "userId": self.user_id,
            "title": self.title,
            "content": self.content,
            "channelType": self.channel_type.value,
            "priority": self.priority.value,
            "metadata": dict(self.metadata),
            "scheduledAt": _iso(self.scheduled_at),
            "createdAt": _iso(self.created_at),
            "eventType": self.event_type.value,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> NotificationEvent:
        scheduled_raw = data.get("scheduledAt")
        created_raw = data.get("createdAt")
        metadata_raw = data.get("metadata") or {}
        user_raw = data.get("userId")
        return cls(
            event_id=str(data["eventId"]),
            notification_id=int(str(data["notificationId"])),
            user_id=int(str(user_raw)) if user_raw is not None else None,
            title=str(data.get("title", "")),
            content=str(data.get("content", "")),
            channel_type=ChannelType(str(data["channelType"])),
            priority=Priority(str(data.get("priority", Priority.MEDIUM.value))),
            metadata=dict(metadata_raw) if isinstance(metadata_raw, Mapping) else {},
            scheduled_at=datetime.fromisoformat(str(scheduled_raw)) if scheduled_raw else None,
            created_at=datetime.fromisoformat(str(created_raw)) if created_raw else utc_now(),
            event_type=EventType(str(data.get("eventType", EventType.CREATED.value))),
            retry_count=int(str(data.get("retryCount", 0))),
        )


@dataclass(slots=True, frozen=True)
class DeadLetterEntry:
    """A notification that exhausted retries or transport redelivery."""

    notification_id: int
    reason: str
    event: NotificationEvent | None = None
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class CancellationResult:
    """Outcome of a cancellation request; ``cancelled`` is False when nothing was armed."""

    cancelled: bool
    message: str


@dataclass(slots=True, frozen=True)
class Page[T]:
    """One page of a paginated listing."""

    items: Sequence[T]
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size


@dataclass(slots=True, frozen=True)
class RecipientResult:
    """Per-recipient outcome within a batch."""

    user_id: int
    notification_id: int | None
    success: bool
    message: str
    processed_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class BatchStatistics:
    """Aggregate timing and error figures for a batch."""

    total_batches: int = 0
    processed_batches: int = 0
    average_processing_time_per_batch: float = 0.0
    success_rate: float = 0.0
    error_breakdown: dict[str, int] = field(default_factory=dict)
    # chunks cut short by continue_on_error=False
    stopped_batches: int = 0


@dataclass(slots=True)
class BatchResult:
    """Ephemeral response describing a batch fan-out."""

    batch_id: str
    total_users: int
    status: BatchStatus = BatchStatus.QUEUED
    success_count: int = 0
    failure_count: int = 0
    results: list[RecipientResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    processing_time_ms: float | None = None
    statistics: BatchStatistics = field(default_factory=BatchStatistics)
    error_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "total_users": self.total_users,
            "status": self.status.value,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": [
                {
                    "user_id": result.user_id,
                    "notification_id": result.notification_id,
                    "success": result.success,
                    "message": result.message,
                    "processed_at": _iso(result.processed_at),
                }
                for result in self.results
            ],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "processing_time_ms": self.processing_time_ms,
            "statistics": {
                "total_batches": self.statistics.total_batches,
                "processed_batches": self.statistics.processed_batches,
                "average_processing_time_per_batch": self.statistics.average_processing_time_per_batch,
                "success_rate": self.statistics.success_rate,
                "error_breakdown": dict(self.statistics.error_breakdown),
                "stopped_batches": self.statistics.stopped_batches,
            },
            "error_message": self.error_message,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Response:
    """HTTP response returned by the push gateway client."""

    status: int
    body: Mapping[str, object]
    headers: Mapping[str, str]

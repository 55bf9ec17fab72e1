"""Validated request models accepted at the engine boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from notification_router.types.models import ChannelType, Priority, ensure_utc


def _not_blank(value: str, field_name: str) -> str:
    if not value.strip():
        msg = f"{field_name} cannot be blank"
        raise ValueError(msg)
    return value


class NotificationRequest(BaseModel):
    """Request to notify a single user."""

    user_id: Annotated[int, Field(description="Recipient user identifier")]
    title: Annotated[str, Field(max_length=255, description="Notification title")]
    content: Annotated[str, Field(description="Notification body")]
    channel_type: Annotated[ChannelType, Field(description="Delivery channel")]
    priority: Annotated[Priority, Field(description="Notification priority")] = Priority.MEDIUM
    scheduled_at: Annotated[
        datetime | None,
        Field(description="Deferred delivery time; naive values are UTC"),
    ] = None
    metadata: Annotated[dict[str, object], Field(description="Free-form key/value data")] = {}

    @field_validator("title", "content", mode="after")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        return _not_blank(v, "title/content")

    @field_validator("scheduled_at", mode="after")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class BatchSettings(BaseModel):
    """Chunking and concurrency options for a batch fan-out."""

    batch_size: Annotated[int, Field(gt=0, description="Recipients per chunk")] = 50
    delay_between_batches_ms: Annotated[
        int,
        Field(ge=0, description="Pause between chunks in milliseconds"),
    ] = 1000
    parallel: Annotated[bool, Field(description="Process chunks concurrently")] = True
    continue_on_error: Annotated[
        bool,
        Field(description="Keep delivering within a chunk after a failure"),
    ] = True


class BatchRequest(BaseModel):
    """Request to notify many users with the same message."""

    user_ids: Annotated[list[int], Field(min_length=1, description="Recipient user identifiers")]
    title: Annotated[str, Field(description="Notification title")]
    content: Annotated[str, Field(description="Notification body")]
    channel_type: Annotated[ChannelType, Field(description="Delivery channel")]
    priority: Annotated[Priority, Field(description="Notification priority")] = Priority.MEDIUM
    scheduled_at: Annotated[
        datetime | None,
        Field(description="Deferred delivery time for every recipient"),
    ] = None
    metadata: Annotated[dict[str, object], Field(description="Free-form key/value data")] = {}
    settings: Annotated[
        BatchSettings | None,
        Field(description="Overrides for the configured batch defaults"),
    ] = None

    @field_validator("title", "content", mode="after")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        return _not_blank(v, "title/content")

    @field_validator("scheduled_at", mode="after")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

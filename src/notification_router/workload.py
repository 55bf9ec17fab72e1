"""Requests file consumed by the command-line runner.

The file seeds the recipient directory and lists the work to submit:

.. code-block:: yaml

    recipients:
      - {user_id: 1, username: alice, email: alice@example.com}
    notifications:
      - {user_id: 1, title: Hello, content: Welcome, channel_type: EMAIL}
      - {user_id: 1, title: Later, content: Reminder, channel_type: EMAIL,
         scheduled_in_seconds: 5}
    batches:
      - {user_ids: [1, 2], title: News, content: Update, channel_type: PUSH}
    cancellations: [2]

``cancellations`` lists notification ids; the in-memory store assigns ids
from 1 in submission order.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Self

from pydantic import BaseModel, Field, ValidationError, model_validator

from notification_router.core.config import ConfigurationError, format_validation_error, load_yaml_mapping
from notification_router.types import BatchRequest, NotificationRequest, Recipient

__all__ = ["NotificationEntry", "RecipientEntry", "Workload", "load_workload"]


class RecipientEntry(BaseModel):
    """Recipient seeded into the directory."""

    user_id: Annotated[int, Field(description="User identifier")]
    username: Annotated[str, Field(min_length=1, description="Display name")]
    email: str | None = None
    phone_number: str | None = None
    device_token: str | None = None

    def to_recipient(self) -> Recipient:
        return Recipient(
            user_id=self.user_id,
            username=self.username,
            email=self.email,
            phone_number=self.phone_number,
            device_token=self.device_token,
        )


class NotificationEntry(NotificationRequest):
    """Single notification request, optionally deferred relative to submission."""

    scheduled_in_seconds: Annotated[
        float | None,
        Field(gt=0, description="Defer delivery by this many seconds after submission"),
    ] = None

    @model_validator(mode="after")
    def validate_schedule_fields(self) -> Self:
        if self.scheduled_in_seconds is not None and self.scheduled_at is not None:
            msg = "Use either scheduled_at or scheduled_in_seconds, not both"
            raise ValueError(msg)
        return self

    def to_request(self, now: datetime) -> NotificationRequest:
        data = self.model_dump(exclude={"scheduled_in_seconds"})
        if self.scheduled_in_seconds is not None:
            data["scheduled_at"] = now + timedelta(seconds=self.scheduled_in_seconds)
        return NotificationRequest.model_validate(data)


class Workload(BaseModel):
    """Everything the runner submits in one invocation."""

    recipients: list[RecipientEntry] = []
    notifications: list[NotificationEntry] = []
    batches: list[BatchRequest] = []
    cancellations: list[int] = []


def load_workload(path: Path) -> Workload:
    """Load and validate a requests file.

    Raises:
        ConfigurationError: If the file cannot be loaded or is invalid
    """
    data = load_yaml_mapping(path, description="requests")
    try:
        return Workload.model_validate(data)
    except ValidationError as e:
        msg = format_validation_error(e, source=path, heading="Requests file validation failed:")
        raise ConfigurationError(msg) from e

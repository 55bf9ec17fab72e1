"""Console delivery channels.

These channels render a banner block describing the delivery to a text
stream (stdout by default) instead of contacting a provider. They are the
fallback implementations registered at a lower priority than the real
provider-backed channels.
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Final, TextIO, override
from uuid import uuid4

from notification_router.types import ChannelType, DeliveryOutcome, Notification
from notification_router.types.models import utc_now
from notification_router.utils.sanitization import mask_email, mask_phone_number

__all__ = ["ConsoleEmailChannel", "ConsolePushChannel", "ConsoleSmsChannel"]

_RULE: Final[str] = "=" * 60
_SEPARATOR: Final[str] = "-" * 40
_CONSOLE_FROM_ADDRESS: Final[str] = "noreply@notificationservice.com"
_CONSOLE_FROM_NUMBER: Final[str] = "+1-555-NOTIFY"


def _stdout() -> TextIO:
    return sys.stdout


@dataclass(slots=True)
class _ConsoleChannel(ABC):
    """Shared banner rendering for console channels."""

    stream: TextIO = field(default_factory=_stdout)
    _logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    @property
    @abstractmethod
    def channel_type(self) -> ChannelType:
        """Channel type this console channel prints."""

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human readable channel name."""

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type is self.channel_type

    def _emit(
        self,
        heading: str,
        header_lines: list[str],
        body_heading: str,
        body_lines: list[str],
        footer: list[str],
    ) -> None:
        lines = ["", _RULE, heading, _RULE, *header_lines]
        lines.extend([f"Sent At: {utc_now().isoformat()}", "", body_heading, _SEPARATOR])
        lines.extend(body_lines)
        lines.append(_SEPARATOR)
        lines.extend(footer)
        lines.extend([_RULE, ""])
        _ = self.stream.write("\n".join(lines) + "\n")
        self.stream.flush()


@dataclass(slots=True)
class ConsoleEmailChannel(_ConsoleChannel):
    """Print email notifications to the console."""

    @property
    @override
    def channel_type(self) -> ChannelType:
        return ChannelType.EMAIL

    @property
    @override
    def display_name(self) -> str:
        return "Console Email Channel"

    async def send(self, notification: Notification) -> DeliveryOutcome:
        email = notification.recipient.email
        footer = ["", f"Metadata: {notification.metadata}"] if notification.metadata else []
        self._emit(
            "📧 EMAIL NOTIFICATION SENT",
            [
                f"To: {email}",
                f"From: {_CONSOLE_FROM_ADDRESS}",
                f"Subject: {notification.title}",
                f"Priority: {notification.priority.value}",
            ],
            "Content:",
            [notification.content],
            footer,
        )
        self._logger.info("Console email delivered to %s", mask_email(email))
        return DeliveryOutcome.ok(f"Email sent successfully to {email}")


@dataclass(slots=True)
class ConsoleSmsChannel(_ConsoleChannel):
    """Print SMS notifications to the console.

    Recipients without a phone number are a permanent failure.
    """

    @property
    @override
    def channel_type(self) -> ChannelType:
        return ChannelType.SMS

    @property
    @override
    def display_name(self) -> str:
        return "Console SMS Channel"

    async def send(self, notification: Notification) -> DeliveryOutcome:
        phone_number = notification.recipient.phone_number
        if phone_number is None or not phone_number.strip():
            return DeliveryOutcome.failure("SMS failed", "User phone number not provided", retryable=False)

        footer = ["", f"Metadata: {notification.metadata}"] if notification.metadata else []
        footer.append(f"Character Count: {len(notification.title) + len(notification.content)}")
        self._emit(
            "📱 SMS NOTIFICATION SENT",
            [
                f"To: {phone_number}",
                f"From: {_CONSOLE_FROM_NUMBER}",
                f"Priority: {notification.priority.value}",
            ],
            "Message:",
            [notification.title, notification.content],
            footer,
        )
        self._logger.info("Console SMS delivered to %s", mask_phone_number(phone_number))
        return DeliveryOutcome.ok(f"SMS sent successfully to {phone_number}")


@dataclass(slots=True)
class ConsolePushChannel(_ConsoleChannel):
    """Print push notifications to the console.

    Uses the recipient's device token when known, otherwise a mock token.
    """

    @property
    @override
    def channel_type(self) -> ChannelType:
        return ChannelType.PUSH

    @property
    @override
    def display_name(self) -> str:
        return "Push Notification Channel"

    async def send(self, notification: Notification) -> DeliveryOutcome:
        device_token = notification.recipient.device_token or f"device_{uuid4().hex[:8]}"
        payload = {
            "title": notification.title,
            "body": notification.content,
            "priority": notification.priority.value.lower(),
            "data": dict(notification.metadata),
        }
        self._emit(
            "📲 PUSH NOTIFICATION SENT",
            [
                f"User: {notification.recipient.username}",
                f"Device Token: {device_token}",
                f"Title: {notification.title}",
                f"Priority: {notification.priority.value}",
            ],
            "Payload:",
            json.dumps(payload, indent=2, default=str).splitlines(),
            [],
        )
        self._logger.info("Console push delivered to user %s", notification.recipient.user_id)
        return DeliveryOutcome.ok(f"Push notification sent successfully to device {device_token}")

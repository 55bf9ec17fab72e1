"""Twilio SMS channel.

The twilio SDK is synchronous, so each message is created in a worker thread
via ``asyncio.to_thread``. Phone numbers are normalized to E.164 before
sending; numbers that are missing or fail validation are permanent failures.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from notification_router.core.config import TwilioChannelConfig
from notification_router.types import ChannelType, DeliveryOutcome, Notification, Priority
from notification_router.utils.sanitization import mask_phone_number, sanitize_exception

__all__ = [
    "TwilioSmsChannel",
    "build_sms_content",
    "clean_phone_number",
    "is_valid_phone_number",
]

_CHANNEL_NAME: Final[str] = "Twilio SMS Channel"
_NON_PHONE_CHARS: Final[re.Pattern[str]] = re.compile(r"[^+\d]")
_E164_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\+[1-9]\d{6,14}$")
_METADATA_LINE_LIMIT: Final[int] = 2
_METADATA_BUDGET: Final[int] = 140
_SMS_MAX_LENGTH: Final[int] = 155
_SMS_TRUNCATED_LENGTH: Final[int] = 152

type TwilioClientFactory = Callable[[str, str], Client]


def clean_phone_number(phone_number: str) -> str:
    """Strip formatting and assume the US country code when none is given.

    Examples:
        >>> clean_phone_number("(555) 123-4567")
        '+15551234567'
        >>> clean_phone_number("1-555-123-4567")
        '+15551234567'
    """
    cleaned = _NON_PHONE_CHARS.sub("", phone_number)
    if not cleaned.startswith("+"):
        if len(cleaned) == 10:
            cleaned = f"+1{cleaned}"
        elif len(cleaned) == 11 and cleaned.startswith("1"):
            cleaned = f"+{cleaned}"
    return cleaned


def is_valid_phone_number(phone_number: str) -> bool:
    return _E164_PATTERN.fullmatch(phone_number) is not None


def build_sms_content(notification: Notification) -> str:
    """Build the SMS body: title line, content, up to two metadata lines.

    HIGH priority adds an urgency marker. Bodies longer than 155 characters
    are cut to 152 and suffixed with ``...``.
    """
    parts: list[str] = []
    if notification.title:
        parts.append(f"📱 {notification.title}\n\n")
    parts.append(notification.content)

    if notification.metadata:
        parts.append("\n\n")
        added = 0
        for key, value in notification.metadata.items():
            if added >= _METADATA_LINE_LIMIT:
                break
            current_length = sum(len(part) for part in parts)
            if current_length + len(key) + len(str(value)) + 5 < _METADATA_BUDGET:
                parts.append(f"{key}: {value}\n")
                added += 1

    if notification.priority is Priority.HIGH:
        parts.append("\n⚠️ URGENT")

    content = "".join(parts)
    if len(content) > _SMS_MAX_LENGTH:
        content = content[:_SMS_TRUNCATED_LENGTH] + "..."
    return content


@dataclass(slots=True)
class TwilioSmsChannel:
    """Deliver SMS notifications through the Twilio REST API.

    Attributes:
        config: Twilio credentials and sender number
        client_factory: Builds the REST client from account SID and token
    """

    config: TwilioChannelConfig
    client_factory: TwilioClientFactory = Client
    _client: Client = field(init=False, repr=False)
    _logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._client = self.client_factory(self.config.account_sid, self.config.auth_token)
        self._logger = logging.getLogger(__name__)
        self._logger.info("Twilio SMS channel initialized")

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.SMS

    @property
    def display_name(self) -> str:
        return _CHANNEL_NAME

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type is ChannelType.SMS

    async def send(self, notification: Notification) -> DeliveryOutcome:
        recipient = notification.recipient
        raw_number = recipient.phone_number
        if raw_number is None or not raw_number.strip():
            error = f"Cannot send SMS notification to user {recipient.username}: no phone number"
            self._logger.warning(error)
            return DeliveryOutcome.failure("No phone number", error, retryable=False)

        phone_number = clean_phone_number(raw_number)
        masked = mask_phone_number(phone_number)
        if not is_valid_phone_number(phone_number):
            error = f"Invalid phone number format for user {recipient.username}: {masked}"
            self._logger.warning(error)
            return DeliveryOutcome.failure("Invalid phone number", error, retryable=False)

        body = build_sms_content(notification)
        try:
            message = await asyncio.to_thread(
                self._client.messages.create,
                to=phone_number,
                from_=self.config.from_number,
                body=body,
            )
        except TwilioRestException as exc:
            error = f"Twilio SMS failed: {sanitize_exception(exc)}"
            self._logger.error("Failed to send SMS via Twilio: %s", error)
            return DeliveryOutcome.failure("Twilio SMS failed", error)
        except Exception as exc:
            error = f"Unexpected error sending SMS via Twilio: {sanitize_exception(exc)}"
            self._logger.error(error, exc_info=True)
            return DeliveryOutcome.failure("SMS error", error)

        self._logger.info("Twilio SMS sent successfully to %s with SID %s", masked, message.sid)
        return DeliveryOutcome.ok(f"Twilio SMS sent successfully to {masked} (SID: {message.sid})")

"""Push channel posting notifications to an HTTP push gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Final

from notification_router.core.config import WebhookPushChannelConfig
from notification_router.types import ChannelType, DeliveryOutcome, HTTPClient, Notification
from notification_router.utils.http_client import NonRetryableHTTPError
from notification_router.utils.sanitization import sanitize_exception, sanitize_url

__all__ = ["WebhookPushChannel", "build_push_payload"]

_CHANNEL_NAME: Final[str] = "Webhook Push Channel"


def build_push_payload(notification: Notification, device_token: str) -> dict[str, object]:
    return {
        "to": device_token,
        "title": notification.title,
        "body": notification.content,
        "priority": notification.priority.value.lower(),
        "data": {str(key): value for key, value in notification.metadata.items()},
        "notification_id": notification.id,
    }


@dataclass(slots=True)
class WebhookPushChannel:
    """Deliver push notifications through a JSON push gateway.

    Attributes:
        config: Gateway endpoint settings
        http_client: HTTP client used for delivery (injected dependency)
    """

    config: WebhookPushChannelConfig
    http_client: HTTPClient
    _logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.PUSH

    @property
    def display_name(self) -> str:
        return _CHANNEL_NAME

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type is ChannelType.PUSH

    async def send(self, notification: Notification) -> DeliveryOutcome:
        recipient = notification.recipient
        device_token = recipient.device_token
        if device_token is None or not device_token.strip():
            error = f"Cannot send push notification to user {recipient.username}: no device token"
            self._logger.warning(error)
            return DeliveryOutcome.failure("No device token", error, retryable=False)

        try:
            response = await self.http_client.post_with_retry(
                self.config.url,
                build_push_payload(notification, device_token),
            )
        except NonRetryableHTTPError as exc:
            error = f"Push gateway rejected request: {sanitize_exception(exc)}"
            self._logger.error(error)
            return DeliveryOutcome.failure("Push notification failed", error, retryable=False)
        except RuntimeError as exc:
            error = f"Push gateway request failed: {sanitize_exception(exc)}"
            self._logger.error(error)
            return DeliveryOutcome.failure("Push notification failed", error)

        self._logger.info(
            "Push notification accepted by %s (status=%d)",
            sanitize_url(self.config.url),
            response.status,
        )
        return DeliveryOutcome.ok(f"Push notification sent successfully to user {recipient.username}")

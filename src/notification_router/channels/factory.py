"""Build the channel registry from configuration."""

from __future__ import annotations

import logging
from typing import TextIO

from notification_router.channels.console import ConsoleEmailChannel, ConsolePushChannel, ConsoleSmsChannel
from notification_router.channels.push import WebhookPushChannel
from notification_router.channels.smtp import SmtpEmailChannel
from notification_router.channels.twilio_sms import TwilioSmsChannel
from notification_router.core.config import ChannelsConfig
from notification_router.core.registry import ChannelRegistry
from notification_router.types import HTTPClient

__all__ = ["build_channel_registry"]

logger = logging.getLogger(__name__)


def build_channel_registry(
    config: ChannelsConfig,
    *,
    http_client: HTTPClient | None = None,
    stream: TextIO | None = None,
) -> ChannelRegistry:
    """Register every enabled channel with its configured priority.

    Args:
        config: Channel configuration
        http_client: Client for the push gateway; required when the webhook
            push channel is enabled
        stream: Output stream for console channels (stdout when omitted)

    Raises:
        ValueError: If the webhook push channel is enabled without a client
    """
    registry = ChannelRegistry()

    def _console_kwargs() -> dict[str, TextIO]:
        return {"stream": stream} if stream is not None else {}

    if config.email.smtp.enabled:
        _ = registry.register(SmtpEmailChannel(config.email.smtp), priority=config.email.smtp.priority)
    if config.email.console.enabled:
        _ = registry.register(ConsoleEmailChannel(**_console_kwargs()), priority=config.email.console.priority)

    if config.sms.twilio.enabled:
        _ = registry.register(TwilioSmsChannel(config.sms.twilio), priority=config.sms.twilio.priority)
    if config.sms.console.enabled:
        _ = registry.register(ConsoleSmsChannel(**_console_kwargs()), priority=config.sms.console.priority)

    if config.push.webhook.enabled:
        if http_client is None:
            msg = "Webhook push channel is enabled but no HTTP client was provided"
            raise ValueError(msg)
        _ = registry.register(
            WebhookPushChannel(config.push.webhook, http_client),
            priority=config.push.webhook.priority,
        )
    if config.push.console.enabled:
        _ = registry.register(ConsolePushChannel(**_console_kwargs()), priority=config.push.console.priority)

    logger.info(
        "Channel registry built: %s",
        ", ".join(f"{descriptor.name} ({descriptor.channel_type.value})" for descriptor in registry.list_all()),
    )
    return registry

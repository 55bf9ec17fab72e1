"""Delivery channel implementations and the registry factory."""

from notification_router.channels.console import ConsoleEmailChannel, ConsolePushChannel, ConsoleSmsChannel
from notification_router.channels.factory import build_channel_registry
from notification_router.channels.push import WebhookPushChannel
from notification_router.channels.smtp import SmtpEmailChannel
from notification_router.channels.twilio_sms import TwilioSmsChannel

__all__ = [
    "ConsoleEmailChannel",
    "ConsolePushChannel",
    "ConsoleSmsChannel",
    "SmtpEmailChannel",
    "TwilioSmsChannel",
    "WebhookPushChannel",
    "build_channel_registry",
]

"""SMTP email channel backed by aiosmtplib.

Messages are sent as multipart/alternative with a plain-text part and a
styled HTML part. A recipient without an email address is a permanent
failure; SMTP errors are transient and may be retried.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Final

import aiosmtplib

from notification_router.core.config import SmtpChannelConfig
from notification_router.types import ChannelType, DeliveryOutcome, Notification
from notification_router.types.models import utc_now
from notification_router.utils.sanitization import mask_email, sanitize_exception

__all__ = ["SmtpEmailChannel", "build_email_message", "render_email_html"]

_CHANNEL_NAME: Final[str] = "SMTP Email Channel"


def render_email_html(notification: Notification) -> str:
    """Render the HTML body of a notification email.

    Title, content and metadata are escaped.
    """
    title = html.escape(notification.title)
    parts = [
        "<!DOCTYPE html>",
        f"<html><head><meta charset='UTF-8'><title>{title}</title></head>",
        "<body style='font-family: Arial, sans-serif; line-height: 1.6; color: #333; "
        "max-width: 600px; margin: 0 auto; padding: 20px;'>",
        "<div style='background-color: #f8f9fa; padding: 30px; border-radius: 10px; margin-bottom: 20px;'>",
        f"<h1 style='color: #2c3e50; margin: 0 0 20px 0; font-size: 24px;'>{title}</h1>",
        "<div style='background-color: white; padding: 20px; border-radius: 8px; border-left: 4px solid #3498db;'>",
        f"<p style='margin: 0; font-size: 16px;'>{html.escape(notification.content)}</p>",
        "</div>",
        "</div>",
    ]

    if notification.metadata:
        parts.append("<div style='background-color: #f1f2f6; padding: 15px; border-radius: 5px; margin-bottom: 20px;'>")
        parts.append("<h3 style='color: #2c3e50; margin: 0 0 10px 0; font-size: 16px;'>Additional Information</h3>")
        for key, value in notification.metadata.items():
            parts.append(
                f"<p style='margin: 5px 0; font-size: 14px;'>"
                f"<strong>{html.escape(str(key))}:</strong> {html.escape(str(value))}</p>"
            )
        parts.append("</div>")

    parts.extend(
        [
            "<div style='border-top: 1px solid #ddd; padding-top: 20px; text-align: center; "
            "color: #666; font-size: 12px;'>",
            "<p style='margin: 5px 0;'>This email was sent by the Notification System</p>",
            f"<p style='margin: 5px 0;'>Priority: {notification.priority.value} | "
            f"Sent: {utc_now().strftime('%Y-%m-%d %H:%M:%S')}</p>",
            "</div>",
            "</body></html>",
        ]
    )
    return "".join(parts)


def build_email_message(notification: Notification, *, from_address: str) -> EmailMessage:
    """Build the MIME message for a notification with a known email address."""
    message = EmailMessage()
    message["From"] = from_address
    message["To"] = notification.recipient.email or ""
    message["Subject"] = notification.title
    message.set_content(notification.content)
    message.add_alternative(render_email_html(notification), subtype="html")
    return message


@dataclass(slots=True)
class SmtpEmailChannel:
    """Deliver email notifications through an SMTP server.

    Attributes:
        config: SMTP connection settings
    """

    config: SmtpChannelConfig
    _logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.EMAIL

    @property
    def display_name(self) -> str:
        return _CHANNEL_NAME

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type is ChannelType.EMAIL

    async def send(self, notification: Notification) -> DeliveryOutcome:
        recipient = notification.recipient
        if recipient.email is None or not recipient.email.strip():
            error = f"Cannot send email notification to user {recipient.username}: no email address"
            self._logger.warning(error)
            return DeliveryOutcome.failure("No email address", error, retryable=False)

        masked = mask_email(recipient.email)
        try:
            message = build_email_message(notification, from_address=self.config.from_address)
            _ = await aiosmtplib.send(
                message,
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password,
                start_tls=self.config.use_tls,
                timeout=self.config.timeout_seconds,
            )
        except aiosmtplib.SMTPException as exc:
            error = f"Failed to send SMTP email to {masked}: {sanitize_exception(exc)}"
            self._logger.error(error)
            return DeliveryOutcome.failure("SMTP email failed", error)
        except Exception as exc:
            error = f"Unexpected error sending SMTP email to {masked}: {sanitize_exception(exc)}"
            self._logger.error(error, exc_info=True)
            return DeliveryOutcome.failure("SMTP email error", error)

        self._logger.info("SMTP email sent successfully to %s", masked)
        return DeliveryOutcome.ok(f"SMTP email sent successfully to {recipient.email}")

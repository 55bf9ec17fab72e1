"""Tests for the SMTP email channel."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from notification_router.channels.smtp import SmtpEmailChannel, build_email_message, render_email_html
from notification_router.core.config import SmtpChannelConfig
from tests.fixtures.engine_doubles import make_notification, make_recipient


def _make_smtp_config() -> SmtpChannelConfig:
    return SmtpChannelConfig(
        enabled=True,
        host="smtp.example.com",
        port=2525,
        username="mailer",
        password="hunter2",
        from_address="alerts@example.com",
    )


@pytest.fixture
def channel() -> SmtpEmailChannel:
    return SmtpEmailChannel(_make_smtp_config())


class TestRendering:
    def test_html_escapes_user_content(self) -> None:
        notification = make_notification(title="<b>Hi</b>", content="a & b", metadata={"<k>": "<v>"})

        rendered = render_email_html(notification)

        assert "&lt;b&gt;Hi&lt;/b&gt;" in rendered
        assert "a &amp; b" in rendered
        assert "&lt;k&gt;:</strong> &lt;v&gt;" in rendered
        assert "<b>Hi</b>" not in rendered

    def test_message_has_text_and_html_parts(self) -> None:
        notification = make_notification(recipient=make_recipient(email="bob@example.com"), title="Report ready")

        message = build_email_message(notification, from_address="alerts@example.com")

        assert message["From"] == "alerts@example.com"
        assert message["To"] == "bob@example.com"
        assert message["Subject"] == "Report ready"
        assert message.get_content_type() == "multipart/alternative"
        assert [part.get_content_type() for part in message.iter_parts()] == ["text/plain", "text/html"]


class TestSend:
    @pytest.mark.asyncio
    async def test_success(self, channel: SmtpEmailChannel) -> None:
        with patch.object(aiosmtplib, "send", new=AsyncMock(return_value=({}, "OK"))) as send:
            outcome = await channel.send(make_notification(recipient=make_recipient(email="bob@example.com")))

        assert outcome.success is True
        assert outcome.message == "SMTP email sent successfully to bob@example.com"
        send.assert_awaited_once()
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 2525
        assert kwargs["username"] == "mailer"
        assert kwargs["password"] == "hunter2"
        assert kwargs["start_tls"] is True

    @pytest.mark.asyncio
    async def test_missing_email_is_permanent(self, channel: SmtpEmailChannel) -> None:
        with patch.object(aiosmtplib, "send", new=AsyncMock()) as send:
            outcome = await channel.send(make_notification(recipient=make_recipient(email=None)))

        assert outcome.success is False
        assert outcome.message == "No email address"
        assert outcome.retryable is False
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_smtp_error_is_retryable(self, channel: SmtpEmailChannel) -> None:
        error = aiosmtplib.SMTPException("421 service not available")
        with patch.object(aiosmtplib, "send", new=AsyncMock(side_effect=error)):
            outcome = await channel.send(make_notification())

        assert outcome.success is False
        assert outcome.message == "SMTP email failed"
        assert outcome.retryable is True
        assert outcome.error_detail is not None
        assert "u***@example.com" in outcome.error_detail

    @pytest.mark.asyncio
    async def test_unexpected_error(self, channel: SmtpEmailChannel) -> None:
        with patch.object(aiosmtplib, "send", new=AsyncMock(side_effect=OSError("network down"))):
            outcome = await channel.send(make_notification())

        assert outcome.message == "SMTP email error"
        assert outcome.retryable is True

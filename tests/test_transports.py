"""
Tests for mail transports.

Covers:
  - CircuitBreaker state transitions
  - MailTransport error normalisation (retryable vs. terminal)
  - LogMailTransport outbox + suppression list
  - SmtpMailTransport reply-code classification (aiosmtplib patched)
  - html_to_plain, create_transport
"""
from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from channels.base import CircuitBreaker, CircuitOpenError, RecipientSuppressedError, TransportError
from channels.email_adapter import (
    LogMailTransport, SmtpMailTransport, create_transport, html_to_plain,
)
from config.settings import EmailConfig, SmtpConfig


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        cb.record_failure()
        assert cb.state == "closed"
        cb.record_failure()
        assert cb.is_open

    def test_half_open_after_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        cb.record_failure()
        assert cb.state == "half_open"
        cb.record_success()
        assert cb.state == "closed"
        assert cb.stats["successes"] == 1
        assert cb.stats["trips"] == 1


class _Flaky(LogMailTransport):
    def __init__(self, error):
        super().__init__()
        self._breaker.failure_threshold = 2
        self.error = error

    async def _do_send(self, to, subject, html, attachments=None):
        raise self.error


class TestMailTransport:
    @pytest.mark.asyncio
    async def test_unknown_errors_become_retryable(self):
        transport = _Flaky(ConnectionError("reset"))
        with pytest.raises(TransportError) as exc:
            await transport.send("a@example.com", "s", "<p>x</p>")
        assert exc.value.retryable is True
        assert exc.value.transport == "log"

    @pytest.mark.asyncio
    async def test_breaker_opens_and_refuses(self):
        transport = _Flaky(ConnectionError("reset"))
        for _ in range(2):
            with pytest.raises(TransportError):
                await transport.send("a@example.com", "s", "b")
        assert transport.is_unavailable()
        with pytest.raises(CircuitOpenError):
            await transport.send("a@example.com", "s", "b")

    @pytest.mark.asyncio
    async def test_terminal_errors_do_not_trip_breaker(self):
        transport = _Flaky(RecipientSuppressedError("a@example.com", "log"))
        for _ in range(3):
            with pytest.raises(RecipientSuppressedError):
                await transport.send("a@example.com", "s", "b")
        assert not transport.is_unavailable()
        health = await transport.health_check()
        assert health["failed"] == 3


class TestLogTransport:
    @pytest.mark.asyncio
    async def test_outbox(self):
        transport = LogMailTransport()
        message_id = await transport.send("a@example.com", "Hello", "<p>Hi</p>")
        assert message_id.endswith("@followdesk.local>")
        assert transport.outbox[0]["to"] == "a@example.com"
        assert (await transport.health_check())["sent"] == 1

    @pytest.mark.asyncio
    async def test_permanent_bounce_suppresses(self):
        transport = LogMailTransport()
        result = transport.handle_bounce({"email": "Gone@Example.com", "type": "permanent"})
        assert result["status"] == "processed"
        assert transport.is_suppressed("gone@example.com")
        with pytest.raises(RecipientSuppressedError):
            await transport.send("gone@example.com", "s", "b")

    def test_transient_bounce_does_not_suppress(self):
        transport = LogMailTransport()
        transport.handle_bounce({"email": "slow@example.com"})
        assert not transport.is_suppressed("slow@example.com")


@pytest.fixture
def smtp_config():
    return EmailConfig(
        transport="smtp", from_email="noreply@desk.test", from_name="Desk",
        smtp=SmtpConfig(host="smtp.desk.test", port=2525, username="u", password="p"),
    )


class TestSmtpTransport:
    @pytest.mark.asyncio
    async def test_sends_multipart_message(self, smtp_config):
        transport = SmtpMailTransport(smtp_config)
        with patch("channels.email_adapter.aiosmtplib.send", new=AsyncMock()) as send:
            message_id = await transport.send("a@example.com", "Hi", "<p>Hello<br>there</p>")

        assert message_id.endswith("@desk.test>")
        msg = send.await_args.args[0]
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.desk.test"
        assert kwargs["port"] == 2525
        assert kwargs["start_tls"] is True
        assert msg["To"] == "a@example.com"
        assert msg["From"] == "Desk <noreply@desk.test>"
        assert msg.get_body(preferencelist=("plain",)).get_content().strip() == "Hello\nthere"

    @pytest.mark.asyncio
    async def test_refused_recipient_is_terminal(self, smtp_config):
        transport = SmtpMailTransport(smtp_config)
        refused = aiosmtplib.SMTPRecipientsRefused(
            [aiosmtplib.SMTPRecipientRefused(550, "no such user", "a@example.com")]
        )
        with patch("channels.email_adapter.aiosmtplib.send", new=AsyncMock(side_effect=refused)):
            with pytest.raises(TransportError) as exc:
                await transport.send("a@example.com", "Hi", "b")
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_4xx_is_retryable(self, smtp_config):
        transport = SmtpMailTransport(smtp_config)
        busy = aiosmtplib.SMTPResponseException(421, "try again later")
        with patch("channels.email_adapter.aiosmtplib.send", new=AsyncMock(side_effect=busy)):
            with pytest.raises(TransportError) as exc:
                await transport.send("a@example.com", "Hi", "b")
        assert exc.value.retryable is True
        assert "SMTP 421" in str(exc.value)

    @pytest.mark.asyncio
    async def test_5xx_is_terminal(self, smtp_config):
        transport = SmtpMailTransport(smtp_config)
        rejected = aiosmtplib.SMTPResponseException(554, "rejected")
        with patch("channels.email_adapter.aiosmtplib.send", new=AsyncMock(side_effect=rejected)):
            with pytest.raises(TransportError) as exc:
                await transport.send("a@example.com", "Hi", "b")
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, smtp_config):
        transport = SmtpMailTransport(smtp_config)
        down = aiosmtplib.SMTPConnectError("cannot connect")
        with patch("channels.email_adapter.aiosmtplib.send", new=AsyncMock(side_effect=down)):
            with pytest.raises(TransportError) as exc:
                await transport.send("a@example.com", "Hi", "b")
        assert exc.value.retryable is True


class TestHelpers:
    def test_html_to_plain(self):
        html = "<style>p{}</style><h1>Title</h1><p>a &amp; b</p><ul><li>one</li><li>two</li></ul>"
        assert html_to_plain(html) == "Title\na & b\none\ntwo"

    def test_create_transport(self, smtp_config):
        assert isinstance(create_transport(smtp_config), SmtpMailTransport)
        log = create_transport(EmailConfig())
        assert isinstance(log, LogMailTransport)

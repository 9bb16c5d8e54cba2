"""Outbound mail transports."""
from channels.base import (
    MailTransport,
    TransportError,
    CircuitOpenError,
    RecipientSuppressedError,
    CircuitBreaker,
)
from channels.email_adapter import (
    LogMailTransport,
    SmtpMailTransport,
    create_transport,
    html_to_plain,
)

__all__ = [
    "MailTransport", "TransportError", "CircuitOpenError",
    "RecipientSuppressedError", "CircuitBreaker",
    "LogMailTransport", "SmtpMailTransport", "create_transport", "html_to_plain",
]

"""Error taxonomy for notification delivery.

Transport-level errors are caught inside ``DeliveryService.send`` and turned
into a failed ``NotificationResult``; callers never see them raised.
"""
from __future__ import annotations


class LarkNotifyError(Exception):
    """Base class for all larknotify errors."""


class ConfigurationError(LarkNotifyError):
    """No usable transport: required fields are missing. Not retried."""


class TransportError(LarkNotifyError):
    """Network/HTTP failure or a non-zero platform response code."""


class AuthError(TransportError):
    """The identity provider rejected the bot credentials."""


class ParseError(LarkNotifyError):
    """A tool-call message body could not be decoded."""

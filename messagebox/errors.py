"""
Error taxonomy for the MessageBox client.

Whole-operation failures propagate to the caller as one of these. Failures that
only concern a single message or a single host are logged and absorbed by the
component that hit them (see inbox.py, directory.py, envelope.py).
"""

from typing import Dict, Optional


class MessageBoxError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(MessageBoxError, ValueError):
    """Missing or malformed caller input, rejected before any network I/O."""


class IdentityError(MessageBoxError):
    """The wallet could not supply the local identity key or a keyed digest."""


class DirectoryError(MessageBoxError):
    """Overlay lookup failed. Callers degrade this to 'no advertisement'."""


class ChannelError(MessageBoxError):
    """Push channel failure: connect, authenticate, emit or ack timeout."""


class TransportError(MessageBoxError):
    """Non-success answer (or no answer) from a durable HTTP endpoint."""

    def __init__(self, description: str, status_code: Optional[int] = None):
        super().__init__(description)
        self.description = description
        self.status_code = status_code


class EnvelopeError(MessageBoxError):
    """A received body could not be parsed or decrypted."""


class AggregateError(MessageBoxError):
    """Every host of a multi-host fan-out failed."""

    def __init__(self, operation: str, errors: Dict[str, Exception]):
        self.operation = operation
        self.errors = dict(errors)
        details = "; ".join("%s: %s" % (host, err) for host, err in self.errors.items())
        super().__init__("%s failed on all hosts (%s)" % (operation, details or "no hosts"))


class PaymentError(MessageBoxError):
    """Sending is blocked by policy, or a required payment could not be built."""


class PublishError(MessageBoxError):
    """An advertisement (or its revocation) could not be created or broadcast."""


class WalletError(MessageBoxError):
    """The local key wallet cannot perform the requested operation."""

"""Error taxonomy shared by the messaging core."""

from __future__ import annotations


class MessagingError(Exception):
    """Base class for errors that end up as user-facing notifications."""


class ValidationError(MessagingError):
    pass


class PolicyError(MessagingError):
    pass


class MessageLimitReached(PolicyError):
    pass


class BlockedRelationship(PolicyError):
    pass


class CallBusy(PolicyError):
    pass


class TransportError(MessagingError):
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class CallError(MessagingError):
    """Local media could not be acquired or the peer negotiation failed."""

"""Message-request policy: who may message whom, and how the composer looks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .errors import BlockedRelationship, MessageLimitReached
from .models import REQUEST_ACCEPTED, REQUEST_DECLINED, REQUEST_PENDING, ComposerState, Message, Relationship

DEFAULT_MESSAGE_REQUEST_LIMIT = 3

LIMIT_TITLE = "Message limit reached"
COMPOSER_PLACEHOLDER = "Type a message..."
BLOCKED_PLACEHOLDER = "You have blocked this user"
BLOCKED_BY_PLACEHOLDER = "You can't reply to this conversation"
IN_CALL_PLACEHOLDER = "Messaging is paused during a call"


def limit_description(limit: int) -> str:
    return f"You can send only {limit} messages to users who don't follow you"


def outbound_pending_count(messages: Iterable[Message], sender_id: str, receiver_id: str) -> int:
    """Requests from sender to receiver that were never accepted."""

    return sum(
        1
        for message in messages
        if message.sender_id == sender_id
        and message.receiver_id == receiver_id
        and message.is_request
        and message.request_status in (REQUEST_PENDING, REQUEST_DECLINED)
    )


def has_accepted_thread(messages: Iterable[Message], sender_id: str, receiver_id: str) -> bool:
    return any(
        message.sender_id == sender_id
        and message.receiver_id == receiver_id
        and message.request_status == REQUEST_ACCEPTED
        for message in messages
    )


def has_inbound(messages: Iterable[Message], sender_id: str, receiver_id: str) -> bool:
    """True when the receiver has ever written to the sender."""

    return any(
        message.sender_id == receiver_id and message.receiver_id == sender_id for message in messages
    )


@dataclass(frozen=True)
class GateDecision:
    can_send: bool
    is_request: bool
    pending_count: int
    limit_reached: bool
    blocked: bool
    blocked_by: bool

    @property
    def request_status(self) -> str | None:
        return REQUEST_PENDING if self.is_request else None


class MessageRequestGate:
    """Evaluates the message-request policy for one sender/receiver pair.

    A thread is *open* once the receiver accepted a request, follows the
    sender, or has written to the sender. Sends into an open thread, or to a
    user the sender follows, are never limited. Otherwise each send is stored
    as a pending request and at most ``limit`` unaccepted requests may exist.
    A block in either direction disables sending outright.
    """

    def __init__(self, limit: int = DEFAULT_MESSAGE_REQUEST_LIMIT) -> None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self.limit = limit

    def can_send(self, *, following: bool, blocked: bool, pending_count: int, accepted: bool) -> bool:
        if blocked:
            return False
        return following or accepted or pending_count < self.limit

    def evaluate(
        self,
        messages: Iterable[Message],
        sender_id: str,
        receiver_id: str,
        relationship: Relationship,
    ) -> GateDecision:
        messages = list(messages)
        pending = outbound_pending_count(messages, sender_id, receiver_id)
        open_thread = (
            has_accepted_thread(messages, sender_id, receiver_id)
            or relationship.followed_by
            or has_inbound(messages, sender_id, receiver_id)
        )
        unlimited = relationship.following or open_thread
        limit_reached = not unlimited and pending >= self.limit
        return GateDecision(
            can_send=self.can_send(
                following=relationship.following,
                blocked=relationship.any_block,
                pending_count=pending,
                accepted=open_thread,
            ),
            is_request=not unlimited,
            pending_count=pending,
            limit_reached=limit_reached,
            blocked=relationship.blocked,
            blocked_by=relationship.blocked_by,
        )

    def check(self, decision: GateDecision) -> None:
        """Raise the policy error that explains why ``decision`` forbids sending."""

        if decision.blocked:
            raise BlockedRelationship("You have blocked this user")
        if decision.blocked_by:
            raise BlockedRelationship("This user is not accepting messages from you")
        if not decision.can_send:
            raise MessageLimitReached(limit_description(self.limit))


def composer_state(
    *,
    is_blocked: bool,
    is_blocked_by: bool,
    is_user_followed: bool,
    message_limit_reached: bool,
    is_in_call: bool,
    limit: int = DEFAULT_MESSAGE_REQUEST_LIMIT,
) -> ComposerState:
    if is_blocked:
        return ComposerState(enabled=False, placeholder=BLOCKED_PLACEHOLDER, reason="blocked")
    if is_blocked_by:
        return ComposerState(enabled=False, placeholder=BLOCKED_BY_PLACEHOLDER, reason="blocked_by")
    if message_limit_reached and not is_user_followed:
        return ComposerState(enabled=False, placeholder=limit_description(limit), reason="limit")
    if is_in_call:
        return ComposerState(enabled=False, placeholder=IN_CALL_PLACEHOLDER, reason="in_call")
    return ComposerState(enabled=True, placeholder=COMPOSER_PLACEHOLDER)

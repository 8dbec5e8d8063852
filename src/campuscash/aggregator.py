"""Derives the conversation list and message-request inbox from raw messages.

Everything here is a pure function of the message set, the current user and
the set of users the current user follows, so replayed or duplicated realtime
events never skew the result.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .models import REQUEST_PENDING, Conversation, Message, Profile, RequestThread


def dedupe(messages: Iterable[Message]) -> List[Message]:
    """Keep one copy per message id, preferring the last one seen."""

    by_id: Dict[str, Message] = {}
    for message in messages:
        by_id[message.id] = message
    return list(by_id.values())


def is_request_for(message: Message, user_id: str, following: Set[str]) -> bool:
    return (
        message.receiver_id == user_id
        and message.is_request
        and message.request_status in (REQUEST_PENDING, None)
        and message.sender_id not in following
    )


def partition(
    messages: Iterable[Message], user_id: str, following: Set[str]
) -> Tuple[List[Message], List[Message]]:
    """Split into (requests, everything else)."""

    requests: List[Message] = []
    others: List[Message] = []
    for message in dedupe(messages):
        if is_request_for(message, user_id, following):
            requests.append(message)
        else:
            others.append(message)
    return requests, others


def _resolve_profile(
    counterparty_id: str, message: Message, user_id: str, profiles: Mapping[str, Profile]
) -> Profile:
    return profiles.get(counterparty_id) or message.counterparty(user_id) or Profile.placeholder(counterparty_id)


def build_conversations(
    messages: Iterable[Message],
    user_id: str,
    *,
    profiles: Mapping[str, Profile] | None = None,
) -> List[Conversation]:
    profiles = profiles or {}
    latest: Dict[str, Message] = {}
    unread: Dict[str, int] = {}
    for message in messages:
        if user_id not in (message.sender_id, message.receiver_id):
            continue
        other_id = message.counterparty_id(user_id)
        current = latest.get(other_id)
        if current is None or message.sort_key > current.sort_key:
            latest[other_id] = message
        if message.receiver_id == user_id and not message.is_read:
            unread[other_id] = unread.get(other_id, 0) + 1

    conversations = [
        Conversation(
            counterparty=_resolve_profile(other_id, message, user_id, profiles),
            last_message=message,
            unread_count=unread.get(other_id, 0),
        )
        for other_id, message in latest.items()
    ]
    conversations.sort(key=lambda conversation: conversation.last_message.sort_key, reverse=True)
    return conversations


def group_requests(
    requests: Iterable[Message],
    user_id: str,
    *,
    profiles: Mapping[str, Profile] | None = None,
) -> List[RequestThread]:
    profiles = profiles or {}
    by_sender: Dict[str, List[Message]] = {}
    for message in requests:
        by_sender.setdefault(message.sender_id, []).append(message)

    threads: List[RequestThread] = []
    for sender_id, items in by_sender.items():
        items.sort(key=lambda message: message.sort_key, reverse=True)
        threads.append(
            RequestThread(
                sender=_resolve_profile(sender_id, items[0], user_id, profiles),
                messages=tuple(items),
            )
        )
    threads.sort(key=lambda thread: thread.latest.sort_key, reverse=True)
    return threads


def aggregate(
    messages: Iterable[Message],
    user_id: str,
    following: Set[str],
    *,
    profiles: Mapping[str, Profile] | None = None,
) -> Tuple[List[Conversation], List[RequestThread]]:
    """Return (conversations newest first, request threads newest first)."""

    requests, others = partition(messages, user_id, following)
    return (
        build_conversations(others, user_id, profiles=profiles),
        group_requests(requests, user_id, profiles=profiles),
    )

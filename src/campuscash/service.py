"""Backing-service core: row-level rules over the tables plus change publication."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Set

from .hub import CHANGE_INSERT, CHANGE_UPDATE, ChangeEvent, RealtimeHub
from .models import (
    REQUEST_ACCEPTED,
    REQUEST_DECLINED,
    REQUEST_PENDING,
    Message,
    Profile,
    Relationship,
)
from .sqlite_backend import SQLiteBackend
from .tables import (
    InMemoryMessageTable,
    InMemoryProfileTable,
    InMemoryRelationshipTable,
    SQLiteMessageTable,
    SQLiteProfileTable,
    SQLiteRelationshipTable,
)

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
MAX_CONTENT_LENGTH = 4000
RESOLVABLE_STATUSES = (REQUEST_ACCEPTED, REQUEST_DECLINED)
DEFAULT_REQUEST_LIMIT = 3


class DataService:
    def __init__(
        self,
        *,
        profiles,
        relationships,
        messages,
        hub: RealtimeHub | None = None,
        request_limit: int = DEFAULT_REQUEST_LIMIT,
    ) -> None:
        self.profiles = profiles
        self.relationships = relationships
        self.messages = messages
        self.hub = hub or RealtimeHub()
        self.request_limit = request_limit

    @classmethod
    def in_memory(cls, hub: RealtimeHub | None = None, *, request_limit: int = DEFAULT_REQUEST_LIMIT) -> "DataService":
        return cls(
            profiles=InMemoryProfileTable(),
            relationships=InMemoryRelationshipTable(),
            messages=InMemoryMessageTable(),
            hub=hub,
            request_limit=request_limit,
        )

    @classmethod
    def sqlite(
        cls, backend: SQLiteBackend, hub: RealtimeHub | None = None, *, request_limit: int = DEFAULT_REQUEST_LIMIT
    ) -> "DataService":
        return cls(
            profiles=SQLiteProfileTable(backend),
            relationships=SQLiteRelationshipTable(backend),
            messages=SQLiteMessageTable(backend),
            hub=hub,
            request_limit=request_limit,
        )

    # profiles

    def get_profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    def upsert_profile(self, actor_id: str, profile: Profile) -> Profile:
        if profile.id != actor_id:
            raise PermissionError("profiles can only be written by their owner")
        if not profile.username.strip():
            raise ValueError("username required")
        return self.profiles.upsert(profile)

    def search_profiles(self, actor_id: str, query: str) -> List[Profile]:
        following = self.relationships.following_ids(actor_id)
        return [
            replace(profile, is_following=profile.id in following)
            for profile in self.profiles.search(query, exclude_id=actor_id)
        ]

    # relationships

    def relationship(self, actor_id: str, other_id: str) -> Relationship:
        return Relationship(
            following=self.relationships.is_following(actor_id, other_id),
            followed_by=self.relationships.is_following(other_id, actor_id),
            blocked=self.relationships.is_blocked(actor_id, other_id),
            blocked_by=self.relationships.is_blocked(other_id, actor_id),
        )

    def following_ids(self, actor_id: str) -> Set[str]:
        return self.relationships.following_ids(actor_id)

    def follow(self, actor_id: str, other_id: str) -> bool:
        if actor_id == other_id:
            raise ValueError("cannot follow yourself")
        return self.relationships.follow(actor_id, other_id)

    def unfollow(self, actor_id: str, other_id: str) -> bool:
        return self.relationships.unfollow(actor_id, other_id)

    def block(self, actor_id: str, other_id: str) -> bool:
        if actor_id == other_id:
            raise ValueError("cannot block yourself")
        return self.relationships.block(actor_id, other_id)

    def unblock(self, actor_id: str, other_id: str) -> bool:
        return self.relationships.unblock(actor_id, other_id)

    # messages

    def list_messages_between(self, actor_id: str, user_a: str, user_b: str) -> List[Message]:
        if actor_id not in (user_a, user_b):
            raise PermissionError("transcript not visible to this user")
        return [self._with_profiles(m) for m in self.messages.list_between(user_a, user_b)]

    def list_messages_for(self, actor_id: str, user_id: str) -> List[Message]:
        if actor_id != user_id:
            raise PermissionError("inbox not visible to this user")
        return [self._with_profiles(m) for m in self.messages.list_for_user(user_id)]

    def is_gated(self, sender_id: str, receiver_id: str) -> bool:
        """True when a send from sender to receiver must be stored as a request."""

        return not (
            self.relationships.is_following(sender_id, receiver_id)
            or self.relationships.is_following(receiver_id, sender_id)
            or self.messages.has_accepted(sender_id, receiver_id)
            or self.messages.has_any(receiver_id, sender_id)
        )

    def insert_message(
        self,
        actor_id: str,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        is_request: bool = False,
        request_status: str | None = None,
        client_id: str | None = None,
    ) -> Message:
        if sender_id != actor_id:
            raise PermissionError("messages can only be sent as yourself")
        if sender_id == receiver_id:
            raise ValueError("cannot message yourself")
        if not content.strip():
            raise ValueError("content required")
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValueError("content too long")
        if self.relationships.is_blocked(sender_id, receiver_id) or self.relationships.is_blocked(
            receiver_id, sender_id
        ):
            raise PermissionError("blocked")
        if self.is_gated(sender_id, receiver_id):
            if self.messages.count_outbound_requests(sender_id, receiver_id) >= self.request_limit:
                raise PermissionError("message limit reached")
            is_request, request_status = True, REQUEST_PENDING
        message = self.messages.insert(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            is_request=is_request,
            request_status=request_status,
            client_id=client_id,
        )
        message = self._with_profiles(message)
        self._publish(ChangeEvent(table=MESSAGES_TABLE, type=CHANGE_INSERT, new=message))
        return message

    def mark_read(self, actor_id: str, message_id: str) -> Message:
        current = self.messages.get(message_id)
        if current is None:
            raise LookupError("unknown message")
        if current.receiver_id != actor_id:
            raise PermissionError("only the receiver can mark a message read")
        change = self.messages.mark_read(message_id)
        if change is None:
            return self._with_profiles(current)
        old, new = change
        new = self._with_profiles(new)
        self._publish(ChangeEvent(table=MESSAGES_TABLE, type=CHANGE_UPDATE, new=new, old=old))
        return new

    def update_request_status(self, actor_id: str, sender_id: str, receiver_id: str, status: str) -> int:
        if receiver_id != actor_id:
            raise PermissionError("only the receiver can resolve message requests")
        if status not in RESOLVABLE_STATUSES:
            raise ValueError("status must be accepted or declined")
        changes = self.messages.update_request_status(sender_id, receiver_id, status)
        for old, new in changes:
            self._publish(
                ChangeEvent(table=MESSAGES_TABLE, type=CHANGE_UPDATE, new=self._with_profiles(new), old=old)
            )
        logger.debug("resolved %d requests %s->%s as %s", len(changes), sender_id, receiver_id, status)
        return len(changes)

    def _with_profiles(self, message: Message) -> Message:
        cache: Dict[str, Profile | None] = {}
        for user_id in (message.sender_id, message.receiver_id):
            if user_id not in cache:
                cache[user_id] = self.profiles.get(user_id)
        return replace(message, sender=cache[message.sender_id], receiver=cache[message.receiver_id])

    def _publish(self, event: ChangeEvent) -> None:
        self.hub.publish_change(event)

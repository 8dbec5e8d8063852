from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_DECLINED = "declined"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_ACCEPTED, REQUEST_DECLINED)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_request_status(value: Any) -> str | None:
    if value in REQUEST_STATUSES:
        return value
    return None


@dataclass(frozen=True)
class Profile:
    id: str
    username: str
    full_name: str | None = None
    avatar_url: str | None = None
    whatsapp_number: str | None = None
    is_following: bool | None = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    @classmethod
    def placeholder(cls, user_id: str) -> "Profile":
        return cls(id=user_id, username=user_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            id=str(data["id"]),
            username=str(data.get("username") or data["id"]),
            full_name=data.get("full_name"),
            avatar_url=data.get("avatar_url"),
            whatsapp_number=data.get("whatsapp_number"),
            is_following=data.get("is_following"),
        )

    def to_api_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "whatsapp_number": self.whatsapp_number,
        }
        if self.is_following is not None:
            body["is_following"] = self.is_following
        return body


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: str
    is_read: bool = False
    is_request: bool = False
    request_status: str | None = None
    client_id: str | None = None
    sender: Profile | None = field(default=None, compare=False)
    receiver: Profile | None = field(default=None, compare=False)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return parse_timestamp(self.created_at), self.id

    def counterparty_id(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    def counterparty(self, user_id: str) -> Profile | None:
        return self.receiver if self.sender_id == user_id else self.sender

    def involves(self, user_a: str, user_b: str) -> bool:
        return {self.sender_id, self.receiver_id} == {user_a, user_b}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        sender = data.get("sender")
        receiver = data.get("receiver")
        return cls(
            id=str(data["id"]),
            sender_id=str(data["sender_id"]),
            receiver_id=str(data["receiver_id"]),
            content=str(data.get("content") or ""),
            created_at=str(data["created_at"]),
            is_read=bool(data.get("is_read", False)),
            is_request=bool(data.get("is_request", False)),
            request_status=normalize_request_status(data.get("request_status")),
            client_id=data.get("client_id"),
            sender=Profile.from_dict(sender) if isinstance(sender, dict) else None,
            receiver=Profile.from_dict(receiver) if isinstance(receiver, dict) else None,
        )

    def to_api_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "created_at": self.created_at,
            "is_read": self.is_read,
            "is_request": self.is_request,
            "request_status": self.request_status,
            "client_id": self.client_id,
        }
        if self.sender is not None:
            body["sender"] = self.sender.to_api_dict()
        if self.receiver is not None:
            body["receiver"] = self.receiver.to_api_dict()
        return body


def sort_ascending(messages: List[Message]) -> List[Message]:
    return sorted(messages, key=lambda message: message.sort_key)


@dataclass(frozen=True)
class Relationship:
    """Follow/block state from the acting user towards one counterparty."""

    following: bool = False
    followed_by: bool = False
    blocked: bool = False
    blocked_by: bool = False

    @property
    def any_block(self) -> bool:
        return self.blocked or self.blocked_by

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relationship":
        return cls(
            following=bool(data.get("following", False)),
            followed_by=bool(data.get("followed_by", False)),
            blocked=bool(data.get("blocked", False)),
            blocked_by=bool(data.get("blocked_by", False)),
        )

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "following": self.following,
            "followed_by": self.followed_by,
            "blocked": self.blocked,
            "blocked_by": self.blocked_by,
        }


@dataclass(frozen=True)
class Conversation:
    counterparty: Profile
    last_message: Message
    unread_count: int


@dataclass(frozen=True)
class RequestThread:
    """Pending message requests from one sender, newest first."""

    sender: Profile
    messages: tuple[Message, ...]

    @property
    def count(self) -> int:
        return len(self.messages)

    @property
    def latest(self) -> Message:
        return self.messages[0]


@dataclass(frozen=True)
class CallRequest:
    call_id: str
    caller: Profile
    is_video: bool
    offer: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ComposerState:
    enabled: bool
    placeholder: str
    reason: str | None = None

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .models import Message

CHANGE_INSERT = "INSERT"
CHANGE_UPDATE = "UPDATE"

CALL_CHANNEL_PREFIX = "call:"
SIGNAL_EVENT = "call-signal"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change on one table."""

    table: str
    type: str
    new: Message
    old: Optional[Message] = None

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "type": self.type,
            "new": self.new.to_api_dict(),
            "old": self.old.to_api_dict() if self.old is not None else None,
        }


@dataclass(frozen=True)
class BroadcastEvent:
    channel: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)


Callback = Callable[[Any], None]


@dataclass
class Subscription:
    subscriber_id: str
    topic: str
    callback: Callback
    column: str | None = None
    value: str | None = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.column is None:
            return True
        return getattr(event.new, self.column, None) == self.value

    def deliver(self, event: Any) -> None:
        self.callback(event)


def table_topic(table: str) -> str:
    return f"table:{table}"


def broadcast_topic(channel: str) -> str:
    return f"broadcast:{channel}"


def call_channel(user_id: str) -> str:
    """Per-user broadcast channel carrying call signals addressed to ``user_id``."""

    return f"{CALL_CHANNEL_PREFIX}{user_id}"


def call_channel_owner(channel: str) -> str | None:
    if not channel.startswith(CALL_CHANNEL_PREFIX):
        return None
    return channel[len(CALL_CHANNEL_PREFIX):] or None


class RealtimeHub:
    """Registers row-change and broadcast subscriptions and fans events out."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe_changes(
        self,
        subscriber_id: str,
        table: str,
        callback: Callback,
        *,
        column: str | None = None,
        value: str | None = None,
    ) -> Subscription:
        subscription = Subscription(
            subscriber_id=subscriber_id,
            topic=table_topic(table),
            callback=callback,
            column=column,
            value=value,
        )
        self._subscriptions.setdefault(subscription.topic, []).append(subscription)
        return subscription

    def subscribe_broadcast(self, subscriber_id: str, channel: str, callback: Callback) -> Subscription:
        subscription = Subscription(subscriber_id=subscriber_id, topic=broadcast_topic(channel), callback=callback)
        self._subscriptions.setdefault(subscription.topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def publish_change(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(table_topic(event.table), [])):
            if subscription.matches(event):
                subscription.deliver(event)

    def broadcast(self, event: BroadcastEvent) -> int:
        subs = list(self._subscriptions.get(broadcast_topic(event.channel), []))
        for subscription in subs:
            subscription.deliver(event)
        return len(subs)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

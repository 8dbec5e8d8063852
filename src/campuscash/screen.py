"""Messages screen: wires the store, aggregator, gate and call session together.

The screen keeps every message involving the current user in one id-keyed
map and re-derives conversations and requests from it after each change, so
duplicated or reordered realtime events converge on the same state. Errors
never leave an action; they become :class:`Notification` entries instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Set

from .aggregator import aggregate
from .backend import Backend
from .calls import (
    END_ERROR,
    END_REJECTED,
    EVENT_BUSY_REJECTED,
    EVENT_ENDED,
    REASON_BUSY,
    REASON_UNAVAILABLE,
    SIGNAL_INVITE,
    CallSession,
    PeerFactory,
    Ringtone,
)
from .config import MessagingConfig
from .errors import (
    BlockedRelationship,
    CallError,
    MessageLimitReached,
    MessagingError,
    PolicyError,
    TransportError,
    ValidationError,
)
from .gate import COMPOSER_PLACEHOLDER, LIMIT_TITLE, GateDecision, MessageRequestGate, composer_state
from .hub import SIGNAL_EVENT, BroadcastEvent, ChangeEvent, call_channel
from .message_store import MessageStore
from .models import (
    REQUEST_ACCEPTED,
    REQUEST_DECLINED,
    REQUEST_PENDING,
    ComposerState,
    Conversation,
    Message,
    Profile,
    Relationship,
    RequestThread,
    sort_ascending,
)
from .realtime import ChannelSubscription, RealtimeClient
from .service import MESSAGES_TABLE

logger = logging.getLogger(__name__)

TAB_CHATS = "chats"
TAB_REQUESTS = "requests"
TAB_USERS = "users"
TABS = (TAB_CHATS, TAB_REQUESTS, TAB_USERS)

VARIANT_DEFAULT = "default"
VARIANT_DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = VARIANT_DEFAULT


def _merge(existing: Message | None, incoming: Message) -> Message:
    """Combine two copies of one row without moving backwards in its lifecycle."""

    if existing is None:
        return incoming
    is_read = existing.is_read or incoming.is_read
    status = incoming.request_status
    if status in (None, REQUEST_PENDING) and existing.request_status in (REQUEST_ACCEPTED, REQUEST_DECLINED):
        status = existing.request_status
    merged = Message(
        id=incoming.id,
        sender_id=incoming.sender_id,
        receiver_id=incoming.receiver_id,
        content=incoming.content,
        created_at=incoming.created_at,
        is_read=is_read,
        is_request=incoming.is_request,
        request_status=status,
        client_id=incoming.client_id or existing.client_id,
        sender=incoming.sender or existing.sender,
        receiver=incoming.receiver or existing.receiver,
    )
    return merged


class MessagesScreen:
    def __init__(
        self,
        user_id: str,
        backend: Backend,
        realtime: RealtimeClient,
        *,
        peer_factory: PeerFactory | None = None,
        config: MessagingConfig | None = None,
        ringtone: Ringtone | None = None,
        notify: Callable[[Notification], None] | None = None,
    ) -> None:
        if backend.user_id != user_id:
            raise ValueError("backend is bound to a different user")
        self.user_id = user_id
        self.config = config or MessagingConfig()
        self.backend = backend
        self.realtime = realtime
        self.store = MessageStore(backend)
        self.gate = MessageRequestGate(self.config.message_request_limit)
        self.me = Profile.placeholder(user_id)
        self.calls = CallSession(
            self.me,
            peer_factory=peer_factory,
            send_signal=self._send_signal,
            ringtone=ringtone,
            tick_interval_s=self.config.call_tick_interval_s,
            listener=self._on_call_event,
        )
        self._notify = notify

        self.messages: Dict[str, Message] = {}
        self.following: Set[str] = set()
        self.profiles: Dict[str, Profile] = {}
        self.conversations: List[Conversation] = []
        self.requests: List[RequestThread] = []
        self.notifications: List[Notification] = []

        self.selected_user: Profile | None = None
        self.relationship = Relationship()
        self.loading_messages = False
        self.active_tab = TAB_CHATS
        self.search_query = ""
        self.search_results: List[Profile] = []

        self.mounted = False
        self._selection = 0
        self._subscriptions: List[ChannelSubscription] = []

    # lifecycle

    async def mount(self) -> None:
        if self.mounted:
            return
        self.mounted = True
        try:
            profile = await self.backend.get_profile(self.user_id)
        except TransportError as exc:
            logger.warning("could not load own profile: %s", exc)
            profile = None
        if profile is not None:
            self.me = profile
            self.calls.user = profile
        try:
            for column in ("receiver_id", "sender_id"):
                self._subscriptions.append(
                    await self.realtime.subscribe_changes(MESSAGES_TABLE, column, self.user_id, self._on_change)
                )
            self._subscriptions.append(
                await self.realtime.subscribe_broadcast(call_channel(self.user_id), self._on_broadcast)
            )
        except TransportError as exc:
            logger.warning("realtime subscription failed: %s", exc)
            self._report("Error", "Live updates are unavailable", VARIANT_DESTRUCTIVE)
        self.realtime.add_reconnect_listener(self.refresh)
        await self.refresh()

    async def unmount(self) -> None:
        if not self.mounted:
            return
        self.mounted = False
        self._selection += 1
        self.realtime.remove_reconnect_listener(self.refresh)
        await self.calls.close()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await self.realtime.unsubscribe(subscription)
            except TransportError as exc:
                logger.warning("unsubscribe %s failed: %s", subscription.sub_id, exc)

    async def refresh(self) -> None:
        """Refetch follows, the inbox and the open transcript wholesale."""

        try:
            self.following = await self.backend.following_ids()
            messages = await self.store.list_conversations_for(self.user_id)
        except TransportError as exc:
            logger.warning("refresh failed: %s", exc)
            self._report("Error", "Could not load conversations", VARIANT_DESTRUCTIVE)
            return
        self.messages = {}
        for message in messages:
            self._remember(message)
        self._recompute()
        if self.selected_user is not None:
            await self._load_selected(self._selection)

    # derived state

    def _recompute(self) -> None:
        self.conversations, self.requests = aggregate(
            self.messages.values(), self.user_id, self.following, profiles=self.profiles
        )

    def _remember(self, message: Message) -> None:
        self.messages[message.id] = _merge(self.messages.get(message.id), message)
        for profile in (message.sender, message.receiver):
            if profile is not None and profile.id != self.user_id:
                self.profiles.setdefault(profile.id, profile)

    @property
    def requests_count(self) -> int:
        return sum(thread.count for thread in self.requests)

    @property
    def transcript(self) -> List[Message]:
        if self.selected_user is None:
            return []
        other = self.selected_user.id
        confirmed = [m for m in self.messages.values() if m.involves(self.user_id, other)]
        return sort_ascending(confirmed + self.store.pending_messages(self.user_id, other))

    @property
    def is_following(self) -> bool:
        return self.selected_user is not None and self.selected_user.id in self.following

    def gate_decision(self) -> GateDecision | None:
        if self.selected_user is None:
            return None
        other = self.selected_user.id
        relationship = Relationship(
            following=other in self.following,
            followed_by=self.relationship.followed_by,
            blocked=self.relationship.blocked,
            blocked_by=self.relationship.blocked_by,
        )
        thread = [m for m in self.messages.values() if m.involves(self.user_id, other)]
        return self.gate.evaluate(thread, self.user_id, other, relationship)

    @property
    def composer(self) -> ComposerState:
        decision = self.gate_decision()
        if decision is None:
            return ComposerState(enabled=False, placeholder=COMPOSER_PLACEHOLDER, reason="no_selection")
        return composer_state(
            is_blocked=decision.blocked,
            is_blocked_by=decision.blocked_by,
            is_user_followed=self.is_following,
            message_limit_reached=decision.limit_reached,
            is_in_call=self.calls.active,
            limit=self.gate.limit,
        )

    # notifications

    def _report(self, title: str, description: str, variant: str = VARIANT_DEFAULT) -> None:
        notification = Notification(title=title, description=description, variant=variant)
        self.notifications.append(notification)
        if self._notify is not None:
            try:
                self._notify(notification)
            except Exception:
                logger.exception("notification callback failed")

    # navigation

    def set_tab(self, tab: str) -> None:
        if tab not in TABS:
            raise ValueError(f"unknown tab: {tab}")
        self.active_tab = tab

    async def search_users(self, query: str) -> List[Profile]:
        self.search_query = query
        if not query.strip():
            self.search_results = []
            return []
        try:
            results = await self.backend.search_profiles(query.strip())
        except TransportError as exc:
            logger.warning("user search failed: %s", exc)
            return self.search_results
        if self.search_query != query:
            return self.search_results
        self.search_results = results
        return results

    async def select_user(self, user: Profile | str) -> None:
        if isinstance(user, str):
            profile = self.profiles.get(user)
            if profile is None:
                try:
                    profile = await self.backend.get_profile(user)
                except TransportError as exc:
                    logger.warning("could not load profile %s: %s", user, exc)
                    profile = None
            user = profile or Profile.placeholder(user)
        if user.id == self.user_id:
            return
        self.profiles[user.id] = user
        self.selected_user = user
        self.relationship = Relationship(following=user.id in self.following)
        if self.active_tab in (TAB_USERS, TAB_REQUESTS):
            self.active_tab = TAB_CHATS
        self.search_query = ""
        self.search_results = []
        self._selection += 1
        await self._load_selected(self._selection)

    def clear_selection(self) -> None:
        self.selected_user = None
        self.relationship = Relationship()
        self._selection += 1

    async def _load_selected(self, token: int) -> None:
        user = self.selected_user
        if user is None:
            return
        self.loading_messages = True
        try:
            relationship = await self.backend.relationship(user.id)
            transcript = await self.store.list_messages_between(self.user_id, user.id)
        except TransportError as exc:
            logger.warning("could not load conversation with %s: %s", user.id, exc)
            if token == self._selection:
                self._report("Error", "Could not load messages", VARIANT_DESTRUCTIVE)
            return
        finally:
            if token == self._selection:
                self.loading_messages = False
        if token != self._selection:
            return
        self.relationship = relationship
        if relationship.following:
            self.following.add(user.id)
        else:
            self.following.discard(user.id)
        for message in transcript:
            self._remember(message)
        self._recompute()
        await self._mark_visible_read(token)

    def _is_visible_unread(self, message: Message) -> bool:
        return (
            self.selected_user is not None
            and message.sender_id == self.selected_user.id
            and message.receiver_id == self.user_id
            and not message.is_read
        )

    async def _mark_visible_read(self, token: int) -> None:
        for message in sort_ascending(list(self.messages.values())):
            if token != self._selection or not self.mounted:
                return
            if self._is_visible_unread(message):
                await self._mark_read(message)
        self._recompute()

    async def _mark_read(self, message: Message) -> None:
        try:
            updated = await self.store.mark_read(message.id)
        except TransportError as exc:
            logger.warning("mark_read %s failed: %s", message.id, exc)
            return
        if updated is not None:
            self._remember(updated)

    # messaging

    async def send_message(self, content: str) -> Message | None:
        user = self.selected_user
        if user is None or not content.strip():
            return None
        decision = self.gate_decision()
        if decision is None:
            return None
        try:
            self.gate.check(decision)
        except MessageLimitReached as exc:
            self._report(LIMIT_TITLE, str(exc), VARIANT_DESTRUCTIVE)
            return None
        except BlockedRelationship as exc:
            self._report("Message not sent", str(exc), VARIANT_DESTRUCTIVE)
            return None
        try:
            message = await self.store.send(
                self.user_id,
                user.id,
                content,
                is_request=decision.is_request,
                request_status=decision.request_status,
            )
        except ValidationError:
            return None
        except TransportError as exc:
            logger.warning("send to %s failed: %s", user.id, exc)
            self._report("Error", "Failed to send message", VARIANT_DESTRUCTIVE)
            return None
        self._remember(message)
        self._recompute()
        return message

    async def _resolve_requests(self, sender_id: str, status: str) -> int:
        count = await self.store.update_request_status(sender_id, self.user_id, status)
        for message in list(self.messages.values()):
            if (
                message.sender_id == sender_id
                and message.receiver_id == self.user_id
                and message.request_status == REQUEST_PENDING
            ):
                self.messages[message.id] = replace(message, request_status=status)
        self._recompute()
        return count

    async def accept_request(self, sender_id: str) -> bool:
        try:
            await self._resolve_requests(sender_id, REQUEST_ACCEPTED)
        except MessagingError as exc:
            logger.warning("accept request from %s failed: %s", sender_id, exc)
            self._report("Error", "Failed to accept request", VARIANT_DESTRUCTIVE)
            return False
        self._report("Success", "Message request accepted")
        return True

    async def decline_request(self, sender_id: str) -> bool:
        try:
            await self._resolve_requests(sender_id, REQUEST_DECLINED)
        except MessagingError as exc:
            logger.warning("decline request from %s failed: %s", sender_id, exc)
            self._report("Error", "Failed to decline request", VARIANT_DESTRUCTIVE)
            return False
        self._report("Success", "Message request declined")
        return True

    def _has_pending_from(self, sender_id: str) -> bool:
        return any(thread.sender.id == sender_id for thread in self.requests)

    async def follow(self, user_id: str) -> bool:
        try:
            await self.backend.follow(user_id)
        except TransportError as exc:
            logger.warning("follow %s failed: %s", user_id, exc)
            self._report("Error", "Failed to follow user", VARIANT_DESTRUCTIVE)
            return False
        had_requests = self._has_pending_from(user_id)
        self.following.add(user_id)
        if self.selected_user is not None and self.selected_user.id == user_id:
            self.relationship = Relationship(
                following=True,
                followed_by=self.relationship.followed_by,
                blocked=self.relationship.blocked,
                blocked_by=self.relationship.blocked_by,
            )
        if had_requests:
            try:
                await self._resolve_requests(user_id, REQUEST_ACCEPTED)
            except MessagingError as exc:
                logger.warning("accepting requests from %s after follow failed: %s", user_id, exc)
        self._recompute()
        self._report("Success", "User followed successfully")
        return True

    async def unfollow(self, user_id: str) -> bool:
        try:
            await self.backend.unfollow(user_id)
        except TransportError as exc:
            logger.warning("unfollow %s failed: %s", user_id, exc)
            self._report("Error", "Failed to unfollow user", VARIANT_DESTRUCTIVE)
            return False
        self.following.discard(user_id)
        if self.selected_user is not None and self.selected_user.id == user_id:
            self.relationship = Relationship(
                following=False,
                followed_by=self.relationship.followed_by,
                blocked=self.relationship.blocked,
                blocked_by=self.relationship.blocked_by,
            )
        self._recompute()
        self._report("Success", "User unfollowed successfully")
        return True

    async def block(self, user_id: str) -> bool:
        return await self._set_block(user_id, True)

    async def unblock(self, user_id: str) -> bool:
        return await self._set_block(user_id, False)

    async def _set_block(self, user_id: str, blocked: bool) -> bool:
        action = self.backend.block if blocked else self.backend.unblock
        try:
            await action(user_id)
            relationship = await self.backend.relationship(user_id)
        except TransportError as exc:
            logger.warning("%s %s failed: %s", "block" if blocked else "unblock", user_id, exc)
            self._report("Error", "Could not update block status", VARIANT_DESTRUCTIVE)
            return False
        if self.selected_user is not None and self.selected_user.id == user_id:
            self.relationship = relationship
        if blocked and self.calls.active and self.calls.peer_id == user_id:
            await self.calls.hangup()
        self._report("Success", "User blocked" if blocked else "User unblocked")
        return True

    # realtime

    async def _on_change(self, event: ChangeEvent) -> None:
        message = event.new
        if self.user_id not in (message.sender_id, message.receiver_id):
            return
        self.store.reconcile(message)
        self._remember(message)
        self._recompute()
        stored = self.messages[message.id]
        if self.mounted and self._is_visible_unread(stored):
            token = self._selection
            await self._mark_read(stored)
            if token == self._selection:
                self._recompute()

    async def _on_broadcast(self, event: BroadcastEvent) -> None:
        if event.event != SIGNAL_EVENT:
            return
        payload = dict(event.payload)
        call_id = payload.get("call_id")
        caller_id = payload.get("from")
        if payload.get("type") == SIGNAL_INVITE and isinstance(call_id, str):
            if await self._calls_blocked_with(caller_id):
                logger.info("refusing call %s from blocked user %s", call_id, caller_id)
                await self.calls.refuse(call_id, caller_id, REASON_UNAVAILABLE)
                return
        await self.calls.handle_signal(payload)

    async def _calls_blocked_with(self, other_id: object) -> bool:
        if not isinstance(other_id, str) or not other_id:
            return False
        try:
            relationship = await self.backend.relationship(other_id)
        except TransportError as exc:
            logger.warning("relationship lookup for %s failed: %s", other_id, exc)
            return self.selected_user is not None and self.selected_user.id == other_id and self.relationship.any_block
        if self.selected_user is not None and self.selected_user.id == other_id:
            self.relationship = relationship
        return relationship.any_block

    async def _send_signal(self, to_user_id: str, payload: Dict) -> None:
        await self.realtime.send_broadcast(call_channel(to_user_id), SIGNAL_EVENT, payload)

    # calls

    def _on_call_event(self, event: str, session: CallSession) -> None:
        if event == EVENT_BUSY_REJECTED:
            self._report("Missed call", "Someone tried to call you while you were on another call")
        elif event == EVENT_ENDED:
            if session.end_reason == END_REJECTED and session.remote_reason == REASON_BUSY:
                self._report("Call Ended", "User is on another call")
            elif session.end_reason == END_REJECTED and session.remote_reason == REASON_UNAVAILABLE:
                self._report("Call unavailable", "You can't call this user", VARIANT_DESTRUCTIVE)
            elif session.end_reason == END_REJECTED and session.remote_reason is not None:
                self._report("Call Ended", "Call was declined")
            elif session.end_reason == END_ERROR:
                self._report(
                    "Call Error",
                    session.error or "There was an error with the call connection",
                    VARIANT_DESTRUCTIVE,
                )

    async def start_call(self, with_video: bool = False) -> str | None:
        user = self.selected_user
        if user is None:
            return None
        if await self._calls_blocked_with(user.id):
            self._report("Call unavailable", "You can't call this user", VARIANT_DESTRUCTIVE)
            return None
        try:
            return await self.calls.initiate(user.id, with_video)
        except PolicyError as exc:
            self._report("Call unavailable", str(exc), VARIANT_DESTRUCTIVE)
        except CallError as exc:
            logger.warning("call to %s failed: %s", user.id, exc)
        return None

    async def accept_call(self) -> bool:
        try:
            await self.calls.accept()
        except CallError as exc:
            logger.warning("accepting call failed: %s", exc)
            return False
        return True

    async def reject_call(self) -> None:
        await self.calls.reject()

    async def end_call(self) -> None:
        await self.calls.hangup()

    def toggle_audio(self) -> None:
        self.calls.toggle_audio()

    def toggle_video(self) -> None:
        self.calls.toggle_video()

    async def settle(self) -> None:
        """Let queued realtime events and call signals finish."""

        for _ in range(3):
            await self.realtime.drain()
            await self.calls.flush()
            await asyncio.sleep(0)

"""Row storage for profiles, follow/block relationships and messages."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Set, Tuple

from .models import (
    REQUEST_ACCEPTED,
    REQUEST_DECLINED,
    REQUEST_PENDING,
    Message,
    Profile,
    normalize_request_status,
    now_iso,
    parse_timestamp,
    sort_ascending,
)
from .sqlite_backend import SQLiteBackend

MAX_SEARCH_RESULTS = 20

MessageChange = Tuple[Message, Message]

_MESSAGE_COLUMNS = (
    "id, sender_id, receiver_id, content, created_at, is_read, is_request, request_status, client_id"
)


class _Clock:
    """Issues strictly increasing ``created_at`` values."""

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            candidate = parse_timestamp(now_iso())
            if self._last is not None and candidate <= self._last:
                candidate = self._last + timedelta(microseconds=1)
            self._last = candidate
            return candidate.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def _matches_query(profile: Profile, needle: str) -> bool:
    haystacks = [profile.username, profile.full_name or ""]
    return any(needle in value.lower() for value in haystacks)


class InMemoryProfileTable:
    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}

    def upsert(self, profile: Profile) -> Profile:
        stored = replace(profile, is_following=None)
        self._profiles[profile.id] = stored
        return stored

    def get(self, user_id: str) -> Profile | None:
        return self._profiles.get(user_id)

    def search(self, query: str, *, exclude_id: str | None = None, limit: int = MAX_SEARCH_RESULTS) -> List[Profile]:
        needle = query.strip().lower()
        if not needle:
            return []
        matches = [
            profile
            for profile in self._profiles.values()
            if profile.id != exclude_id and _matches_query(profile, needle)
        ]
        matches.sort(key=lambda profile: profile.username.lower())
        return matches[:limit]


class SQLiteProfileTable:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def upsert(self, profile: Profile) -> Profile:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO profiles (id, username, full_name, avatar_url, whatsapp_number)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username=excluded.username,
                    full_name=excluded.full_name,
                    avatar_url=excluded.avatar_url,
                    whatsapp_number=excluded.whatsapp_number
                """,
                (profile.id, profile.username, profile.full_name, profile.avatar_url, profile.whatsapp_number),
            )
        return replace(profile, is_following=None)

    def get(self, user_id: str) -> Profile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT id, username, full_name, avatar_url, whatsapp_number FROM profiles WHERE id=?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return Profile(**row)

    def search(self, query: str, *, exclude_id: str | None = None, limit: int = MAX_SEARCH_RESULTS) -> List[Profile]:
        needle = query.strip().lower()
        if not needle:
            return []
        pattern = f"%{needle}%"
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT id, username, full_name, avatar_url, whatsapp_number
                FROM profiles
                WHERE (lower(username) LIKE ? OR lower(coalesce(full_name, '')) LIKE ?)
                  AND id != ?
                ORDER BY lower(username) ASC
                LIMIT ?
                """,
                (pattern, pattern, exclude_id or "", limit),
            ).fetchall()
        return [Profile(**row) for row in rows]


class InMemoryRelationshipTable:
    """Directed follow and block edges."""

    def __init__(self) -> None:
        self._follows: Set[Tuple[str, str]] = set()
        self._blocks: Set[Tuple[str, str]] = set()

    def follow(self, follower_id: str, following_id: str) -> bool:
        key = (follower_id, following_id)
        if key in self._follows:
            return False
        self._follows.add(key)
        return True

    def unfollow(self, follower_id: str, following_id: str) -> bool:
        key = (follower_id, following_id)
        if key not in self._follows:
            return False
        self._follows.discard(key)
        return True

    def is_following(self, follower_id: str, following_id: str) -> bool:
        return (follower_id, following_id) in self._follows

    def following_ids(self, follower_id: str) -> Set[str]:
        return {following for follower, following in self._follows if follower == follower_id}

    def block(self, blocker_id: str, blocked_id: str) -> bool:
        key = (blocker_id, blocked_id)
        if key in self._blocks:
            return False
        self._blocks.add(key)
        return True

    def unblock(self, blocker_id: str, blocked_id: str) -> bool:
        key = (blocker_id, blocked_id)
        if key not in self._blocks:
            return False
        self._blocks.discard(key)
        return True

    def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        return (blocker_id, blocked_id) in self._blocks


class SQLiteRelationshipTable:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def follow(self, follower_id: str, following_id: str) -> bool:
        return self._insert_edge("follows", "follower_id", "following_id", follower_id, following_id)

    def unfollow(self, follower_id: str, following_id: str) -> bool:
        return self._delete_edge("follows", "follower_id", "following_id", follower_id, following_id)

    def is_following(self, follower_id: str, following_id: str) -> bool:
        return self._has_edge("follows", "follower_id", "following_id", follower_id, following_id)

    def following_ids(self, follower_id: str) -> Set[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT following_id FROM follows WHERE follower_id=?", (follower_id,)
            ).fetchall()
        return {row[0] for row in rows}

    def block(self, blocker_id: str, blocked_id: str) -> bool:
        return self._insert_edge("blocked_users", "blocker_id", "blocked_id", blocker_id, blocked_id)

    def unblock(self, blocker_id: str, blocked_id: str) -> bool:
        return self._delete_edge("blocked_users", "blocker_id", "blocked_id", blocker_id, blocked_id)

    def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        return self._has_edge("blocked_users", "blocker_id", "blocked_id", blocker_id, blocked_id)

    def _insert_edge(self, table: str, left: str, right: str, left_id: str, right_id: str) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                f"INSERT OR IGNORE INTO {table} ({left}, {right}, created_at) VALUES (?, ?, ?)",
                (left_id, right_id, now_iso()),
            )
            return cursor.rowcount > 0

    def _delete_edge(self, table: str, left: str, right: str, left_id: str, right_id: str) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                f"DELETE FROM {table} WHERE {left}=? AND {right}=?",
                (left_id, right_id),
            )
            return cursor.rowcount > 0

    def _has_edge(self, table: str, left: str, right: str, left_id: str, right_id: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT 1 FROM {table} WHERE {left}=? AND {right}=?",
                (left_id, right_id),
            ).fetchone()
        return row is not None


class InMemoryMessageTable:
    def __init__(self) -> None:
        self._rows: Dict[str, Message] = {}
        self._clock = _Clock()

    def insert(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        is_request: bool = False,
        request_status: str | None = None,
        client_id: str | None = None,
    ) -> Message:
        message = Message(
            id=_new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=self._clock.next(),
            is_read=False,
            is_request=is_request,
            request_status=normalize_request_status(request_status),
            client_id=client_id,
        )
        self._rows[message.id] = message
        return message

    def get(self, message_id: str) -> Message | None:
        return self._rows.get(message_id)

    def list_between(self, user_a: str, user_b: str) -> List[Message]:
        return sort_ascending([m for m in self._rows.values() if m.involves(user_a, user_b)])

    def list_for_user(self, user_id: str) -> List[Message]:
        rows = [m for m in self._rows.values() if user_id in (m.sender_id, m.receiver_id)]
        return list(reversed(sort_ascending(rows)))

    def mark_read(self, message_id: str) -> MessageChange | None:
        current = self._rows.get(message_id)
        if current is None or current.is_read:
            return None
        updated = replace(current, is_read=True)
        self._rows[message_id] = updated
        return current, updated

    def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> List[MessageChange]:
        changes: List[MessageChange] = []
        for message in sort_ascending(list(self._rows.values())):
            if (
                message.sender_id == sender_id
                and message.receiver_id == receiver_id
                and message.request_status == REQUEST_PENDING
            ):
                updated = replace(message, request_status=status)
                self._rows[message.id] = updated
                changes.append((message, updated))
        return changes

    def count_outbound_requests(self, sender_id: str, receiver_id: str) -> int:
        return sum(
            1
            for m in self._rows.values()
            if m.sender_id == sender_id
            and m.receiver_id == receiver_id
            and m.is_request
            and m.request_status in (REQUEST_PENDING, REQUEST_DECLINED)
        )

    def has_accepted(self, sender_id: str, receiver_id: str) -> bool:
        return any(
            m.sender_id == sender_id and m.receiver_id == receiver_id and m.request_status == REQUEST_ACCEPTED
            for m in self._rows.values()
        )

    def has_any(self, sender_id: str, receiver_id: str) -> bool:
        return any(m.sender_id == sender_id and m.receiver_id == receiver_id for m in self._rows.values())


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        content=row["content"],
        created_at=row["created_at"],
        is_read=bool(row["is_read"]),
        is_request=bool(row["is_request"]),
        request_status=normalize_request_status(row["request_status"]),
        client_id=row["client_id"],
    )


class SQLiteMessageTable:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend
        self._clock = _Clock()

    def insert(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        is_request: bool = False,
        request_status: str | None = None,
        client_id: str | None = None,
    ) -> Message:
        message = Message(
            id=_new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=self._clock.next(),
            is_read=False,
            is_request=is_request,
            request_status=normalize_request_status(request_status),
            client_id=client_id,
        )
        with self._backend.lock:
            self._backend.connection.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.sender_id,
                    message.receiver_id,
                    message.content,
                    message.created_at,
                    int(message.is_read),
                    int(message.is_request),
                    message.request_status,
                    message.client_id,
                ),
            )
        return message

    def get(self, message_id: str) -> Message | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,)
            ).fetchone()
        return _message_from_row(row) if row is not None else None

    def list_between(self, user_a: str, user_b: str) -> List[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)
                """,
                (user_a, user_b, user_b, user_a),
            ).fetchall()
        return sort_ascending([_message_from_row(row) for row in rows])

    def list_for_user(self, user_id: str) -> List[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id=? OR receiver_id=?",
                (user_id, user_id),
            ).fetchall()
        return list(reversed(sort_ascending([_message_from_row(row) for row in rows])))

    def mark_read(self, message_id: str) -> MessageChange | None:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,)
                ).fetchone()
                if row is None or row["is_read"]:
                    conn.rollback()
                    return None
                cursor.execute("UPDATE messages SET is_read=1 WHERE id=?", (message_id,))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        before = _message_from_row(row)
        return before, replace(before, is_read=True)

    def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> List[MessageChange]:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                rows = cursor.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE sender_id=? AND receiver_id=? AND request_status=?
                    """,
                    (sender_id, receiver_id, REQUEST_PENDING),
                ).fetchall()
                cursor.execute(
                    "UPDATE messages SET request_status=? WHERE sender_id=? AND receiver_id=? AND request_status=?",
                    (status, sender_id, receiver_id, REQUEST_PENDING),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        before = sort_ascending([_message_from_row(row) for row in rows])
        return [(message, replace(message, request_status=status)) for message in before]

    def count_outbound_requests(self, sender_id: str, receiver_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE sender_id=? AND receiver_id=? AND is_request=1 AND request_status IN (?, ?)
                """,
                (sender_id, receiver_id, REQUEST_PENDING, REQUEST_DECLINED),
            ).fetchone()
        return int(row[0])

    def has_accepted(self, sender_id: str, receiver_id: str) -> bool:
        return self._exists(
            "sender_id=? AND receiver_id=? AND request_status=?", (sender_id, receiver_id, REQUEST_ACCEPTED)
        )

    def has_any(self, sender_id: str, receiver_id: str) -> bool:
        return self._exists("sender_id=? AND receiver_id=?", (sender_id, receiver_id))

    def _exists(self, where: str, params: Iterable[object]) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT 1 FROM messages WHERE {where} LIMIT 1", tuple(params)
            ).fetchone()
        return row is not None

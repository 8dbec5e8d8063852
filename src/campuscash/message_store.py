"""Message Store: transcript and inbox queries plus optimistic sends."""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List

from .backend import Backend
from .errors import TransportError, ValidationError
from .models import REQUEST_ACCEPTED, REQUEST_DECLINED, Message, now_iso, sort_ascending

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp_"


def new_client_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class MessageStore:
    """Reads and writes messages for the backend's user.

    Locally sent messages live in a pending table keyed by their client id
    until the server-confirmed row arrives, either as the insert response or
    as the realtime echo, whichever comes first.
    """

    def __init__(self, backend: Backend) -> None:
        self.backend = backend
        self._pending: Dict[str, Message] = {}

    @property
    def user_id(self) -> str:
        return self.backend.user_id

    async def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        messages = await self.backend.list_messages_between(user_a, user_b)
        return sort_ascending([message for message in messages if message.involves(user_a, user_b)])

    async def list_conversations_for(self, user_id: str) -> List[Message]:
        messages = await self.backend.list_messages_for(user_id)
        return sorted(
            (m for m in messages if user_id in (m.sender_id, m.receiver_id)),
            key=lambda message: message.sort_key,
            reverse=True,
        )

    def pending_messages(self, user_a: str, user_b: str) -> List[Message]:
        return sort_ascending([m for m in self._pending.values() if m.involves(user_a, user_b)])

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def reconcile(self, message: Message) -> bool:
        """Drop the optimistic copy that ``message`` confirms, if any."""

        if message.client_id is None:
            return False
        return self._pending.pop(message.client_id, None) is not None

    async def send(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        *,
        is_request: bool = False,
        request_status: str | None = None,
    ) -> Message:
        content = content.strip()
        if not content:
            raise ValidationError("Message content is empty")
        if not receiver_id:
            raise ValidationError("No recipient selected")
        if sender_id != self.user_id:
            raise ValidationError("Messages can only be sent as the signed-in user")

        client_id = new_client_id()
        self._pending[client_id] = Message(
            id=client_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=now_iso(),
            is_read=False,
            is_request=is_request,
            request_status=request_status,
            client_id=client_id,
        )
        try:
            message = await self.backend.insert_message(
                receiver_id=receiver_id,
                content=content,
                is_request=is_request,
                request_status=request_status,
                client_id=client_id,
            )
        except TransportError:
            logger.warning("send to %s failed; rolling back %s", receiver_id, client_id)
            self._pending.pop(client_id, None)
            raise
        self._pending.pop(client_id, None)
        return message

    async def mark_read(self, message_id: str) -> Message | None:
        if message_id.startswith(TEMP_ID_PREFIX):
            return None
        return await self.backend.mark_read(message_id)

    async def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> int:
        if status not in (REQUEST_ACCEPTED, REQUEST_DECLINED):
            raise ValidationError(f"unsupported request status: {status}")
        return await self.backend.update_request_status(sender_id, receiver_id, status)

"""Client-side access to the backing store, bound to one acting user."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Set, TypeVar

import aiohttp

from .errors import TransportError
from .models import Message, Profile, Relationship
from .service import DataService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backend:
    """Asynchronous query/mutation surface used by the messaging core.

    Every failure, whether the network, the session or a row-level rule,
    surfaces as :class:`TransportError`.
    """

    user_id: str

    async def get_profile(self, user_id: str) -> Profile | None:
        raise NotImplementedError

    async def upsert_profile(self, profile: Profile) -> Profile:
        raise NotImplementedError

    async def search_profiles(self, query: str) -> List[Profile]:
        raise NotImplementedError

    async def relationship(self, other_id: str) -> Relationship:
        raise NotImplementedError

    async def following_ids(self) -> Set[str]:
        raise NotImplementedError

    async def follow(self, other_id: str) -> bool:
        raise NotImplementedError

    async def unfollow(self, other_id: str) -> bool:
        raise NotImplementedError

    async def block(self, other_id: str) -> bool:
        raise NotImplementedError

    async def unblock(self, other_id: str) -> bool:
        raise NotImplementedError

    async def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        raise NotImplementedError

    async def list_messages_for(self, user_id: str) -> List[Message]:
        raise NotImplementedError

    async def insert_message(
        self,
        *,
        receiver_id: str,
        content: str,
        is_request: bool,
        request_status: str | None,
        client_id: str | None,
    ) -> Message:
        raise NotImplementedError

    async def mark_read(self, message_id: str) -> Message:
        raise NotImplementedError

    async def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> int:
        raise NotImplementedError


class LocalBackend(Backend):
    """Runs against an in-process :class:`DataService`."""

    def __init__(self, service: DataService, user_id: str) -> None:
        self.service = service
        self.user_id = user_id

    async def _call(self, func: Callable[[], T]) -> T:
        await asyncio.sleep(0)
        try:
            return func()
        except PermissionError as exc:
            raise TransportError("forbidden", str(exc)) from exc
        except LookupError as exc:
            raise TransportError("not_found", str(exc)) from exc
        except ValueError as exc:
            raise TransportError("invalid_request", str(exc)) from exc

    async def get_profile(self, user_id: str) -> Profile | None:
        return await self._call(lambda: self.service.get_profile(user_id))

    async def upsert_profile(self, profile: Profile) -> Profile:
        return await self._call(lambda: self.service.upsert_profile(self.user_id, profile))

    async def search_profiles(self, query: str) -> List[Profile]:
        return await self._call(lambda: self.service.search_profiles(self.user_id, query))

    async def relationship(self, other_id: str) -> Relationship:
        return await self._call(lambda: self.service.relationship(self.user_id, other_id))

    async def following_ids(self) -> Set[str]:
        return await self._call(lambda: self.service.following_ids(self.user_id))

    async def follow(self, other_id: str) -> bool:
        return await self._call(lambda: self.service.follow(self.user_id, other_id))

    async def unfollow(self, other_id: str) -> bool:
        return await self._call(lambda: self.service.unfollow(self.user_id, other_id))

    async def block(self, other_id: str) -> bool:
        return await self._call(lambda: self.service.block(self.user_id, other_id))

    async def unblock(self, other_id: str) -> bool:
        return await self._call(lambda: self.service.unblock(self.user_id, other_id))

    async def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        return await self._call(lambda: self.service.list_messages_between(self.user_id, user_a, user_b))

    async def list_messages_for(self, user_id: str) -> List[Message]:
        return await self._call(lambda: self.service.list_messages_for(self.user_id, user_id))

    async def insert_message(
        self,
        *,
        receiver_id: str,
        content: str,
        is_request: bool,
        request_status: str | None,
        client_id: str | None,
    ) -> Message:
        return await self._call(
            lambda: self.service.insert_message(
                self.user_id,
                sender_id=self.user_id,
                receiver_id=receiver_id,
                content=content,
                is_request=is_request,
                request_status=request_status,
                client_id=client_id,
            )
        )

    async def mark_read(self, message_id: str) -> Message:
        return await self._call(lambda: self.service.mark_read(self.user_id, message_id))

    async def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> int:
        return await self._call(
            lambda: self.service.update_request_status(self.user_id, sender_id, receiver_id, status)
        )


class HttpBackend(Backend):
    """Talks to the messaging HTTP API with an ``aiohttp.ClientSession``."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        session_token: str | None = None,
        http: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session_token = session_token
        self._http = http
        self._owns_http = http is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None

    async def start_session(self, *, username: str | None = None, full_name: str | None = None) -> str:
        payload: Dict[str, Any] = {"user_id": self.user_id}
        if username is not None:
            payload["username"] = username
        if full_name is not None:
            payload["full_name"] = full_name
        response = await self._request("POST", "/v1/session/start", json=payload, authenticated=False)
        self.session_token = str(response["session_token"])
        return self.session_token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        headers: Dict[str, str] = {}
        if authenticated:
            if not self.session_token:
                raise TransportError("unauthorized", "session not started")
            headers["Authorization"] = f"Bearer {self.session_token}"
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(method, url, json=json, params=params, headers=headers) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
                if not isinstance(payload, dict):
                    payload = {}
                if response.status >= 400:
                    code = str(payload.get("code") or "http_error")
                    message = str(payload.get("message") or f"HTTP {response.status}")
                    logger.warning("%s %s failed: %s %s", method, path, code, message)
                    raise TransportError(code, message)
                return payload
        except aiohttp.ClientError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError("network_error", str(exc)) from exc
        except asyncio.TimeoutError as exc:
            logger.warning("%s %s timed out", method, path)
            raise TransportError("timeout", "request timed out") from exc

    async def get_profile(self, user_id: str) -> Profile | None:
        try:
            response = await self._request("GET", f"/v1/profiles/{user_id}")
        except TransportError as exc:
            if exc.code == "not_found":
                return None
            raise
        return Profile.from_dict(response["profile"])

    async def upsert_profile(self, profile: Profile) -> Profile:
        response = await self._request("PUT", f"/v1/profiles/{profile.id}", json=profile.to_api_dict())
        return Profile.from_dict(response["profile"])

    async def search_profiles(self, query: str) -> List[Profile]:
        response = await self._request("GET", "/v1/profiles", params={"q": query})
        return [Profile.from_dict(item) for item in response.get("profiles", [])]

    async def relationship(self, other_id: str) -> Relationship:
        response = await self._request("GET", f"/v1/relationships/{other_id}")
        return Relationship.from_dict(response)

    async def following_ids(self) -> Set[str]:
        response = await self._request("GET", "/v1/follows")
        return {str(user_id) for user_id in response.get("following", [])}

    async def follow(self, other_id: str) -> bool:
        response = await self._request("PUT", f"/v1/follows/{other_id}")
        return bool(response.get("changed"))

    async def unfollow(self, other_id: str) -> bool:
        response = await self._request("DELETE", f"/v1/follows/{other_id}")
        return bool(response.get("changed"))

    async def block(self, other_id: str) -> bool:
        response = await self._request("PUT", f"/v1/blocks/{other_id}")
        return bool(response.get("changed"))

    async def unblock(self, other_id: str) -> bool:
        response = await self._request("DELETE", f"/v1/blocks/{other_id}")
        return bool(response.get("changed"))

    async def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        if self.user_id not in (user_a, user_b):
            raise TransportError("forbidden", "transcript not visible to this user")
        other_id = user_b if user_a == self.user_id else user_a
        response = await self._request("GET", "/v1/messages", params={"with": other_id})
        return [Message.from_dict(item) for item in response.get("messages", [])]

    async def list_messages_for(self, user_id: str) -> List[Message]:
        if user_id != self.user_id:
            raise TransportError("forbidden", "inbox not visible to this user")
        response = await self._request("GET", "/v1/messages")
        return [Message.from_dict(item) for item in response.get("messages", [])]

    async def insert_message(
        self,
        *,
        receiver_id: str,
        content: str,
        is_request: bool,
        request_status: str | None,
        client_id: str | None,
    ) -> Message:
        response = await self._request(
            "POST",
            "/v1/messages",
            json={
                "receiver_id": receiver_id,
                "content": content,
                "is_request": is_request,
                "request_status": request_status,
                "client_id": client_id,
            },
        )
        return Message.from_dict(response["message"])

    async def mark_read(self, message_id: str) -> Message:
        response = await self._request("POST", f"/v1/messages/{message_id}/read")
        return Message.from_dict(response["message"])

    async def update_request_status(self, sender_id: str, receiver_id: str, status: str) -> int:
        response = await self._request(
            "POST",
            "/v1/messages/requests",
            json={"sender_id": sender_id, "receiver_id": receiver_id, "status": status},
        )
        return int(response.get("updated", 0))

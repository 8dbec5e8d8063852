from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMessage, WSMsgType, web

from .calls import SIGNAL_INVITE
from .config import MessagingConfig
from .hub import BroadcastEvent, ChangeEvent, Subscription, call_channel, call_channel_owner
from .models import Profile
from .service import MESSAGES_TABLE, DataService
from .sessions import Session, SessionStore, SQLiteSessionStore
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(
        self,
        *,
        service: DataService,
        sessions: SessionStore | SQLiteSessionStore,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.service = service
        self.hub = service.hub
        self.sessions = sessions
        self.backend = backend


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden(message: str) -> web.Response:
    return _error("forbidden", message, 403)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get_by_session(session_token)


def _run_rule(func: Callable[[], Any]) -> tuple[Any, web.Response | None]:
    """Run a service call and map row-level rule failures onto JSON errors."""

    try:
        return func(), None
    except PermissionError as exc:
        return None, _forbidden(str(exc))
    except LookupError as exc:
        return None, _not_found(str(exc))
    except ValueError as exc:
        return None, _invalid_request(str(exc))


async def _read_json(request: web.Request) -> tuple[Dict[str, Any] | None, web.Response | None]:
    try:
        body = await request.json()
    except Exception:
        return None, _invalid_request("malformed json")
    if not isinstance(body, dict):
        return None, _invalid_request("json object required")
    return body, None


async def handle_session_start(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body, error = await _read_json(request)
    if error is not None:
        return error
    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    username = body.get("username")
    if isinstance(username, str) and username.strip() and runtime.service.get_profile(user_id) is None:
        runtime.service.upsert_profile(
            user_id, Profile(id=user_id, username=username.strip(), full_name=body.get("full_name"))
        )
    session = runtime.sessions.create(user_id)
    logger.info("session started for %s", user_id)
    return web.json_response(
        {"session_token": session.session_token, "user_id": session.user_id, "expires_at": session.expires_at_ms}
    )


async def handle_profile_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    if _authenticate_request(request) is None:
        return _unauthorized()
    profile = runtime.service.get_profile(request.match_info["user_id"])
    if profile is None:
        return _not_found("unknown profile")
    return web.json_response({"profile": profile.to_api_dict()})


async def handle_profile_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body, error = await _read_json(request)
    if error is not None:
        return error
    if not isinstance(body.get("username"), str):
        return _invalid_request("username required")
    profile = Profile.from_dict({**body, "id": request.match_info["user_id"]})
    stored, error = _run_rule(lambda: runtime.service.upsert_profile(session.user_id, profile))
    if error is not None:
        return error
    return web.json_response({"profile": stored.to_api_dict()})


async def handle_profile_search(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    query = request.query.get("q", "")
    profiles = runtime.service.search_profiles(session.user_id, query)
    return web.json_response({"profiles": [profile.to_api_dict() for profile in profiles]})


async def handle_relationship(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    relationship = runtime.service.relationship(session.user_id, request.match_info["user_id"])
    return web.json_response(relationship.to_api_dict())


async def handle_follows_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    following = sorted(runtime.service.following_ids(session.user_id))
    return web.json_response({"following": following})


def _edge_handler(action: str) -> Callable[[web.Request], Any]:
    async def handler(request: web.Request) -> web.Response:
        runtime: Runtime = request.app["runtime"]
        session = _authenticate_request(request)
        if session is None:
            return _unauthorized()
        operation = getattr(runtime.service, action)
        changed, error = _run_rule(lambda: operation(session.user_id, request.match_info["user_id"]))
        if error is not None:
            return error
        return web.json_response({"changed": bool(changed)})

    return handler


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    other_id = request.query.get("with")
    if other_id:
        messages, error = _run_rule(
            lambda: runtime.service.list_messages_between(session.user_id, session.user_id, other_id)
        )
    else:
        messages, error = _run_rule(lambda: runtime.service.list_messages_for(session.user_id, session.user_id))
    if error is not None:
        return error
    return web.json_response({"messages": [message.to_api_dict() for message in messages]})


async def handle_message_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body, error = await _read_json(request)
    if error is not None:
        return error
    receiver_id = body.get("receiver_id")
    content = body.get("content")
    if not isinstance(receiver_id, str) or not isinstance(content, str):
        return _invalid_request("receiver_id and content required")
    client_id = body.get("client_id")
    if client_id is not None and not isinstance(client_id, str):
        return _invalid_request("client_id must be a string")
    message, error = _run_rule(
        lambda: runtime.service.insert_message(
            session.user_id,
            sender_id=str(body.get("sender_id") or session.user_id),
            receiver_id=receiver_id,
            content=content,
            is_request=bool(body.get("is_request", False)),
            request_status=body.get("request_status"),
            client_id=client_id,
        )
    )
    if error is not None:
        return error
    return web.json_response({"message": message.to_api_dict()}, status=201)


async def handle_message_read(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    message, error = _run_rule(lambda: runtime.service.mark_read(session.user_id, request.match_info["message_id"]))
    if error is not None:
        return error
    return web.json_response({"message": message.to_api_dict()})


async def handle_request_status(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body, error = await _read_json(request)
    if error is not None:
        return error
    sender_id = body.get("sender_id")
    status = body.get("status")
    if not isinstance(sender_id, str) or not isinstance(status, str):
        return _invalid_request("sender_id and status required")
    receiver_id = body.get("receiver_id") or session.user_id
    updated, error = _run_rule(
        lambda: runtime.service.update_request_status(session.user_id, sender_id, receiver_id, status)
    )
    if error is not None:
        return error
    return web.json_response({"updated": updated})


def create_app(
    *,
    config: MessagingConfig | None = None,
    db_path: str | None = None,
    service: DataService | None = None,
) -> web.Application:
    config = config or MessagingConfig()
    db_path = db_path if db_path is not None else config.db_path
    backend: SQLiteBackend | None = None
    if service is None and db_path is not None:
        backend = SQLiteBackend(db_path)
        service = DataService.sqlite(backend, request_limit=config.message_request_limit)
        sessions: SessionStore | SQLiteSessionStore = SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms)
    else:
        service = service or DataService.in_memory(request_limit=config.message_request_limit)
        sessions = SessionStore(ttl_ms=config.session_ttl_ms)

    runtime = Runtime(service=service, sessions=sessions, backend=backend)
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {"ping_interval_s": config.ping_interval_s, "ping_miss_limit": 2}
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/profiles", handle_profile_search)
    app.router.add_get("/v1/profiles/{user_id}", handle_profile_get)
    app.router.add_put("/v1/profiles/{user_id}", handle_profile_put)
    app.router.add_get("/v1/relationships/{user_id}", handle_relationship)
    app.router.add_get("/v1/follows", handle_follows_list)
    app.router.add_put("/v1/follows/{user_id}", _edge_handler("follow"))
    app.router.add_delete("/v1/follows/{user_id}", _edge_handler("unfollow"))
    app.router.add_put("/v1/blocks/{user_id}", _edge_handler("block"))
    app.router.add_delete("/v1/blocks/{user_id}", _edge_handler("unblock"))
    app.router.add_get("/v1/messages", handle_messages_list)
    app.router.add_post("/v1/messages", handle_message_send)
    app.router.add_post("/v1/messages/requests", handle_request_status)
    app.router.add_post("/v1/messages/{message_id}/read", handle_message_read)
    app.router.add_get("/v1/realtime", realtime_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _reply(frame_type: str, request_id: Any, body: dict[str, Any] | None = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"v": 1, "t": frame_type, "id": request_id}
    if body is not None:
        frame["body"] = body
    return frame


def _change_frame(sub_id: str, event: ChangeEvent) -> dict[str, Any]:
    return {"v": 1, "t": "change", "body": {"sub_id": sub_id, **event.to_api_dict()}}


def _broadcast_frame(sub_id: str, event: BroadcastEvent) -> dict[str, Any]:
    return {
        "v": 1,
        "t": "broadcast",
        "body": {"sub_id": sub_id, "channel": event.channel, "event": event.event, "payload": event.payload},
    }


class RealtimeConnection:
    """One authenticated realtime socket and the hub subscriptions it holds.

    Replies to client requests are written inline; hub events go through a
    bounded queue drained by a writer task, and a full queue closes the socket.
    """

    def __init__(
        self,
        runtime: Runtime,
        ws: web.WebSocketResponse,
        user_id: str,
        *,
        ping_interval_s: float,
        ping_miss_limit: int,
    ) -> None:
        self.runtime = runtime
        self.ws = ws
        self.user_id = user_id
        self.ping_interval_s = ping_interval_s
        self.ping_miss_limit = ping_miss_limit
        self.subscriptions: Dict[str, Subscription] = {}
        self._outbound: asyncio.Queue[dict] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
        self._tasks: list[asyncio.Task] = []
        self._idle_since = asyncio.get_running_loop().time()
        self._unanswered_pings = 0
        self._closing = False
        self._handlers: Dict[str, Callable[[Any, Dict[str, Any]], Awaitable[dict[str, Any] | None]]] = {
            "ping": self._on_ping,
            "pong": self._on_pong,
            "changes.subscribe": self._on_subscribe_changes,
            "broadcast.subscribe": self._on_subscribe_broadcast,
            "unsubscribe": self._on_unsubscribe,
            "broadcast.send": self._on_broadcast_send,
        }

    def start(self) -> None:
        self._tasks = [asyncio.create_task(self._drain_outbound()), asyncio.create_task(self._keepalive())]

    async def stop(self) -> None:
        for subscription in self.subscriptions.values():
            self.runtime.hub.unsubscribe(subscription)
        self.subscriptions.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def push(self, frame: dict) -> None:
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("realtime outbound queue full for %s", self.user_id)
            asyncio.create_task(self._abort("backpressure"))

    async def _abort(self, reason: str) -> None:
        if self._closing:
            return
        self._closing = True
        await self.ws.close(code=1011, message=reason.encode("utf-8"))

    async def _drain_outbound(self) -> None:
        try:
            while True:
                await self.ws.send_json(await self._outbound.get())
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def _keepalive(self) -> None:
        interval = self.ping_interval_s
        if interval <= 0:
            return
        loop = asyncio.get_running_loop()
        try:
            while not self.ws.closed:
                await asyncio.sleep(interval)
                if self.ws.closed or loop.time() - self._idle_since < interval:
                    continue
                await self.ws.send_json({"v": 1, "t": "ping"})
                self._unanswered_pings += 1
                if self._unanswered_pings > self.ping_miss_limit:
                    await self.ws.close(code=1001, message=b"heartbeat timeout")
                    return
        except asyncio.CancelledError:
            return

    def touch(self) -> None:
        self._idle_since = asyncio.get_running_loop().time()
        self._unanswered_pings = 0

    async def handle_text(self, raw: WSMessage) -> None:
        try:
            frame = raw.json()
        except ValueError:
            await self.ws.send_json(_error_frame("invalid_request", "malformed json"))
            return
        if not isinstance(frame, dict):
            await self.ws.send_json(_error_frame("invalid_request", "json object required"))
            return
        self.touch()
        request_id = frame.get("id")
        if frame.get("v") != 1:
            await self.ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=request_id))
            return
        handler = self._handlers.get(frame.get("t"))
        if handler is None:
            await self.ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            return
        body = frame.get("body")
        reply = await handler(request_id, body if isinstance(body, dict) else {})
        if reply is not None:
            await self.ws.send_json(reply)

    def _replace(self, sub_id: str, subscription: Subscription) -> None:
        previous = self.subscriptions.pop(sub_id, None)
        if previous is not None:
            self.runtime.hub.unsubscribe(previous)
        self.subscriptions[sub_id] = subscription

    async def _on_ping(self, request_id: Any, _: Dict[str, Any]) -> dict[str, Any]:
        return _reply("pong", request_id)

    async def _on_pong(self, request_id: Any, _: Dict[str, Any]) -> None:
        return None

    async def _on_subscribe_changes(self, request_id: Any, body: Dict[str, Any]) -> dict[str, Any]:
        sub_id = body.get("sub_id")
        table = body.get("table")
        row_filter = body.get("filter") or {}
        column = row_filter.get("column")
        if not sub_id or not table:
            return _error_frame("invalid_request", "sub_id and table required", request_id=request_id)
        if table != MESSAGES_TABLE:
            return _error_frame("invalid_request", "unknown table", request_id=request_id)
        if column not in ("sender_id", "receiver_id") or row_filter.get("value") != self.user_id:
            return _error_frame(
                "forbidden", "filter must pin sender_id or receiver_id to yourself", request_id=request_id
            )
        subscription = self.runtime.hub.subscribe_changes(
            self.user_id,
            table,
            lambda event: self.push(_change_frame(sub_id, event)),
            column=column,
            value=self.user_id,
        )
        self._replace(sub_id, subscription)
        return _reply("subscribed", request_id, {"sub_id": sub_id})

    async def _on_subscribe_broadcast(self, request_id: Any, body: Dict[str, Any]) -> dict[str, Any]:
        sub_id = body.get("sub_id")
        channel = body.get("channel")
        if not sub_id or not channel:
            return _error_frame("invalid_request", "sub_id and channel required", request_id=request_id)
        if channel != call_channel(self.user_id):
            return _error_frame("forbidden", "channel not owned by this user", request_id=request_id)
        subscription = self.runtime.hub.subscribe_broadcast(
            self.user_id, channel, lambda event: self.push(_broadcast_frame(sub_id, event))
        )
        self._replace(sub_id, subscription)
        return _reply("subscribed", request_id, {"sub_id": sub_id})

    async def _on_unsubscribe(self, request_id: Any, body: Dict[str, Any]) -> dict[str, Any]:
        sub_id = body.get("sub_id")
        subscription = self.subscriptions.pop(str(sub_id), None)
        if subscription is not None:
            self.runtime.hub.unsubscribe(subscription)
        return _reply("unsubscribed", request_id, {"sub_id": sub_id})

    def _blocked_with(self, other_id: str) -> bool:
        return self.runtime.service.relationship(self.user_id, other_id).any_block

    async def _on_broadcast_send(self, request_id: Any, body: Dict[str, Any]) -> dict[str, Any]:
        channel = body.get("channel")
        event_name = body.get("event")
        payload = body.get("payload")
        if not isinstance(channel, str) or not channel or not event_name or not isinstance(payload, dict):
            return _error_frame("invalid_request", "channel, event and payload required", request_id=request_id)
        callee = call_channel_owner(channel)
        if callee is not None:
            # Signal senders are stamped by the server, never trusted.
            payload = {**payload, "from": self.user_id}
            if payload.get("type") == SIGNAL_INVITE and self._blocked_with(callee):
                logger.info("refusing call invite from %s to %s: blocked", self.user_id, callee)
                return _error_frame("forbidden", "calls between these users are blocked", request_id=request_id)
        delivered = self.runtime.hub.broadcast(BroadcastEvent(channel=channel, event=event_name, payload=payload))
        return _reply("broadcast.acked", request_id, {"delivered": delivered})


async def _start_realtime_session(runtime: Runtime, ws: web.WebSocketResponse) -> Session | None:
    """Read the ``session.start`` frame; returns the session or closes the socket."""

    first = await ws.receive()
    if first.type != WSMsgType.TEXT:
        await ws.close(code=1002, message=b"invalid handshake")
        return None
    try:
        frame = first.json()
    except ValueError:
        await ws.close(code=1002, message=b"invalid json")
        return None
    if not isinstance(frame, dict):
        await ws.close(code=1002, message=b"invalid handshake")
        return None
    request_id = frame.get("id")
    error: dict[str, Any] | None = None
    session: Session | None = None
    if frame.get("v") != 1:
        error = _error_frame("invalid_request", "unsupported version", request_id=request_id)
    elif frame.get("t") != "session.start":
        error = _error_frame("invalid_request", "first frame must start session", request_id=request_id)
    else:
        body = frame.get("body") or {}
        session = runtime.sessions.get_by_session(str(body.get("session_token") or ""))
        if session is None:
            error = _error_frame("unauthorized", "invalid session_token", request_id=request_id)
    if error is not None:
        await ws.send_json(error)
        await ws.close()
        return None
    await ws.send_json(_reply("session.ready", request_id, {"user_id": session.user_id}))
    return session


async def realtime_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    session = await _start_realtime_session(runtime, ws)
    if session is None:
        return ws

    connection = RealtimeConnection(
        runtime,
        ws,
        session.user_id,
        ping_interval_s=ws_config["ping_interval_s"],
        ping_miss_limit=ws_config["ping_miss_limit"],
    )
    connection.start()
    logger.info("realtime connected for %s", session.user_id)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await connection.handle_text(msg)
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR):
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        await connection.stop()
        logger.info("realtime disconnected for %s", session.user_id)

    return ws

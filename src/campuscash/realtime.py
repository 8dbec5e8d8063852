"""Client side of the realtime channel: row-change and broadcast subscriptions."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List

import aiohttp

from .errors import TransportError
from .hub import BroadcastEvent, ChangeEvent, RealtimeHub, Subscription
from .models import Message

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]
ReconnectListener = Callable[[], Awaitable[None]]

KIND_CHANGES = "changes"
KIND_BROADCAST = "broadcast"


class ChannelSubscription:
    """Delivers events to one async handler, one at a time, in arrival order."""

    def __init__(
        self,
        sub_id: str,
        kind: str,
        handler: EventHandler,
        *,
        table: str | None = None,
        column: str | None = None,
        value: str | None = None,
        channel: str | None = None,
    ) -> None:
        self.sub_id = sub_id
        self.kind = kind
        self.table = table
        self.column = column
        self.value = value
        self.channel = channel
        self._handler = handler
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._busy = False
        self._task: asyncio.Task | None = asyncio.create_task(self._pump())

    @property
    def active(self) -> bool:
        return self._task is not None

    def push(self, event: Any) -> None:
        if self._task is None:
            return
        self._queue.put_nowait(event)

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            self._busy = True
            try:
                await self._handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("realtime handler for %s failed", self.sub_id)
            finally:
                self._busy = False
                self._queue.task_done()

    @property
    def idle(self) -> bool:
        return self._task is None or (self._queue.empty() and not self._busy)

    async def drain(self) -> None:
        if self._task is not None:
            await self._queue.join()

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass


class RealtimeClient:
    """Common bookkeeping for realtime transports."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, ChannelSubscription] = {}
        self._reconnect_listeners: List[ReconnectListener] = []
        self._ids = itertools.count(1)

    def _next_sub_id(self) -> str:
        return f"sub_{next(self._ids)}"

    @property
    def subscriptions(self) -> List[ChannelSubscription]:
        return list(self._subscriptions.values())

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        self._reconnect_listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener) -> None:
        try:
            self._reconnect_listeners.remove(listener)
        except ValueError:
            return

    async def _notify_reconnected(self) -> None:
        for listener in list(self._reconnect_listeners):
            try:
                await listener()
            except Exception:
                logger.exception("reconnect listener failed")

    async def subscribe_changes(
        self, table: str, column: str, value: str, handler: EventHandler
    ) -> ChannelSubscription:
        subscription = ChannelSubscription(
            self._next_sub_id(), KIND_CHANGES, handler, table=table, column=column, value=value
        )
        self._subscriptions[subscription.sub_id] = subscription
        try:
            await self._attach(subscription)
        except Exception:
            self._subscriptions.pop(subscription.sub_id, None)
            await subscription.close()
            raise
        return subscription

    async def subscribe_broadcast(self, channel: str, handler: EventHandler) -> ChannelSubscription:
        subscription = ChannelSubscription(self._next_sub_id(), KIND_BROADCAST, handler, channel=channel)
        self._subscriptions[subscription.sub_id] = subscription
        try:
            await self._attach(subscription)
        except Exception:
            self._subscriptions.pop(subscription.sub_id, None)
            await subscription.close()
            raise
        return subscription

    async def unsubscribe(self, subscription: ChannelSubscription) -> None:
        if self._subscriptions.pop(subscription.sub_id, None) is None:
            return
        try:
            await self._detach(subscription)
        finally:
            await subscription.close()

    async def drain(self) -> None:
        """Wait until every subscription has handled everything it received."""

        while True:
            subscriptions = list(self._subscriptions.values())
            for subscription in subscriptions:
                await subscription.drain()
            if all(subscription.idle for subscription in self._subscriptions.values()):
                return

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)

    async def send_broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _attach(self, subscription: ChannelSubscription) -> None:
        raise NotImplementedError

    async def _detach(self, subscription: ChannelSubscription) -> None:
        raise NotImplementedError


class LocalRealtimeClient(RealtimeClient):
    """Subscribes directly on an in-process :class:`RealtimeHub`."""

    def __init__(self, hub: RealtimeHub, user_id: str) -> None:
        super().__init__()
        self.hub = hub
        self.user_id = user_id
        self._hub_subscriptions: Dict[str, Subscription] = {}

    async def _attach(self, subscription: ChannelSubscription) -> None:
        if subscription.kind == KIND_CHANGES:
            hub_subscription = self.hub.subscribe_changes(
                self.user_id,
                subscription.table or "",
                subscription.push,
                column=subscription.column,
                value=subscription.value,
            )
        else:
            hub_subscription = self.hub.subscribe_broadcast(
                self.user_id, subscription.channel or "", subscription.push
            )
        self._hub_subscriptions[subscription.sub_id] = hub_subscription

    async def _detach(self, subscription: ChannelSubscription) -> None:
        hub_subscription = self._hub_subscriptions.pop(subscription.sub_id, None)
        if hub_subscription is not None:
            self.hub.unsubscribe(hub_subscription)

    async def send_broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self.hub.broadcast(BroadcastEvent(channel=channel, event=event, payload=dict(payload)))

    async def reconnect(self) -> None:
        """Re-register every subscription on the hub, then notify listeners."""

        for subscription in list(self._subscriptions.values()):
            await self._detach(subscription)
            await self._attach(subscription)
        await self._notify_reconnected()


def _change_from_body(body: Dict[str, Any]) -> ChangeEvent:
    old = body.get("old")
    return ChangeEvent(
        table=str(body.get("table")),
        type=str(body.get("type")),
        new=Message.from_dict(body["new"]),
        old=Message.from_dict(old) if isinstance(old, dict) else None,
    )


class WebSocketRealtimeClient(RealtimeClient):
    """Realtime transport over the ``/v1/realtime`` websocket.

    The connection is re-established with exponential backoff when it drops;
    live subscriptions are replayed on the new socket before reconnect
    listeners run.
    """

    def __init__(
        self,
        url: str,
        session_token: str,
        *,
        http: aiohttp.ClientSession | None = None,
        reconnect_s: float = 1.0,
        max_reconnect_s: float = 30.0,
        request_timeout_s: float = 10.0,
    ) -> None:
        super().__init__()
        self.url = url
        self.session_token = session_token
        self._http = http
        self._owns_http = http is None
        self._reconnect_s = reconnect_s
        self._max_reconnect_s = max_reconnect_s
        self._request_timeout_s = request_timeout_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._frame_ids = itertools.count(1)
        self._closing = False
        self.connected = asyncio.Event()

    async def connect(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        await self._open()

    async def _open(self) -> None:
        if self._http is None:
            raise TransportError("network_error", "realtime client is closed")
        try:
            ws = await self._http.ws_connect(self.url)
            await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"session_token": self.session_token}})
            ready = await ws.receive_json(timeout=self._request_timeout_s)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as exc:
            raise TransportError("network_error", f"realtime connect failed: {exc}") from exc
        if ready.get("t") != "session.ready":
            await ws.close()
            body = ready.get("body") or {}
            raise TransportError(str(body.get("code") or "unauthorized"), str(body.get("message") or "handshake failed"))
        self._ws = ws
        self._reader_task = asyncio.create_task(self._reader(ws))
        self.connected.set()
        try:
            for subscription in list(self._subscriptions.values()):
                await self._attach(subscription)
        except TransportError:
            await self._discard_socket(ws)
            raise

    async def _discard_socket(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Drop a socket whose subscriptions could not be replayed.

        The reader is cancelled first so the close does not schedule another
        reconnect loop next to the one already retrying.
        """

        reader, self._reader_task = self._reader_task, None
        if self._ws is ws:
            self._ws = None
        self.connected.clear()
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await ws.close()

    async def _request(self, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("network_error", "realtime connection is not open")
        frame_id = f"f{next(self._frame_ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[frame_id] = future
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": frame_id, "body": body})
            reply = await asyncio.wait_for(future, timeout=self._request_timeout_s)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            raise TransportError("network_error", str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError("timeout", f"{frame_type} timed out") from exc
        finally:
            self._pending.pop(frame_id, None)
        if reply.get("t") == "error":
            error = reply.get("body") or {}
            raise TransportError(str(error.get("code") or "error"), str(error.get("message") or ""))
        return reply.get("body") or {}

    async def _attach(self, subscription: ChannelSubscription) -> None:
        if self._ws is None or self._ws.closed:
            # replayed by _open once the socket is back
            return
        if subscription.kind == KIND_CHANGES:
            await self._request(
                "changes.subscribe",
                {
                    "sub_id": subscription.sub_id,
                    "table": subscription.table,
                    "filter": {"column": subscription.column, "value": subscription.value},
                },
            )
        else:
            await self._request(
                "broadcast.subscribe", {"sub_id": subscription.sub_id, "channel": subscription.channel}
            )

    async def _detach(self, subscription: ChannelSubscription) -> None:
        if self._ws is None or self._ws.closed:
            return
        try:
            await self._request("unsubscribe", {"sub_id": subscription.sub_id})
        except TransportError as exc:
            logger.warning("unsubscribe %s failed: %s", subscription.sub_id, exc)

    async def send_broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await self._request("broadcast.send", {"channel": channel, "event": event, "payload": payload})

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed realtime frame")
                        continue
                    await self._dispatch(ws, frame)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            return
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportError("network_error", "realtime connection lost"))
        if self._closing or self._ws is not ws:
            return
        self.connected.clear()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.warning("realtime connection lost, reconnecting")
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            return
        if frame_type in ("change", "broadcast"):
            subscription = self._subscriptions.get(str(body.get("sub_id")))
            if subscription is None:
                return
            if frame_type == "change":
                subscription.push(_change_from_body(body))
            else:
                subscription.push(
                    BroadcastEvent(
                        channel=str(body.get("channel")),
                        event=str(body.get("event")),
                        payload=dict(body.get("payload") or {}),
                    )
                )
            return
        future = self._pending.get(str(frame.get("id")))
        if future is not None and not future.done():
            future.set_result(frame)
        elif frame_type == "error":
            logger.warning("realtime error frame: %s", body)

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect_s
        while not self._closing:
            await asyncio.sleep(delay)
            try:
                await self._open()
            except TransportError as exc:
                logger.warning("realtime reconnect failed: %s", exc)
                delay = min(delay * 2, self._max_reconnect_s)
                continue
            logger.info("realtime connection re-established")
            await self._notify_reconnected()
            return

    async def close(self) -> None:
        await super().close()
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None
        self._ws = None

    async def drop_connection(self) -> None:
        """Close the socket without closing the client; the reconnect loop takes over."""

        if self._ws is not None:
            await self._ws.close()


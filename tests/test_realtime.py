import asyncio
import unittest
from unittest import mock

from aiohttp.test_utils import TestClient, TestServer

from campuscash.api import RealtimeConnection, create_app
from campuscash.backend import HttpBackend
from campuscash.config import MessagingConfig
from campuscash.errors import TransportError
from campuscash.hub import SIGNAL_EVENT, broadcast_topic, call_channel, table_topic
from campuscash.realtime import WebSocketRealtimeClient
from campuscash.screen import MessagesScreen
from campuscash.service import MESSAGES_TABLE


async def _wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class WebSocketRealtimeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(config=MessagingConfig(ping_interval_s=0))
        self.hub = self.app["runtime"].hub
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.base_url = str(self.server.make_url(""))
        self.ws_url = str(self.server.make_url("/v1/realtime"))
        self.ada = await self._backend("ada")
        self.bob = await self._backend("bob")
        self._closers = []

    async def asyncTearDown(self):
        for closer in reversed(self._closers):
            await closer()
        await self.client.close()
        await self.server.close()

    async def _backend(self, user_id):
        backend = HttpBackend(self.base_url, user_id, http=self.client.session)
        await backend.start_session(username=user_id, full_name=user_id.title())
        return backend

    async def _realtime(self, backend):
        realtime = WebSocketRealtimeClient(
            self.ws_url, backend.session_token, http=self.client.session, reconnect_s=0.01, max_reconnect_s=0.05
        )
        self._closers.append(realtime.close)
        await realtime.connect()
        return realtime

    async def test_change_events_follow_the_row_filter(self):
        realtime = await self._realtime(self.ada)
        received = []

        async def on_change(event):
            received.append(event)

        await realtime.subscribe_changes(MESSAGES_TABLE, "receiver_id", "ada", on_change)
        await self.bob.insert_message(
            receiver_id="ada", content="hi", is_request=True, request_status="pending", client_id="tmp_1"
        )
        await self.bob.insert_message(
            receiver_id="cy", content="elsewhere", is_request=True, request_status="pending", client_id=None
        )

        await _wait_until(lambda: len(received) == 1)
        event = received[0]
        self.assertEqual(event.type, "INSERT")
        self.assertEqual(event.new.content, "hi")
        self.assertEqual(event.new.client_id, "tmp_1")
        self.assertEqual(event.new.sender.full_name, "Bob")

        await self.ada.mark_read(event.new.id)
        await _wait_until(lambda: len(received) == 2)
        self.assertEqual(received[1].type, "UPDATE")
        self.assertFalse(received[1].old.is_read)
        self.assertTrue(received[1].new.is_read)

    async def test_filters_must_pin_the_subscriber(self):
        realtime = await self._realtime(self.ada)

        async def ignore(_):
            return None

        with self.assertRaises(TransportError) as ctx:
            await realtime.subscribe_changes(MESSAGES_TABLE, "receiver_id", "bob", ignore)
        self.assertEqual(ctx.exception.code, "forbidden")

        with self.assertRaises(TransportError) as ctx:
            await realtime.subscribe_changes("profiles", "receiver_id", "ada", ignore)
        self.assertEqual(ctx.exception.code, "invalid_request")

        with self.assertRaises(TransportError) as ctx:
            await realtime.subscribe_broadcast(call_channel("bob"), ignore)
        self.assertEqual(ctx.exception.code, "forbidden")

        self.assertEqual(realtime.subscriptions, [])

    async def test_call_broadcasts_are_stamped_with_the_sender(self):
        ada_rt = await self._realtime(self.ada)
        bob_rt = await self._realtime(self.bob)
        received = []

        async def on_signal(event):
            received.append(event)

        await bob_rt.subscribe_broadcast(call_channel("bob"), on_signal)
        await ada_rt.send_broadcast(call_channel("bob"), SIGNAL_EVENT, {"type": "invite", "from": "mallory"})

        await _wait_until(lambda: received)
        self.assertEqual(received[0].event, SIGNAL_EVENT)
        self.assertEqual(received[0].payload, {"type": "invite", "from": "ada"})

    async def test_call_invites_across_a_block_are_refused(self):
        ada_rt = await self._realtime(self.ada)
        bob_rt = await self._realtime(self.bob)
        received = []

        async def on_signal(event):
            received.append(event)

        await bob_rt.subscribe_broadcast(call_channel("bob"), on_signal)
        await ada_rt.subscribe_broadcast(call_channel("ada"), on_signal)

        await self.bob.block("ada")
        with self.assertRaises(TransportError) as ctx:
            await ada_rt.send_broadcast(call_channel("bob"), SIGNAL_EVENT, {"type": "invite", "call_id": "c1"})
        self.assertEqual(ctx.exception.code, "forbidden")

        with self.assertRaises(TransportError) as ctx:
            await bob_rt.send_broadcast(call_channel("ada"), SIGNAL_EVENT, {"type": "invite", "call_id": "c2"})
        self.assertEqual(ctx.exception.code, "forbidden")

        await bob_rt.send_broadcast(call_channel("ada"), SIGNAL_EVENT, {"type": "hangup", "call_id": "c0"})
        await _wait_until(lambda: received)
        self.assertEqual([event.payload["type"] for event in received], ["hangup"])

        await self.bob.unblock("ada")
        await ada_rt.send_broadcast(call_channel("bob"), SIGNAL_EVENT, {"type": "invite", "call_id": "c3"})
        await _wait_until(lambda: len(received) == 2)
        self.assertEqual(received[1].payload["call_id"], "c3")

    async def test_unsubscribe_releases_the_hub_subscription(self):
        realtime = await self._realtime(self.ada)

        async def ignore(_):
            return None

        subscription = await realtime.subscribe_changes(MESSAGES_TABLE, "sender_id", "ada", ignore)
        self.assertEqual(self.hub.subscriber_count(table_topic(MESSAGES_TABLE)), 1)

        await realtime.unsubscribe(subscription)

        self.assertEqual(self.hub.subscriber_count(table_topic(MESSAGES_TABLE)), 0)
        self.assertFalse(subscription.active)

    async def test_subscriptions_survive_a_dropped_connection(self):
        realtime = await self._realtime(self.ada)
        received = []
        reconnects = []

        async def on_change(event):
            received.append(event)

        async def on_reconnect():
            reconnects.append(True)

        realtime.add_reconnect_listener(on_reconnect)
        await realtime.subscribe_changes(MESSAGES_TABLE, "receiver_id", "ada", on_change)

        await realtime.drop_connection()
        await _wait_until(lambda: reconnects)
        await self.bob.insert_message(
            receiver_id="ada", content="after", is_request=True, request_status="pending", client_id=None
        )

        await _wait_until(lambda: received)
        self.assertEqual(received[0].new.content, "after")
        self.assertEqual(self.hub.subscriber_count(table_topic(MESSAGES_TABLE)), 1)

    async def test_failed_replay_does_not_leave_a_second_socket(self):
        realtime = await self._realtime(self.ada)
        received = []
        reconnects = []

        async def on_change(event):
            received.append(event)

        async def on_signal(_):
            return None

        async def on_reconnect():
            reconnects.append(True)

        realtime.add_reconnect_listener(on_reconnect)
        await realtime.subscribe_changes(MESSAGES_TABLE, "receiver_id", "ada", on_change)
        await realtime.subscribe_broadcast(call_channel("ada"), on_signal)

        subscribe_broadcast = RealtimeConnection._on_subscribe_broadcast
        refusals = ["unavailable"]

        async def refuse_once(connection, request_id, body):
            if refusals:
                code = refusals.pop()
                return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": "try again"}}
            return await subscribe_broadcast(connection, request_id, body)

        with mock.patch.object(RealtimeConnection, "_on_subscribe_broadcast", refuse_once):
            await realtime.drop_connection()
            await _wait_until(lambda: reconnects)

        self.assertEqual(refusals, [])
        await _wait_until(lambda: self.hub.subscriber_count(table_topic(MESSAGES_TABLE)) == 1)
        self.assertEqual(self.hub.subscriber_count(broadcast_topic(call_channel("ada"))), 1)

        await self.bob.insert_message(
            receiver_id="ada", content="once", is_request=True, request_status="pending", client_id=None
        )
        await _wait_until(lambda: received)
        await asyncio.sleep(0.1)

        self.assertEqual([event.new.content for event in received], ["once"])
        self.assertEqual(reconnects, [True])

    async def test_bad_session_token_fails_the_handshake(self):
        realtime = WebSocketRealtimeClient(self.ws_url, "st_forged", http=self.client.session)
        self._closers.append(realtime.close)

        with self.assertRaises(TransportError) as ctx:
            await realtime.connect()

        self.assertEqual(ctx.exception.code, "unauthorized")

    async def test_screens_over_the_wire(self):
        ada_rt = await self._realtime(self.ada)
        bob_rt = await self._realtime(self.bob)
        ada = MessagesScreen("ada", self.ada, ada_rt)
        bob = MessagesScreen("bob", self.bob, bob_rt)
        await ada.mount()
        await bob.mount()
        self._closers.append(ada.unmount)
        self._closers.append(bob.unmount)

        await bob.select_user("ada")
        sent = await bob.send_message("hello over the wire")

        await _wait_until(lambda: ada.requests_count == 1)
        self.assertEqual(ada.requests[0].sender.full_name, "Bob")
        self.assertTrue(sent.is_request)

        await ada.accept_request("bob")
        await _wait_until(lambda: bob.messages[sent.id].request_status == "accepted")
        self.assertTrue(bob.composer.enabled)


if __name__ == "__main__":
    unittest.main()

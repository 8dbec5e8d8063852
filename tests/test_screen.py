import asyncio
import unittest

from campuscash.backend import LocalBackend
from campuscash.calls import PHASE_CONNECTED, PHASE_ENDED, PHASE_IDLE, PHASE_RINGING
from campuscash.config import MessagingConfig
from campuscash.gate import LIMIT_TITLE, limit_description
from campuscash.hub import ChangeEvent, RealtimeHub, broadcast_topic, call_channel, table_topic
from campuscash.realtime import LocalRealtimeClient
from campuscash.screen import TAB_CHATS, TAB_USERS, MessagesScreen, Notification
from campuscash.service import MESSAGES_TABLE, DataService
from tests.fakes import ControlledBackend, PeerRecorder, RecordingRingtone, seed_profiles, settle


class ScreenTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.hub = RealtimeHub()
        self.service = DataService.in_memory(self.hub)
        seed_profiles(self.service, "ada", "bob", "cy")
        self.screens = []

    async def _screen(self, user_id, *, peers=None, mount=True, notify=None):
        backend = ControlledBackend(self.service, user_id)
        realtime = LocalRealtimeClient(self.hub, user_id)
        screen = MessagesScreen(
            user_id,
            backend,
            realtime,
            peer_factory=peers or PeerRecorder(name=user_id),
            config=MessagingConfig(call_tick_interval_s=0.01),
            ringtone=RecordingRingtone(),
            notify=notify,
        )
        self.screens.append(screen)
        self.addAsyncCleanup(self._close, screen)
        if mount:
            await screen.mount()
        return screen

    async def _close(self, screen):
        await screen.unmount()
        await screen.realtime.close()

    async def _settle(self):
        await settle(*self.screens)

    async def _wait_for_call(self, backend, name):
        while name not in backend.calls:
            await asyncio.sleep(0)


class MessageRequestScreenTests(ScreenTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.ada = await self._screen("ada")
        self.bob = await self._screen("bob")
        await self.bob.select_user("ada")

    async def _bob_sends(self, *contents):
        sent = []
        for content in contents:
            sent.append(await self.bob.send_message(content))
        await self._settle()
        return sent

    async def test_requests_show_up_for_the_receiver(self):
        sent = await self._bob_sends("hello", "again")

        self.assertTrue(all(message.is_request for message in sent))
        self.assertEqual(self.ada.requests_count, 2)
        self.assertEqual(self.ada.requests[0].sender.id, "bob")
        self.assertEqual([m.content for m in self.ada.requests[0].messages], ["again", "hello"])
        self.assertEqual(self.ada.conversations, [])
        self.assertEqual([c.counterparty.id for c in self.bob.conversations], ["ada"])

    async def test_fourth_message_hits_the_limit(self):
        await self._bob_sends("1", "2", "3")

        self.assertEqual(self.bob.composer.reason, "limit")
        self.assertIsNone(await self.bob.send_message("4"))

        self.assertEqual(
            self.bob.notifications[-1],
            Notification(LIMIT_TITLE, limit_description(3), "destructive"),
        )
        self.assertEqual(self.bob.backend.calls.count("insert_message"), 3)

    async def test_accepting_opens_the_thread(self):
        await self._bob_sends("1", "2", "3")

        self.assertTrue(await self.ada.accept_request("bob"))
        await self._settle()

        self.assertEqual(self.ada.notifications[-1], Notification("Success", "Message request accepted"))
        self.assertEqual(self.ada.requests, [])
        self.assertEqual(self.ada.conversations[0].counterparty.id, "bob")
        self.assertEqual(self.ada.conversations[0].unread_count, 3)
        self.assertTrue(self.bob.composer.enabled)

        fourth = await self.bob.send_message("4")
        self.assertFalse(fourth.is_request)

    async def test_declined_requests_keep_the_limit(self):
        await self._bob_sends("1", "2", "3")

        self.assertTrue(await self.ada.decline_request("bob"))
        await self._settle()

        self.assertEqual(self.ada.notifications[-1], Notification("Success", "Message request declined"))
        self.assertEqual(self.ada.requests_count, 0)
        self.assertEqual(self.bob.composer.reason, "limit")

    async def test_failed_decline_keeps_the_request(self):
        await self._bob_sends("1")
        self.ada.backend.failures.add("update_request_status")

        self.assertFalse(await self.ada.decline_request("bob"))

        self.assertEqual(
            self.ada.notifications[-1], Notification("Error", "Failed to decline request", "destructive")
        )
        self.assertEqual(self.ada.requests_count, 1)

    async def test_following_the_sender_accepts_pending_requests(self):
        await self._bob_sends("1", "2")

        self.assertTrue(await self.ada.follow("bob"))

        self.assertEqual(self.ada.notifications[-1], Notification("Success", "User followed successfully"))
        self.assertEqual(self.ada.requests, [])
        statuses = {m.request_status for m in self.service.list_messages_for("ada", "ada")}
        self.assertEqual(statuses, {"accepted"})
        self.assertIn("bob", self.ada.following)

    async def test_unfollow(self):
        await self.bob.follow("ada")
        self.assertTrue(self.bob.is_following)

        self.assertTrue(await self.bob.unfollow("ada"))

        self.assertFalse(self.bob.is_following)
        self.assertFalse(self.bob.relationship.following)
        self.assertEqual(self.bob.notifications[-1], Notification("Success", "User unfollowed successfully"))

    async def test_failed_follow(self):
        self.ada.backend.failures.add("follow")

        self.assertFalse(await self.ada.follow("bob"))

        self.assertEqual(self.ada.notifications[-1], Notification("Error", "Failed to follow user", "destructive"))

    async def test_opening_a_conversation_marks_it_read(self):
        await self._bob_sends("1", "2")
        await self.ada.accept_request("bob")

        await self.ada.select_user("bob")
        await self._settle()

        self.assertEqual(self.ada.conversations[0].unread_count, 0)
        self.assertTrue(all(m.is_read for m in self.service.list_messages_for("ada", "ada")))
        self.assertTrue(all(m.is_read for m in self.bob.transcript))

        live = (await self._bob_sends("3"))[0]
        await self._settle()

        self.assertTrue(self.ada.messages[live.id].is_read)
        self.assertTrue(self.service.messages.get(live.id).is_read)


class ConversationScreenTests(ScreenTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.service.follow("ada", "bob")
        self.service.follow("bob", "ada")

    async def test_navigating_away_cancels_the_stale_load(self):
        for content in ("one", "two"):
            self.service.insert_message("bob", sender_id="bob", receiver_id="ada", content=content)
        ada = await self._screen("ada")
        self.assertEqual(ada.conversations[0].unread_count, 2)

        release = ada.backend.hold("list_messages_between")
        task = asyncio.create_task(ada.select_user("bob"))
        await self._wait_for_call(ada.backend, "list_messages_between")
        await ada.select_user("cy")
        release.set()
        await task

        self.assertEqual(ada.selected_user.id, "cy")
        self.assertFalse(ada.loading_messages)
        self.assertNotIn("mark_read", ada.backend.calls)
        self.assertFalse(any(m.is_read for m in self.service.list_messages_for("ada", "ada")))

    async def test_optimistic_send_is_replaced_by_the_stored_row(self):
        bob = await self._screen("bob")
        await bob.select_user("ada")

        release = bob.backend.hold("insert_message")
        task = asyncio.create_task(bob.send_message("hi"))
        await self._wait_for_call(bob.backend, "insert_message")

        self.assertEqual(len(bob.transcript), 1)
        self.assertTrue(bob.transcript[0].id.startswith("tmp_"))

        release.set()
        sent = await task
        await self._settle()

        self.assertEqual([m.id for m in bob.transcript], [sent.id])
        self.assertEqual(bob.conversations[0].last_message.id, sent.id)

    async def test_failed_send_is_rolled_back(self):
        bob = await self._screen("bob")
        await bob.select_user("ada")
        bob.backend.failures.add("insert_message")

        self.assertIsNone(await bob.send_message("hi"))

        self.assertEqual(bob.transcript, [])
        self.assertEqual(bob.notifications[-1], Notification("Error", "Failed to send message", "destructive"))

    async def test_send_requires_selection_and_content(self):
        bob = await self._screen("bob")

        self.assertIsNone(await bob.send_message("hi"))
        self.assertEqual(bob.composer.reason, "no_selection")
        await bob.select_user("ada")
        self.assertIsNone(await bob.send_message("   "))
        self.assertNotIn("insert_message", bob.backend.calls)

    async def test_blocking_disables_the_composer(self):
        ada = await self._screen("ada")
        bob = await self._screen("bob")
        await ada.select_user("bob")

        self.assertTrue(await ada.block("bob"))
        self.assertEqual(ada.notifications[-1], Notification("Success", "User blocked"))
        self.assertEqual(ada.composer.reason, "blocked")
        self.assertIsNone(await ada.send_message("hi"))
        self.assertEqual(
            ada.notifications[-1], Notification("Message not sent", "You have blocked this user", "destructive")
        )

        await bob.select_user("ada")
        self.assertEqual(bob.composer.reason, "blocked_by")
        self.assertIsNone(await bob.start_call())
        self.assertEqual(bob.notifications[-1].title, "Call unavailable")

        self.assertTrue(await ada.unblock("bob"))
        self.assertTrue(ada.composer.enabled)

    async def test_reconnect_refetches_missed_rows(self):
        ada = await self._screen("ada")
        missed = self.service.messages.insert(sender_id="bob", receiver_id="ada", content="missed")
        self.assertEqual(ada.conversations, [])

        await ada.realtime.reconnect()

        self.assertEqual(ada.conversations[0].last_message.id, missed.id)
        self.assertEqual(self.hub.subscriber_count(table_topic(MESSAGES_TABLE)), 2)

    async def test_stale_events_do_not_regress_rows(self):
        ada = await self._screen("ada")
        stored = self.service.insert_message("bob", sender_id="bob", receiver_id="ada", content="hi")
        await self._settle()
        self.service.mark_read("ada", stored.id)
        await self._settle()

        self.hub.publish_change(ChangeEvent(table=MESSAGES_TABLE, type="INSERT", new=stored))
        await self._settle()

        self.assertTrue(ada.messages[stored.id].is_read)
        self.assertEqual(len(ada.conversations), 1)
        self.assertEqual(ada.conversations[0].unread_count, 0)

    async def test_refresh_failure_is_reported(self):
        notes = []
        ada = await self._screen("ada", notify=notes.append)
        ada.backend.failures.add("following_ids")

        await ada.refresh()

        expected = Notification("Error", "Could not load conversations", "destructive")
        self.assertEqual(ada.notifications[-1], expected)
        self.assertEqual(notes[-1], expected)

    async def test_search_and_tabs(self):
        ada = await self._screen("ada")
        ada.set_tab(TAB_USERS)

        results = await ada.search_users("bo")

        self.assertEqual([p.id for p in results], ["bob"])
        self.assertTrue(results[0].is_following)

        await ada.select_user(results[0])
        self.assertEqual(ada.active_tab, TAB_CHATS)
        self.assertEqual(ada.search_results, [])
        self.assertEqual(ada.search_query, "")
        self.assertEqual(await ada.search_users("   "), [])
        with self.assertRaises(ValueError):
            ada.set_tab("settings")

    async def test_unmount_releases_subscriptions(self):
        ada = await self._screen("ada")
        bob = await self._screen("bob")

        await ada.unmount()
        await bob.unmount()

        self.assertEqual(self.hub.subscriber_count(table_topic(MESSAGES_TABLE)), 0)
        self.assertEqual(self.hub.subscriber_count(broadcast_topic(call_channel("ada"))), 0)

    async def test_screen_must_match_backend_user(self):
        with self.assertRaises(ValueError):
            MessagesScreen("ada", LocalBackend(self.service, "bob"), LocalRealtimeClient(self.hub, "ada"))


class CallScreenTests(ScreenTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.ada = await self._screen("ada")
        self.bob = await self._screen("bob")
        await self.ada.select_user("bob")
        await self.bob.select_user("ada")

    async def test_call_rings_connects_and_ends(self):
        call_id = await self.ada.start_call(with_video=True)
        await self._settle()

        self.assertEqual(self.bob.calls.phase, PHASE_RINGING)
        self.assertEqual(self.bob.calls.call_id, call_id)
        self.assertEqual(self.bob.calls.incoming.caller.full_name, "Ada")
        self.assertTrue(self.bob.calls.ringtone.playing)

        self.assertTrue(await self.bob.accept_call())
        await self._settle()

        self.assertEqual(self.ada.calls.phase, PHASE_CONNECTED)
        self.assertEqual(self.bob.calls.phase, PHASE_CONNECTED)
        self.assertEqual(self.bob.composer.reason, "in_call")

        self.ada.toggle_audio()
        self.assertTrue(self.ada.calls.is_muted)

        await self.ada.end_call()
        await self._settle()

        self.assertEqual(self.bob.calls.phase, PHASE_ENDED)
        self.assertEqual(self.bob.calls.end_reason, "hangup")
        self.assertTrue(self.bob.composer.enabled)

    async def test_declined_call_is_reported_to_the_caller(self):
        await self.ada.start_call()
        await self._settle()

        await self.bob.reject_call()
        await self._settle()

        self.assertEqual(self.ada.calls.end_reason, "rejected")
        self.assertEqual(self.ada.notifications[-1], Notification("Call Ended", "Call was declined"))

    async def test_busy_callee(self):
        cy = await self._screen("cy")
        await cy.select_user("bob")
        first = await self.ada.start_call()
        await self._settle()

        await cy.start_call()
        await self._settle()

        self.assertEqual(self.bob.calls.call_id, first)
        self.assertEqual(self.bob.calls.phase, PHASE_RINGING)
        self.assertEqual(self.bob.notifications[-1].title, "Missed call")
        self.assertEqual(cy.notifications[-1], Notification("Call Ended", "User is on another call"))

    async def test_media_failure_is_reported(self):
        cy = await self._screen("cy", peers=PeerRecorder(fail_media=True))
        await cy.select_user("bob")

        self.assertIsNone(await cy.start_call(with_video=True))

        self.assertEqual(
            cy.notifications[-1], Notification("Call Error", "Could not access camera/microphone", "destructive")
        )

    async def test_invite_from_a_blocked_user_is_refused(self):
        self.assertTrue(await self.bob.block("ada"))

        # ada's screen still holds the relationship loaded before the block
        call_id = await self.ada.calls.initiate("bob", False)
        await self._settle()

        self.assertIsNotNone(call_id)
        self.assertEqual(self.bob.calls.phase, PHASE_IDLE)
        self.assertEqual(self.bob.calls.ringtone.events, [])
        self.assertEqual(self.ada.calls.phase, PHASE_ENDED)
        self.assertEqual(self.ada.calls.remote_reason, "unavailable")
        self.assertEqual(
            self.ada.notifications[-1], Notification("Call unavailable", "You can't call this user", "destructive")
        )

    async def test_start_call_rechecks_the_relationship(self):
        self.assertFalse(self.ada.relationship.blocked_by)
        await self.bob.block("ada")

        self.assertIsNone(await self.ada.start_call())
        await self._settle()

        self.assertTrue(self.ada.relationship.blocked_by)
        self.assertEqual(self.ada.notifications[-1].title, "Call unavailable")
        self.assertEqual(self.ada.calls.phase, PHASE_IDLE)
        self.assertEqual(self.bob.calls.phase, PHASE_IDLE)

    async def test_unmount_hangs_up(self):
        await self.ada.start_call()
        await self._settle()
        await self.bob.accept_call()
        await self._settle()

        await self.ada.unmount()
        await self._settle()

        self.assertEqual(self.bob.calls.phase, PHASE_ENDED)
        self.assertEqual(self.bob.calls.end_reason, "hangup")


if __name__ == "__main__":
    unittest.main()

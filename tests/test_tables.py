import os
import sqlite3
import tempfile
import unittest

from campuscash.models import Profile
from campuscash.sqlite_backend import SQLiteBackend
from campuscash.tables import (
    InMemoryMessageTable,
    InMemoryProfileTable,
    InMemoryRelationshipTable,
    SQLiteMessageTable,
    SQLiteProfileTable,
    SQLiteRelationshipTable,
)


class _TableContract:
    """Behaviour shared by the in-memory and SQLite tables."""

    def make_tables(self):
        raise NotImplementedError

    def setUp(self):
        self.profiles, self.relationships, self.messages = self.make_tables()

    def test_profile_upsert_drops_viewer_flag(self):
        stored = self.profiles.upsert(Profile(id="u1", username="ada", is_following=True))

        self.assertIsNone(stored.is_following)
        self.assertEqual(self.profiles.get("u1"), Profile(id="u1", username="ada"))
        self.assertIsNone(self.profiles.get("missing"))

    def test_profile_upsert_overwrites(self):
        self.profiles.upsert(Profile(id="u1", username="ada"))
        self.profiles.upsert(Profile(id="u1", username="ada", full_name="Ada Lovelace"))

        self.assertEqual(self.profiles.get("u1").full_name, "Ada Lovelace")

    def test_search_matches_username_or_full_name(self):
        self.profiles.upsert(Profile(id="u1", username="zed", full_name="Ada Zed"))
        self.profiles.upsert(Profile(id="u2", username="adam"))
        self.profiles.upsert(Profile(id="u3", username="bob"))
        self.profiles.upsert(Profile(id="me", username="adamant"))

        found = self.profiles.search("  ADA ", exclude_id="me")

        self.assertEqual([profile.id for profile in found], ["u2", "u1"])
        self.assertEqual(self.profiles.search("   "), [])

    def test_follow_edges_are_directed(self):
        self.assertTrue(self.relationships.follow("a", "b"))
        self.assertFalse(self.relationships.follow("a", "b"))

        self.assertTrue(self.relationships.is_following("a", "b"))
        self.assertFalse(self.relationships.is_following("b", "a"))
        self.assertEqual(self.relationships.following_ids("a"), {"b"})

        self.assertTrue(self.relationships.unfollow("a", "b"))
        self.assertFalse(self.relationships.unfollow("a", "b"))
        self.assertEqual(self.relationships.following_ids("a"), set())

    def test_block_edges(self):
        self.assertTrue(self.relationships.block("a", "b"))
        self.assertTrue(self.relationships.is_blocked("a", "b"))
        self.assertFalse(self.relationships.is_blocked("b", "a"))
        self.assertTrue(self.relationships.unblock("a", "b"))
        self.assertFalse(self.relationships.is_blocked("a", "b"))

    def test_insert_assigns_ids_and_increasing_timestamps(self):
        first = self.messages.insert(sender_id="a", receiver_id="b", content="one")
        second = self.messages.insert(sender_id="b", receiver_id="a", content="two", client_id="tmp_1")

        self.assertTrue(first.id.startswith("msg_"))
        self.assertNotEqual(first.id, second.id)
        self.assertLess(first.sort_key, second.sort_key)
        self.assertFalse(first.is_read)
        self.assertEqual(second.client_id, "tmp_1")
        self.assertEqual(self.messages.get(first.id), first)

    def test_list_between_and_for_user(self):
        first = self.messages.insert(sender_id="a", receiver_id="b", content="one")
        other = self.messages.insert(sender_id="a", receiver_id="c", content="two")
        reply = self.messages.insert(sender_id="b", receiver_id="a", content="three")

        self.assertEqual([m.id for m in self.messages.list_between("b", "a")], [first.id, reply.id])
        self.assertEqual([m.id for m in self.messages.list_for_user("a")], [reply.id, other.id, first.id])
        self.assertEqual([m.id for m in self.messages.list_for_user("c")], [other.id])

    def test_mark_read_reports_change_once(self):
        stored = self.messages.insert(sender_id="a", receiver_id="b", content="one")

        old, new = self.messages.mark_read(stored.id)

        self.assertFalse(old.is_read)
        self.assertTrue(new.is_read)
        self.assertTrue(self.messages.get(stored.id).is_read)
        self.assertIsNone(self.messages.mark_read(stored.id))
        self.assertIsNone(self.messages.mark_read("msg_missing"))

    def test_update_request_status_only_touches_pending_rows(self):
        pending = self.messages.insert(
            sender_id="a", receiver_id="b", content="hi", is_request=True, request_status="pending"
        )
        declined = self.messages.insert(
            sender_id="a", receiver_id="b", content="hi", is_request=True, request_status="declined"
        )
        self.messages.insert(sender_id="c", receiver_id="b", content="hi", is_request=True, request_status="pending")

        changes = self.messages.update_request_status("a", "b", "accepted")

        self.assertEqual([(old.id, new.request_status) for old, new in changes], [(pending.id, "accepted")])
        self.assertEqual(self.messages.get(declined.id).request_status, "declined")
        self.assertEqual(self.messages.update_request_status("a", "b", "accepted"), [])

    def test_request_counters(self):
        self.messages.insert(sender_id="a", receiver_id="b", content="1", is_request=True, request_status="pending")
        self.messages.insert(sender_id="a", receiver_id="b", content="2", is_request=True, request_status="declined")
        self.messages.insert(sender_id="a", receiver_id="b", content="3")

        self.assertEqual(self.messages.count_outbound_requests("a", "b"), 2)
        self.assertEqual(self.messages.count_outbound_requests("b", "a"), 0)
        self.assertFalse(self.messages.has_accepted("a", "b"))
        self.assertTrue(self.messages.has_any("a", "b"))
        self.assertFalse(self.messages.has_any("b", "a"))

        self.messages.insert(sender_id="a", receiver_id="b", content="4", is_request=True, request_status="pending")
        self.messages.update_request_status("a", "b", "accepted")
        self.assertTrue(self.messages.has_accepted("a", "b"))

    def test_unknown_request_status_is_stored_as_none(self):
        stored = self.messages.insert(sender_id="a", receiver_id="b", content="x", request_status="maybe")

        self.assertIsNone(stored.request_status)
        self.assertIsNone(self.messages.get(stored.id).request_status)


class InMemoryTableTests(_TableContract, unittest.TestCase):
    def make_tables(self):
        return InMemoryProfileTable(), InMemoryRelationshipTable(), InMemoryMessageTable()


class SQLiteTableTests(_TableContract, unittest.TestCase):
    def make_tables(self):
        self.backend = SQLiteBackend(":memory:")
        self.addCleanup(self.backend.close)
        return (
            SQLiteProfileTable(self.backend),
            SQLiteRelationshipTable(self.backend),
            SQLiteMessageTable(self.backend),
        )


class SQLiteBackendTests(unittest.TestCase):
    def test_schema_survives_reopen(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "nested", "messages.db")
            backend = SQLiteBackend(db_path)
            stored = SQLiteMessageTable(backend).insert(sender_id="a", receiver_id="b", content="kept")
            SQLiteProfileTable(backend).upsert(Profile(id="a", username="ada"))
            backend.close()

            reopened = SQLiteBackend(db_path)
            try:
                self.assertEqual(SQLiteMessageTable(reopened).get(stored.id), stored)
                self.assertEqual(SQLiteProfileTable(reopened).get("a").username, "ada")
                version = reopened.connection.execute("PRAGMA user_version").fetchone()[0]
                self.assertEqual(version, 1)
            finally:
                reopened.close()

    def test_close_releases_connection(self):
        backend = SQLiteBackend(":memory:")
        connection = backend.connection
        backend.close()

        with self.assertRaises(sqlite3.ProgrammingError):
            connection.execute("SELECT 1")


if __name__ == "__main__":
    unittest.main()

import logging
import unittest
from datetime import datetime

from support import FakeRemote, TempCache, issue_payload, stamp

logging.disable(logging.CRITICAL)


class LocalStoreTests(unittest.TestCase):
    def setUp(self):
        from tracksync.models.base import create_db_engine
        from tracksync.services.local_store import LocalStore

        self.cache = TempCache()
        self.store = LocalStore(create_db_engine(self.cache.database_url))
        self.store.init()
        lookups = FakeRemote().fetch_lookups()
        with self.store.write() as session:
            for kind, rows in lookups.items():
                self.store.replace_lookups(session, kind, rows)

    def tearDown(self):
        self.store.engine.dispose()
        self.cache.cleanup()

    def upsert(self, *payloads, kind="issue"):
        with self.store.write() as session:
            return self.store.upsert_from_remote(session, kind, payloads)

    def seed(self):
        self.upsert(
            issue_payload(1, stamp(10), status_id=1, priority_id=2, subject="Login fails", assigned_to_id=7),
            issue_payload(2, stamp(11), status_id=2, priority_id=3, subject="Slow search"),
            issue_payload(3, stamp(12), status_id=5, priority_id=1, subject="Old crash", project_id=2),
            issue_payload(4, stamp(13), status_id=4, priority_id=2, subject="Search needs filters", assigned_to_id=7),
        )

    def test_upsert_reports_only_changed_rows(self):
        first = self.upsert(issue_payload(1, stamp(10)), issue_payload(2, stamp(10)))
        again = self.upsert(issue_payload(1, stamp(10)), issue_payload(2, stamp(11), subject="Renamed"))

        self.assertEqual(first, [1, 2])
        self.assertEqual(again, [2])

    def test_out_of_order_remote_copy_is_discarded(self):
        self.upsert(issue_payload(1, stamp(20), subject="Newer"))

        changed = self.upsert(issue_payload(1, stamp(5), subject="Older"))

        self.assertEqual(changed, [])
        self.assertEqual(self.store.get_issue(1)["subject"], "Newer")

    def test_upsert_keeps_server_values_for_overlay(self):
        self.upsert(issue_payload(1, stamp(10), status_id=1))

        with self.store.write() as session:
            self.store.mark_dirty(session, 1, {"status_id": 2, "notes": "working on it"})

        issue = self.store.get_issue(1)
        self.assertEqual(issue["status_name"], "In Progress")
        self.assertTrue(issue["dirty"])

        with self.store.write() as session:
            self.store.restore_issue(session, 1)

        issue = self.store.get_issue(1)
        self.assertEqual(issue["status_name"], "New")
        self.assertFalse(issue["dirty"])

    def test_pull_of_unchanged_issue_keeps_optimistic_value(self):
        self.upsert(issue_payload(1, stamp(10), subject="Server"))
        with self.store.write() as session:
            self.store.mark_dirty(session, 1, {"subject": "Local"})

        changed = self.upsert(issue_payload(1, stamp(10), subject="Server"))

        self.assertEqual(changed, [])
        self.assertEqual(self.store.get_issue(1)["subject"], "Local")

    def test_confirmed_create_replaces_temporary_row(self):
        with self.store.write() as session:
            self.store.insert_local_issue(session, -3, {"project_id": 1, "subject": "Draft", "priority_id": 3})

        local = self.store.get_issue(-3)
        self.assertEqual(local["priority_name"], "High")
        self.assertTrue(local["dirty"])

        with self.store.write() as session:
            confirmed = self.store.apply_confirmed_mutation(
                session, issue_payload(55, stamp(30), subject="Draft", priority_id=3), temp_id=-3
            )

        self.assertEqual(confirmed["id"], 55)
        self.assertIsNone(self.store.get_issue(-3))
        self.assertFalse(self.store.get_issue(55)["dirty"])

    def test_confirmed_copy_older_than_cache_only_clears_overlay(self):
        self.upsert(issue_payload(1, stamp(40), subject="Pulled later"))
        with self.store.write() as session:
            self.store.mark_dirty(session, 1, {"subject": "Pushed"})
            self.store.apply_confirmed_mutation(session, issue_payload(1, stamp(35), subject="Pushed"))

        issue = self.store.get_issue(1)
        self.assertEqual(issue["subject"], "Pulled later")
        self.assertFalse(issue["dirty"])

    def test_query_filters(self):
        from tracksync.services.local_store import IssueFilter

        self.seed()

        self.assertEqual([i["id"] for i in self.store.query(IssueFilter(project_id=2))], [3])
        self.assertEqual(sorted(i["id"] for i in self.store.query(IssueFilter(assigned_to_id=7))), [1, 4])
        self.assertEqual([i["id"] for i in self.store.query(IssueFilter(status_name="Feedback"))], [4])
        self.assertEqual(sorted(i["id"] for i in self.store.query(IssueFilter(search="search"))), [2, 4])

    def test_query_sort_orders(self):
        self.seed()

        self.assertEqual([i["id"] for i in self.store.query()], [4, 3, 2, 1])
        self.assertEqual([i["id"] for i in self.store.query(sort="status_asc")], [2, 4, 1, 3])
        self.assertEqual([i["id"] for i in self.store.query(sort="priority_desc")], [2, 4, 1, 3])

        with self.assertRaises(ValueError):
            self.store.query(sort="random")

    def test_query_groups_by_status_in_workflow_order(self):
        self.seed()

        groups = self.store.query(group_by="status")

        self.assertEqual(list(groups.keys()), ["In Progress", "Feedback", "New", "Closed"])
        by_assignee = self.store.query(group_by="assignee")
        self.assertEqual([i["id"] for i in by_assignee["Alice Smith"]], [4, 1])
        self.assertEqual([i["id"] for i in by_assignee[""]], [3, 2])

    def test_cursor_only_moves_forward(self):
        early = datetime(2026, 1, 1, 10, 0)
        late = datetime(2026, 1, 1, 12, 0)

        with self.store.write() as session:
            self.assertTrue(self.store.advance_cursor(session, "issues", late))
            self.assertFalse(self.store.advance_cursor(session, "issues", early))
            self.assertFalse(self.store.advance_cursor(session, "issues", None))

        self.assertEqual(self.store.get_cursor("issues"), late)
        self.assertIsNotNone(self.store.list_cursors()["issues"]["last_pulled_at"])

    def test_new_cursor_is_visible_within_the_same_write(self):
        late = datetime(2026, 1, 1, 12, 0)

        with self.store.write() as session:
            self.store.advance_cursor(session, "issues", late)
            self.assertEqual(self.store.get_cursor("issues"), late)
            self.assertFalse(self.store.advance_cursor(session, "issues", datetime(2026, 1, 1, 11, 0)))

        self.assertEqual(self.store.get_cursor("issues"), late)

    def test_write_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.store.write() as session:
                self.store.upsert_from_remote(session, "issue", [issue_payload(9, stamp(1))])
                raise RuntimeError("boom")

        self.assertIsNone(self.store.get_issue(9))

    def test_project_search_and_lookups(self):
        remote = FakeRemote()
        self.upsert(*remote.projects.values(), kind="project")

        self.assertEqual([p["identifier"] for p in self.store.query_projects("we")], ["web"])
        self.assertEqual(len(self.store.list_lookups("tracker")), 2)

    def test_journals_and_attachments_are_append_only(self):
        self.upsert(issue_payload(1, stamp(10)))
        journal = {"id": 5, "user": {"id": 7, "name": "Alice Smith"}, "notes": "first", "created_on": stamp(11)}
        with self.store.write() as session:
            self.assertEqual(self.store.upsert_from_remote(session, "journal", [journal], issue_id=1), [5])
            edited = dict(journal, notes="rewritten")
            self.assertEqual(self.store.upsert_from_remote(session, "journal", [edited], issue_id=1), [])

        self.assertEqual([j["notes"] for j in self.store.journals_for(1)], ["first"])
        self.assertEqual(self.store.attachments_for(1), [])

    def test_rebuild_keeps_queue_and_drops_cached_entities(self):
        from tracksync.models.pending_mutation import MutationOperation, MutationStatus
        from tracksync.services.change_queue import ChangeQueue

        self.seed()
        queue = ChangeQueue(self.store)
        update = queue.enqueue("issue", 1, MutationOperation.UPDATE, {"subject": "Kept"})
        in_flight = queue.enqueue("issue", 2, MutationOperation.UPDATE, {"subject": "Interrupted"})
        create = queue.enqueue("issue", -7, MutationOperation.CREATE, {"project_id": 1, "subject": "Local only"})
        failed = queue.enqueue("issue", 3, MutationOperation.UPDATE, {"subject": "Rejected"})
        queue.mark_in_flight(in_flight.id)
        queue.mark_in_flight(create.id)
        queue.mark_in_flight(failed.id)
        queue.mark_result(failed.id, "failure", "rejected")
        with self.store.write() as session:
            self.store.advance_cursor(session, "issues", datetime(2026, 1, 1, 12, 0))

        stats = self.store.rebuild_cache()

        self.assertEqual(stats, {"mutations_kept": 3, "conflicts_kept": 0})
        self.assertIsNone(self.store.get_cursor("issues"))
        self.assertIsNone(self.store.get_issue(1))
        self.assertEqual(queue.get(update.id).status, MutationStatus.PENDING)
        self.assertEqual(queue.get(in_flight.id).status, MutationStatus.PENDING)
        self.assertEqual(queue.get(create.id).status, MutationStatus.FAILED)
        self.assertIsNone(queue.get(failed.id))
        self.assertEqual(self.store.get_issue(-7)["subject"], "Local only")

    def test_corruption_is_flagged_on_storage_errors(self):
        from sqlalchemy.exc import OperationalError

        from tracksync.services.local_store import _storage_error

        corrupted = _storage_error(OperationalError("SELECT 1", {}, Exception("database disk image is malformed")), "read")
        busy = _storage_error(OperationalError("SELECT 1", {}, Exception("database is locked")), "write")

        self.assertTrue(corrupted.corrupted)
        self.assertFalse(busy.corrupted)


if __name__ == "__main__":
    unittest.main()

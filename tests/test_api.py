import logging
import unittest

from fastapi.testclient import TestClient

from support import FakeRemote, TempCache, make_context

logging.disable(logging.CRITICAL)


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        from tracksync.main import create_app

        self.cache = TempCache()
        self.remote = FakeRemote()
        self.remote.add_issue(1, subject="Login fails", status_id=1)
        self.remote.add_issue(2, subject="Slow search", status_id=2)
        self.remote.add_issue(3, subject="Typo", project_id=2)
        self.context = make_context(self.cache, self.remote)
        self.client = TestClient(create_app(self.context, start_scheduler=False))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.cache.cleanup()

    def sync(self, collections=None):
        body = {"wait": True}
        if collections is not None:
            body["collections"] = collections
        response = self.client.post("/api/sync/trigger", json=body)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class SyncApiTests(ApiTestCase):
    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_trigger_and_status(self):
        result = self.sync()

        self.assertEqual(result["status"], "success")
        self.assertEqual(result["stats"]["changed"], 5)
        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["state"], "idle")
        self.assertFalse(status["paused"])
        self.assertIn("issues", status["cursors"])
        self.assertIsNone(status["next_scheduled_run"])

    def test_trigger_without_body_starts_background_run(self):
        response = self.client.post("/api/sync/trigger")

        self.assertEqual(response.json(), {"status": "started"})

    def test_unknown_collection_is_rejected(self):
        response = self.client.post("/api/sync/trigger", json={"collections": ["wiki"]})

        self.assertEqual(response.status_code, 400)

    def test_sync_logs_are_listed_newest_first(self):
        self.sync()
        self.sync()

        logs = self.client.get("/api/sync/logs?limit=1").json()

        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["status"], "success")

    def test_auth_failure_pauses_until_resume(self):
        self.remote.fail_auth()

        self.assertEqual(self.sync()["status"], "paused")
        self.assertEqual(self.client.post("/api/sync/trigger", json={}).status_code, 409)
        self.assertTrue(self.client.get("/api/sync/status").json()["paused"])
        self.assertEqual(self.client.post("/api/issues/1/refresh").status_code, 409)

        self.remote.auth_failure = None
        self.assertEqual(self.client.post("/api/sync/resume").json(), {"resumed": True})
        self.assertEqual(self.client.post("/api/sync/resume").json(), {"resumed": False})

    def test_resume_with_rejected_credentials_is_unauthorized(self):
        self.remote.fail_auth()
        self.sync()

        response = self.client.post("/api/sync/resume")

        self.assertEqual(response.status_code, 401)
        self.assertTrue(self.client.get("/api/sync/status").json()["paused"])

    def test_cancel_without_run_reports_nothing_cancelled(self):
        self.assertEqual(self.client.post("/api/sync/cancel").json(), {"cancelled": False})


class MutationApiTests(ApiTestCase):
    def test_update_is_queued_shown_and_pushed(self):
        self.sync()

        response = self.client.post("/api/mutations/", json={"entity_id": 1, "delta": {"status_id": 2}})

        self.assertEqual(response.status_code, 200, response.text)
        mutation_id = response.json()["mutation_id"]
        self.assertEqual(response.json()["target_id"], 1)
        queued = self.client.get(f"/api/mutations/{mutation_id}").json()
        self.assertEqual(queued["status"], "pending")
        self.assertEqual(queued["operation"], "update")
        issue = self.client.get("/api/issues/1").json()
        self.assertTrue(issue["dirty"])
        self.assertEqual(issue["status_name"], "In Progress")

        self.sync([])

        self.assertEqual(self.client.get(f"/api/mutations/{mutation_id}").status_code, 404)
        self.assertFalse(self.client.get("/api/issues/1").json()["dirty"])

    def test_create_gets_temporary_negative_id(self):
        self.sync()

        response = self.client.post("/api/mutations/", json={"delta": {"project_id": 1, "subject": "From the API"}})

        target_id = response.json()["target_id"]
        self.assertLess(target_id, 0)
        self.assertEqual(self.client.get(f"/api/issues/{target_id}").json()["subject"], "From the API")

    def test_rejected_mutations(self):
        self.sync()

        unknown_issue = self.client.post("/api/mutations/", json={"entity_id": 999, "delta": {"subject": "x"}})
        bad_field = self.client.post("/api/mutations/", json={"entity_id": 1, "delta": {"colour": "red"}})
        read_only = self.client.post("/api/mutations/", json={"entity_kind": "project", "entity_id": 1, "delta": {"name": "x"}})

        self.assertEqual(unknown_issue.status_code, 404)
        self.assertEqual(bad_field.status_code, 422)
        self.assertEqual(read_only.status_code, 422)

    def test_cancel_and_acknowledge(self):
        self.sync()
        mutation_id = self.client.post("/api/mutations/", json={"entity_id": 2, "delta": {"subject": "x"}}).json()[
            "mutation_id"
        ]

        self.assertEqual(self.client.delete(f"/api/mutations/{mutation_id}").status_code, 409)
        self.assertEqual(self.client.post(f"/api/mutations/{mutation_id}/cancel").status_code, 200)
        self.assertEqual(self.client.post(f"/api/mutations/{mutation_id}/cancel").status_code, 404)
        self.assertEqual(self.client.get("/api/issues/2").json()["subject"], "Slow search")

    def test_list_mutations_by_status(self):
        self.sync()
        self.client.post("/api/mutations/", json={"entity_id": 1, "delta": {"done_ratio": 10}})
        self.client.post("/api/mutations/", json={"entity_id": 2, "delta": {"done_ratio": 20}})

        pending = self.client.get("/api/mutations/?status=pending").json()

        self.assertEqual([m["target_id"] for m in pending], [1, 2])
        self.assertEqual(self.client.get("/api/mutations/?status=failed").json(), [])

    def test_conflict_listed_and_resolved(self):
        self.sync()
        self.client.post("/api/mutations/", json={"entity_id": 1, "delta": {"status_id": 2}})
        self.remote.edit_issue(1, status_id=5)
        self.sync()

        conflicts = self.client.get("/api/sync/conflicts?resolved=false").json()
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["remote_changes"]["status_id"], {"base": 1, "remote": 5, "local": 2})

        response = self.client.post(
            f"/api/sync/conflicts/{conflicts[0]['id']}/resolve", json={"resolution_notes": "Keep closed"}
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertIsNone(response.json()["mutation_id"])
        self.assertEqual(self.client.get("/api/sync/conflicts?resolved=false").json(), [])
        again = self.client.post(f"/api/sync/conflicts/{conflicts[0]['id']}/resolve")
        self.assertEqual(again.status_code, 422)
        self.assertEqual(self.client.post("/api/sync/conflicts/999/resolve").status_code, 404)


class BulkApiTests(ApiTestCase):
    def test_bulk_edit_reports_per_issue_outcomes(self):
        self.sync()

        batch_id = self.client.post("/api/bulk/", json={"issue_ids": [1, 2, 404], "delta": {"priority_id": 3}}).json()[
            "batch_id"
        ]
        before = self.client.get(f"/api/bulk/{batch_id}").json()
        self.sync([])
        after = self.client.get(f"/api/bulk/{batch_id}?wait_seconds=5").json()

        self.assertFalse(before["done"])
        self.assertTrue(after["done"])
        self.assertEqual(sorted(after["succeeded"]), [1, 2])
        self.assertEqual(after["failed"], [{"issue_id": 404, "reason": "Resource not found."}])

    def test_unknown_batch(self):
        self.assertEqual(self.client.get("/api/bulk/nope").status_code, 404)


class ReadApiTests(ApiTestCase):
    def test_issue_queries(self):
        self.sync()

        grouped = self.client.get("/api/issues/?group_by=project").json()
        filtered = self.client.get("/api/issues/?project_id=1&sort=status_asc").json()

        self.assertEqual(grouped["count"], 3)
        self.assertEqual([g["key"] for g in grouped["groups"]], ["Core", "Web"])
        self.assertEqual([i["id"] for i in filtered["issues"]], [2, 1])
        self.assertEqual(self.client.get("/api/issues/?sort=random").status_code, 400)
        self.assertEqual(self.client.get("/api/issues/?group_by=colour").status_code, 400)
        self.assertEqual(self.client.get("/api/issues/999").status_code, 404)

    def test_projects_and_lookups(self):
        self.sync()

        projects = self.client.get("/api/projects/?name=core").json()
        statuses = self.client.get("/api/projects/lookups/issue_status").json()

        self.assertEqual([p["identifier"] for p in projects], ["core"])
        self.assertEqual(statuses[0]["name"], "New")

    def test_refresh_and_download_attachment(self):
        self.sync()
        self.remote.attachments[1] = [
            {
                "id": 31,
                "filename": "trace.log",
                "filesize": 11,
                "content_type": "text/plain",
                "content_url": "http://tracker.example/attachments/download/31/trace.log",
                "created_on": "2026-01-02T08:01:00Z",
            }
        ]

        issue = self.client.post("/api/issues/1/refresh").json()
        download = self.client.get("/api/attachments/31/content")

        self.assertEqual(issue["attachments"][0]["id"], 31)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, b"hello world")
        self.assertIn("trace.log", download.headers["content-disposition"])
        self.assertEqual(self.client.get("/api/attachments/32/content").status_code, 404)

    def test_upload(self):
        response = self.client.post("/api/attachments/uploads?filename=shot.png", content=b"\x89PNG")

        self.assertEqual(response.json(), {"token": "token-1", "filename": "shot.png"})
        self.assertEqual(self.remote.uploads, [("shot.png", b"\x89PNG")])

    def test_events_and_dashboard(self):
        self.sync()
        self.client.post("/api/mutations/", json={"entity_id": 1, "delta": {"done_ratio": 50}})

        events = self.client.get("/api/events/?since=0&limit=1000").json()
        stats = self.client.get("/api/dashboard/stats").json()

        kinds = [e["kind"] for e in events["events"]]
        self.assertIn("entities_changed", kinds)
        self.assertIn("mutation_enqueued", kinds)
        self.assertEqual(events["last_seq"], events["events"][-1]["seq"])
        self.assertEqual(stats["total_issues"], 3)
        self.assertEqual(stats["dirty_issues"], 1)
        self.assertEqual(stats["queue"]["pending"], 1)
        self.assertEqual(stats["last_status"], "success")


if __name__ == "__main__":
    unittest.main()

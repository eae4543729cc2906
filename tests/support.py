"""Shared fakes for the sync tests: an in-memory tracker and engine wiring."""

import copy
import os
import shutil
import tempfile
from datetime import datetime, timedelta

from tracksync.config import Settings
from tracksync.context import build_context
from tracksync.entities import EntityKind, parse_remote_datetime
from tracksync.errors import AuthError
from tracksync.services.redmine_client import ConflictSignal, Page

STATUSES = {1: "New", 2: "In Progress", 3: "Resolved", 4: "Feedback", 5: "Closed"}
PRIORITIES = {1: "Low", 2: "Normal", 3: "High"}
TRACKERS = {1: "Bug", 2: "Feature"}
USERS = {7: "Alice Smith", 8: "Bob Jones"}

_EPOCH = datetime(2026, 1, 1, 9, 0, 0)


def stamp(minutes: int) -> str:
    return (_EPOCH + timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%SZ")


def issue_payload(issue_id, updated_on, *, project_id=1, status_id=1, priority_id=2, assigned_to_id=None, **fields):
    data = {
        "id": issue_id,
        "project": {"id": project_id, "name": "Core" if project_id == 1 else "Web"},
        "tracker": {"id": 1, "name": TRACKERS[1]},
        "status": {"id": status_id, "name": STATUSES[status_id]},
        "priority": {"id": priority_id, "name": PRIORITIES[priority_id]},
        "author": {"id": 8, "name": USERS[8]},
        "subject": fields.pop("subject", f"Issue {issue_id}"),
        "description": fields.pop("description", ""),
        "start_date": None,
        "due_date": None,
        "done_ratio": fields.pop("done_ratio", 0),
        "is_private": False,
        "estimated_hours": None,
        "created_on": stamp(0),
        "updated_on": updated_on,
    }
    if assigned_to_id is not None:
        data["assigned_to"] = {"id": assigned_to_id, "name": USERS[assigned_to_id]}
    data.update(fields)
    return data


class FakeRemote:
    """In-memory stand-in for the Redmine client"""

    def __init__(self, page_size=2):
        self.page_size = page_size
        self.minute = 10
        self.next_id = 100
        self.projects = {
            1: {"id": 1, "name": "Core", "identifier": "core", "status": 1, "created_on": stamp(0), "updated_on": stamp(1)},
            2: {"id": 2, "name": "Web", "identifier": "web", "status": 1, "created_on": stamp(0), "updated_on": stamp(2)},
        }
        self.issues = {}
        self.journals = {}
        self.attachments = {}
        self.create_calls = []
        self.update_calls = []
        self.fetch_calls = 0
        self.auth_failure = None
        self.create_error = None
        self.update_errors = {}
        self.uploads = []
        # Called as hook(kind, pages_already_served_for_kind) before each collection page
        self.before_page = None
        self.pages_served = {}

    def tick(self) -> str:
        self.minute += 1
        return stamp(self.minute)

    def add_issue(self, issue_id, **fields):
        self.issues[issue_id] = issue_payload(issue_id, self.tick(), **fields)
        return self.issues[issue_id]

    def edit_issue(self, issue_id, **changes):
        """Another user edits the issue on the server"""
        self._apply(self.issues[issue_id], changes)
        self.issues[issue_id]["updated_on"] = self.tick()
        return self.issues[issue_id]

    def _apply(self, issue, changes):
        for key, value in changes.items():
            if key in ("notes", "private_notes", "uploads"):
                continue
            if key == "status_id":
                issue["status"] = {"id": value, "name": STATUSES[value]}
            elif key == "priority_id":
                issue["priority"] = {"id": value, "name": PRIORITIES[value]}
            elif key == "tracker_id":
                issue["tracker"] = {"id": value, "name": TRACKERS[value]}
            elif key == "assigned_to_id":
                if value is None:
                    issue.pop("assigned_to", None)
                else:
                    issue["assigned_to"] = {"id": value, "name": USERS[value]}
            elif key == "project_id":
                issue["project"] = {"id": value, "name": self.projects[value]["name"]}
            else:
                issue[key] = value

    def _check_auth(self):
        if self.auth_failure is not None:
            raise self.auth_failure

    def fail_auth(self):
        self.auth_failure = AuthError("GET /projects.json failed with status 401", status=401)

    # RemoteClient surface -------------------------------------------------
    def fetch_lookups(self):
        self._check_auth()
        return {
            "issue_status": [
                {"id": k, "name": v, "position": i, "is_closed": k == 5} for i, (k, v) in enumerate(STATUSES.items())
            ],
            "issue_priority": [
                {"id": k, "name": v, "position": i, "is_closed": None} for i, (k, v) in enumerate(PRIORITIES.items())
            ],
            "tracker": [{"id": k, "name": v, "position": i, "is_closed": None} for i, (k, v) in enumerate(TRACKERS.items())],
        }

    def fetch_collection(self, kind, since_cursor=None, page_token=None):
        self._check_auth()
        self.fetch_calls += 1
        keyset = EntityKind(kind) == EntityKind.ISSUE
        served = self.pages_served.get(EntityKind(kind), 0)
        if self.before_page is not None:
            self.before_page(EntityKind(kind), served)
        self.pages_served[EntityKind(kind)] = served + 1
        source = self.issues if keyset else self.projects
        items = sorted(source.values(), key=lambda item: (item["updated_on"], item["id"]))
        if keyset and since_cursor is not None:
            items = [i for i in items if parse_remote_datetime(i["updated_on"]) >= since_cursor]
        offset = int(page_token or 0)
        page = [copy.deepcopy(i) for i in items[offset : offset + self.page_size]]
        has_more = offset + len(page) < len(items)
        stamps = [parse_remote_datetime(i["updated_on"]) for i in page]
        next_cursor = since_cursor
        for updated in stamps:
            if next_cursor is None or updated > next_cursor:
                next_cursor = updated
        if not has_more:
            next_token = None
        elif keyset:
            next_token = sum(1 for updated in stamps if updated == next_cursor)
            if next_cursor == since_cursor:
                next_token += offset
        else:
            next_token = offset + len(page)
        return Page(items=page, next_cursor=next_cursor, next_page_token=next_token, has_more=has_more)

    def create_entity(self, kind, payload):
        self._check_auth()
        self.create_calls.append(dict(payload))
        if self.create_error is not None:
            raise self.create_error
        issue_id = self.next_id
        self.next_id += 1
        issue = issue_payload(issue_id, self.tick(), project_id=payload["project_id"], subject=payload["subject"])
        self._apply(issue, {k: v for k, v in payload.items() if k not in ("project_id", "subject")})
        self.issues[issue_id] = issue
        return copy.deepcopy(issue)

    def update_entity(self, kind, entity_id, expected_version, payload):
        self._check_auth()
        self.update_calls.append((entity_id, dict(payload)))
        error = self.update_errors.get(entity_id)
        if error is not None:
            raise error
        current = self.issues[entity_id]
        remote_version = parse_remote_datetime(current["updated_on"])
        if expected_version is not None and remote_version != expected_version:
            return ConflictSignal(
                remote=copy.deepcopy(current), remote_version=remote_version, expected_version=expected_version
            )
        self._apply(current, payload)
        if payload.get("notes"):
            self.journals.setdefault(entity_id, []).append(
                {"id": 900 + len(self.journals.get(entity_id, [])), "notes": payload["notes"], "created_on": stamp(self.minute)}
            )
        current["updated_on"] = self.tick()
        return copy.deepcopy(current)

    def get_current_user(self):
        self._check_auth()
        return {"id": 8, "login": "bjones"}

    def test_connection(self):
        return self.get_current_user()

    def fetch_issue_details(self, issue_id):
        self._check_auth()
        data = copy.deepcopy(self.issues[issue_id])
        data["journals"] = copy.deepcopy(self.journals.get(issue_id, []))
        data["attachments"] = copy.deepcopy(self.attachments.get(issue_id, []))
        return data

    def fetch_attachment_content(self, attachment_id, content_url=None):
        self._check_auth()
        return iter([b"hello ", b"world"])

    def upload_file(self, filename, content):
        self._check_auth()
        self.uploads.append((filename, content))
        return f"token-{len(self.uploads)}"


class TempCache:
    """A throwaway directory holding one SQLite cache file"""

    def __init__(self):
        self.path = tempfile.mkdtemp(prefix="tracksync-test-")

    @property
    def database_url(self) -> str:
        return "sqlite:///" + os.path.join(self.path, "cache.db")

    def cleanup(self):
        shutil.rmtree(self.path, ignore_errors=True)


def make_settings(cache: TempCache, **overrides) -> Settings:
    values = {
        "database_url": cache.database_url,
        "sync_interval_minutes": 0,
        "retry_base_delay_seconds": 0.01,
        "retry_max_delay_seconds": 0.02,
        "max_retries": 3,
        "sync_collections": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_context(cache: TempCache, remote=None, **overrides):
    return build_context(make_settings(cache, **overrides), client=remote or FakeRemote())


def make_engine(cache: TempCache, remote=None, **overrides):
    from tracksync.services.sync_engine import SyncEngine

    return SyncEngine(make_context(cache, remote, **overrides))


def event_kinds(notifier, since=0):
    return [e.kind.value for e in notifier.poll(since_seq=since, limit=10000)]

import unittest
from datetime import datetime
from types import SimpleNamespace

V1 = datetime(2026, 1, 1, 10, 0)
V2 = datetime(2026, 1, 1, 11, 0)


def _mutation(payload, base_snapshot=None, is_create=False):
    return SimpleNamespace(payload=payload, base_snapshot=base_snapshot or {}, is_create=is_create)


class ConflictResolverTests(unittest.TestCase):
    def test_unchanged_remote_applies(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        resolution = resolve(_mutation({"status_id": 2}, {"status_id": 1}), V1, V1, {"status_id": 1})

        self.assertEqual(resolution.outcome, ResolutionOutcome.APPLY)
        self.assertTrue(resolution.should_apply)
        self.assertEqual(resolution.remote_changes, {})

    def test_remote_change_to_untouched_field_supersedes(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        mutation = _mutation({"priority_id": 3}, {"priority_id": 2})
        remote = {"priority_id": 2, "assigned_to_id": 7}

        resolution = resolve(mutation, V1, V2, remote)

        self.assertEqual(resolution.outcome, ResolutionOutcome.SUPERSEDED)
        self.assertTrue(resolution.should_apply)
        self.assertEqual(resolution.remote_version, V2)

    def test_remote_change_to_touched_field_conflicts(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        mutation = _mutation({"status_id": 2, "subject": "Mine"}, {"status_id": 1, "subject": "Original"})
        remote = {"status_id": 5, "subject": "Original"}

        resolution = resolve(mutation, V1, V2, remote)

        self.assertEqual(resolution.outcome, ResolutionOutcome.CONFLICT)
        self.assertFalse(resolution.should_apply)
        self.assertEqual(resolution.local_delta, {"status_id": 2, "subject": "Mine"})
        self.assertEqual(resolution.remote_changes, {"status_id": {"base": 1, "remote": 5, "local": 2}})

    def test_remote_already_at_intended_value_is_not_a_conflict(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        resolution = resolve(_mutation({"status_id": 2}, {"status_id": 1}), V1, V2, {"status_id": 2})

        self.assertEqual(resolution.outcome, ResolutionOutcome.SUPERSEDED)

    def test_append_only_fields_are_ignored(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        mutation = _mutation({"notes": "A comment", "uploads": [{"token": "t"}]})

        resolution = resolve(mutation, V1, V2, {"subject": "Changed"})

        self.assertEqual(resolution.outcome, ResolutionOutcome.SUPERSEDED)
        self.assertEqual(resolution.local_delta, {})

    def test_creates_always_apply(self):
        from tracksync.services.conflict_resolver import ResolutionOutcome, resolve

        resolution = resolve(_mutation({"project_id": 1, "subject": "New"}, is_create=True), None, V2, {})

        self.assertEqual(resolution.outcome, ResolutionOutcome.APPLY)

    def test_same_value_tolerates_json_and_form_representations(self):
        from tracksync.services.conflict_resolver import same_value

        self.assertTrue(same_value(None, ""))
        self.assertTrue(same_value(3, "3"))
        self.assertTrue(same_value(2.5, "2.50"))
        self.assertTrue(same_value(True, "true"))
        self.assertFalse(same_value(None, 0))
        self.assertFalse(same_value("open", "closed"))


if __name__ == "__main__":
    unittest.main()

import logging
import unittest
from concurrent.futures import Future
from types import SimpleNamespace
from unittest.mock import Mock

logging.disable(logging.CRITICAL)


def _finished(status="success"):
    future = Future()
    future.set_result(SimpleNamespace(status=SimpleNamespace(value=status), stats={"pushed": 0}))
    return future


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.engine = Mock()
        self.engine.paused = False
        self.engine.trigger_sync.return_value = _finished()

    def test_start_schedules_periodic_job(self):
        from tracksync.scheduler import JOB_ID, SyncScheduler

        scheduler = SyncScheduler(self.engine, interval_minutes=15)
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(JOB_ID)
            self.assertIsNotNone(job)
            self.assertEqual(job.trigger.interval.total_seconds(), 15 * 60)
            self.assertIsNotNone(scheduler.next_run_time())
        finally:
            scheduler.stop()

    def test_zero_interval_disables_periodic_sync(self):
        from tracksync.scheduler import SyncScheduler

        scheduler = SyncScheduler(self.engine, interval_minutes=0)
        scheduler.start()
        try:
            self.assertIsNone(scheduler.next_run_time())
            scheduler.schedule_sync(5)
            self.assertIsNotNone(scheduler.next_run_time())
            scheduler.schedule_sync(0)
            self.assertIsNone(scheduler.next_run_time())
        finally:
            scheduler.stop()

    def test_job_triggers_a_full_run(self):
        from tracksync.scheduler import SyncScheduler

        scheduler = SyncScheduler(self.engine, interval_minutes=10)

        scheduler._sync_job()

        self.engine.trigger_sync.assert_called_once_with()

    def test_job_skips_while_paused(self):
        from tracksync.scheduler import SyncScheduler

        self.engine.paused = True
        scheduler = SyncScheduler(self.engine, interval_minutes=10)

        scheduler._sync_job()

        self.engine.trigger_sync.assert_not_called()

    def test_job_swallows_run_failures(self):
        from tracksync.scheduler import SyncScheduler

        self.engine.trigger_sync.side_effect = RuntimeError("runner gone")
        scheduler = SyncScheduler(self.engine, interval_minutes=10)

        scheduler._sync_job()


if __name__ == "__main__":
    unittest.main()

import unittest
from datetime import timedelta
from unittest.mock import MagicMock

from apscheduler.schedulers.background import BackgroundScheduler

from parcelvault.db import InMemoryDbClient
from parcelvault.errors import ValidationError
from parcelvault.scheduler import JOB_ID, BackupScheduler


class BackupSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.manager = MagicMock()
        self.aps = BackgroundScheduler(timezone="UTC")
        self.scheduler = BackupScheduler(self.manager, scheduler=self.aps)

    def tearDown(self):
        if self.aps.running:
            self.aps.shutdown(wait=False)

    def test_start_arms_one_interval_job(self):
        self.scheduler.start(6)
        self.assertTrue(self.aps.running)
        self.assertTrue(self.scheduler.is_running)
        job = self.aps.get_job(JOB_ID)
        self.assertEqual(job.trigger.interval, timedelta(hours=6))
        self.assertEqual(job.max_instances, 1)
        self.assertTrue(job.coalesce)
        self.assertIsNotNone(self.scheduler.next_run_time)

    def test_restart_replaces_instead_of_stacking(self):
        self.scheduler.start(6)
        self.scheduler.start(12)
        jobs = self.aps.get_jobs()
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].trigger.interval, timedelta(hours=12))
        self.assertEqual(self.scheduler.frequency_hours, 12)

    def test_stop_disarms(self):
        self.scheduler.start(6)
        self.scheduler.stop()
        self.assertFalse(self.scheduler.is_running)
        self.assertIsNone(self.scheduler.frequency_hours)
        # Stopping twice is harmless.
        self.scheduler.stop()

    def test_invalid_frequency(self):
        for hours in (0, -1, 2.5, True):
            with self.subTest(hours=hours):
                with self.assertRaises(ValidationError):
                    self.scheduler.start(hours)
        self.assertFalse(self.scheduler.is_running)

    def test_tick_errors_are_swallowed(self):
        self.manager.run_backup_for_all_locations.side_effect = RuntimeError("boom")
        self.scheduler.run_now()
        self.manager.run_backup_for_all_locations.assert_called_once_with()

    def test_shutdown(self):
        self.scheduler.start(1)
        self.scheduler.shutdown()
        self.assertFalse(self.aps.running)

    def test_initialize_from_settings(self):
        db = InMemoryDbClient()
        self.assertFalse(self.scheduler.initialize_from_settings(db, True))

        db.update_backup_settings(enabled=True, api_key_configured=True, frequency_hours=8)
        self.assertFalse(self.scheduler.initialize_from_settings(db, False))
        self.assertFalse(self.scheduler.is_running)

        self.assertTrue(self.scheduler.initialize_from_settings(db, True))
        self.assertEqual(self.aps.get_job(JOB_ID).trigger.interval, timedelta(hours=8))


if __name__ == "__main__":
    unittest.main()

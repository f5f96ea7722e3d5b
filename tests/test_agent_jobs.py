import os
import sys
import unittest
from unittest.mock import Mock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from agent_jobs import JobCategory, JobRegistry, JobStatus, coerce_number
from event_broadcaster import EventBroadcaster
from hub_errors import ValidationError


class JobRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = [500.0]
        self.broadcaster = Mock(spec=EventBroadcaster)
        self.correlator = Mock()
        self.jobs = JobRegistry(self.broadcaster, self.correlator, clock=lambda: self.now[0])

    def published(self):
        return [call.args for call in self.broadcaster.publish.call_args_list]

    def test_report_creates_then_carries_fields_forward(self) -> None:
        first = self.jobs.report("acme/app", 42, "running", category="comments", summary="Addressing review")
        self.assertEqual(first.id, "acme/app#42")
        self.assertEqual(first.category, JobCategory.COMMENTS)
        self.assertIsNone(first.completed_at)

        self.now[0] = 530.0
        second = self.jobs.report("acme/app", "42", "complete")
        self.assertEqual(second.status, JobStatus.COMPLETE)
        self.assertEqual(second.category, JobCategory.COMMENTS)
        self.assertEqual(second.summary, "Addressing review")
        self.assertEqual(second.started_at, 500.0)
        self.assertEqual(second.completed_at, 530.0)
        self.assertEqual(len(self.jobs), 1)

    def test_report_inherits_category_and_takes_new_summary(self) -> None:
        self.jobs.report("acme/app", 42, "running", category="checks")
        job = self.jobs.report("acme/app", 42, "complete", None, "fixed 3 checks")
        self.assertEqual(job.category, JobCategory.CHECKS)
        self.assertEqual(job.summary, "fixed 3 checks")

    def test_every_report_publishes(self) -> None:
        self.jobs.report("acme/app", 1, "running")
        self.jobs.report("acme/app", 1, "running")
        events = self.published()
        self.assertEqual(len(events), 2)
        self.assertTrue(all(name == "agent-status" for name, _ in events))
        self.assertEqual(events[1][1]["status"], "running")
        self.assertEqual(events[1][1]["type"], "all")

    def test_non_terminal_report_clears_completed_at(self) -> None:
        self.jobs.report("acme/app", 1, "failed", error="boom")
        job = self.jobs.report("acme/app", 1, "pending")
        self.assertIsNone(job.completed_at)
        self.assertEqual(job.error, "boom")
        self.assertIsNone(job.to_dict()["completedAt"])

    def test_complete_schedules_refresh(self) -> None:
        self.jobs.report("acme/app", 5, "running")
        self.correlator.schedule.assert_not_called()
        self.jobs.report("acme/app", 5, "complete")
        self.correlator.schedule.assert_called_once_with("acme/app", 5)

    def test_failed_does_not_schedule_refresh(self) -> None:
        self.jobs.report("acme/app", 5, "failed")
        self.correlator.schedule.assert_not_called()

    def test_invalid_reports(self) -> None:
        with self.assertRaises(ValidationError):
            self.jobs.report("", 1, "running")
        with self.assertRaises(ValidationError):
            self.jobs.report("acme/app", 0, "running")
        with self.assertRaises(ValidationError):
            self.jobs.report("acme/app", 1, "")
        with self.assertRaises(ValidationError):
            self.jobs.report("acme/app", 1, "done")
        with self.assertRaises(ValidationError):
            self.jobs.report("acme/app", 1, "running", category="lint")
        self.assertEqual(len(self.jobs), 0)
        self.broadcaster.publish.assert_not_called()

    def test_start_replaces_previous_attempt(self) -> None:
        self.jobs.report("acme/app", 9, "failed", category="conflicts", summary="Rebase failed", error="boom")
        self.now[0] = 700.0
        job = self.jobs.start("acme/app", "9")
        self.assertEqual(job.status, JobStatus.RUNNING)
        self.assertEqual(job.category, JobCategory.ALL)
        self.assertEqual(job.started_at, 700.0)
        self.assertIsNone(job.completed_at)
        self.assertIsNone(job.summary)
        self.assertIsNone(job.error)
        name, data = self.published()[-1]
        self.assertEqual((name, data["status"], data["error"]), ("agent-status", "running", None))
        self.correlator.schedule.assert_not_called()

    def test_clear(self) -> None:
        self.jobs.report("acme/app", 8, "running")
        self.assertTrue(self.jobs.clear("acme/app", 8))
        self.assertFalse(self.jobs.clear("acme/app", 8))
        self.assertIsNone(self.jobs.get("acme/app", 8))
        name, data = self.published()[-1]
        self.assertEqual(name, "agent-status")
        self.assertEqual(data, {"id": "acme/app#8", "repo": "acme/app", "number": 8, "status": "cleared"})

    def test_sweep_keeps_running_and_recent(self) -> None:
        self.jobs.report("acme/app", 1, "complete")
        self.jobs.report("acme/app", 2, "running")
        self.now[0] = 1000.0
        self.jobs.report("acme/app", 3, "failed")
        self.assertEqual(self.jobs.sweep(now=500.0 + 600.0), 0)
        self.assertEqual(self.jobs.sweep(now=500.0 + 601.0), 1)
        self.assertEqual(sorted(job.number for job in self.jobs.list()), [2, 3])

    def test_without_correlator(self) -> None:
        jobs = JobRegistry(self.broadcaster)
        job = jobs.report("acme/app", 4, JobStatus.COMPLETE)
        self.assertEqual(job.status, JobStatus.COMPLETE)


class CoerceNumberTests(unittest.TestCase):
    def test_accepts_strings(self) -> None:
        self.assertEqual(coerce_number("12"), 12)

    def test_rejects_garbage(self) -> None:
        for value in (None, "x", -1, 0):
            with self.assertRaises(ValidationError):
                coerce_number(value)


if __name__ == "__main__":
    unittest.main()

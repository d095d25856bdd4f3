import unittest
from threading import Event
from unittest.mock import patch

from sqlmodel import select

from db_support import SQLiteTestCase
from listing_ops import worker as worker_module
from listing_ops.core.config import settings
from listing_ops.core.exceptions import JobStoreUnavailableError
from listing_ops.models.jobs import Job, JobStatus, JobType, ScopeType
from listing_ops.services import job_store as store
from listing_ops.services.job_executor import OutcomeKind


class WorkerTestCase(SQLiteTestCase):
    def setUp(self) -> None:
        super().setUp()
        settings.worker_poll_interval_seconds = 0.1
        settings.worker_batch_size = 5

    def test_run_once_executes_claimed_batch(self) -> None:
        self.make_listing(1)
        self.make_listing(2)
        with self.session() as db:
            for listing_id in (1, 2):
                store.enqueue_job(
                    db,
                    job_type=JobType.COMPUTE_FEATURES,
                    scope_type=ScopeType.LISTING,
                    entity_id=listing_id,
                )
            db.commit()

        outcomes = worker_module.run_once("worker-test-0")

        self.assertEqual([outcome.kind for outcome in outcomes], [OutcomeKind.SUCCEEDED, OutcomeKind.SUCCEEDED])
        with self.session() as db:
            statuses = sorted(
                row.status for row in db.exec(select(Job).where(Job.job_type == JobType.COMPUTE_FEATURES.value)).all()
            )
        self.assertEqual(statuses, [JobStatus.SUCCEEDED.value, JobStatus.SUCCEEDED.value])
        # Follow-ups were queued but belong to the next batch.
        self.assertEqual(worker_module.run_once("worker-test-0", batch_size=1)[0].kind, OutcomeKind.SUCCEEDED)

    def test_run_once_with_empty_queue(self) -> None:
        self.assertEqual(worker_module.run_once("worker-test-0"), [])

    def test_loop_survives_store_outage(self) -> None:
        stop_event = Event()
        calls = []

        def fake_run_once(worker_id):
            calls.append(worker_id)
            if len(calls) == 1:
                raise JobStoreUnavailableError("job store unavailable during claim")
            stop_event.set()
            return []

        with patch("listing_ops.worker.run_once", side_effect=fake_run_once):
            with self.assertLogs("listing_ops.worker", level="WARNING") as logs:
                processed = worker_module._worker_loop("worker-test-0", stop_event)

        self.assertEqual(processed, 0)
        self.assertEqual(calls, ["worker-test-0", "worker-test-0"])
        self.assertTrue(any("worker_store_unavailable" in line for line in logs.output))

    def test_scheduler_tick_respects_intervals(self) -> None:
        settings.job_stale_recovery_interval_seconds = 60
        settings.market_sync_auto_enqueue = True
        settings.market_sync_scheduler_interval_seconds = 300
        state = {"next_stale_recovery_at": 0.0, "next_market_sync_at": 0.0}

        with patch.object(worker_module, "recover_stale_running_jobs", return_value=0) as recover, patch.object(
            worker_module, "enqueue_due_market_syncs", return_value=0
        ) as enqueue:
            worker_module._run_scheduler_tick(state)
            worker_module._run_scheduler_tick(state)

        self.assertEqual(recover.call_count, 1)
        self.assertEqual(enqueue.call_count, 1)
        self.assertGreater(state["next_stale_recovery_at"], 0.0)
        self.assertGreater(state["next_market_sync_at"], state["next_stale_recovery_at"])

    def test_scheduler_tick_tolerates_store_outage(self) -> None:
        state = {"next_stale_recovery_at": 0.0, "next_market_sync_at": 0.0}
        outage = JobStoreUnavailableError("job store unavailable during recover_stale")
        with patch.object(worker_module, "recover_stale_running_jobs", side_effect=outage), patch.object(
            worker_module, "enqueue_due_market_syncs", side_effect=outage
        ):
            worker_module._run_scheduler_tick(state)
        self.assertGreater(state["next_stale_recovery_at"], 0.0)

    def test_worker_ids_are_unique_per_slot(self) -> None:
        settings.worker_id_prefix = "listing-worker"
        first = worker_module.worker_id_for(0)
        second = worker_module.worker_id_for(1)
        self.assertTrue(first.startswith("listing-worker-"))
        self.assertNotEqual(first, second)
        self.assertTrue(second.endswith("-1"))


if __name__ == "__main__":
    unittest.main()

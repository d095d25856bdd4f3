import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError
from sqlmodel import select

from db_support import SQLiteTestCase
from listing_ops.core.config import settings
from listing_ops.core.exceptions import (
    EntityNotFoundError,
    InvalidJobInputError,
    JobStateError,
    JobStoreUnavailableError,
)
from listing_ops.models.jobs import Job, JobStatus, JobType, ScopeType
from listing_ops.services import job_store as store


class JobStoreTestCase(SQLiteTestCase):
    def _enqueue(self, **kwargs) -> int:
        values = {
            "job_type": JobType.COMPUTE_FEATURES,
            "scope_type": ScopeType.LISTING,
            "entity_id": 1,
        }
        values.update(kwargs)
        with self.session() as db:
            row = store.enqueue_job(db, **values)
            db.commit()
            return int(row.id)

    def test_enqueue_validates_scope_type_and_priority(self) -> None:
        with self.session() as db:
            with self.assertRaises(InvalidJobInputError):
                store.enqueue_job(db, job_type="NOT_A_JOB")
            with self.assertRaises(InvalidJobInputError):
                store.enqueue_job(db, job_type=JobType.COMPUTE_FEATURES, scope_type="LISTING", entity_id=None)
            with self.assertRaises(InvalidJobInputError):
                store.enqueue_job(db, job_type=JobType.COMPUTE_FEATURES, scope_type="LISTING", entity_id=1, priority=11)
            row = store.enqueue_job(db, job_type=JobType.SYNC_MARKET_DATA, scope_type="GLOBAL", entity_id=99)
            self.assertIsNone(row.entity_id)
            self.assertEqual(row.status, JobStatus.PENDING.value)
            self.assertEqual(row.attempts, 0)
            self.assertEqual(row.log_entries[0]["event"], "enqueued")

    def test_claim_orders_by_priority_then_schedule(self) -> None:
        low = self._enqueue(entity_id=1, priority=2)
        high_late = self._enqueue(entity_id=2, priority=9, delay_seconds=1)
        high_early = self._enqueue(entity_id=3, priority=9)

        claimed = store.claim_jobs(3, worker_id="w1", now=self.later(10))

        self.assertEqual([row.id for row in claimed], [high_early, high_late, low])
        for row in claimed:
            self.assertEqual(row.status, JobStatus.RUNNING.value)
            self.assertEqual(row.locked_by, "w1")
            self.assertEqual(row.attempts, 1)
            self.assertEqual(row.log_entries[-1]["event"], "claimed")

    def test_future_jobs_are_not_claimed(self) -> None:
        self._enqueue(delay_seconds=600)
        self.assertEqual(store.claim_jobs(5, worker_id="w1"), [])
        self.assertEqual(len(store.claim_jobs(5, worker_id="w1", now=self.later(601))), 1)

    def test_sequential_claimers_never_share_a_job(self) -> None:
        for entity_id in range(1, 6):
            self._enqueue(entity_id=entity_id)
        first = store.claim_jobs(3, worker_id="w1")
        second = store.claim_jobs(3, worker_id="w2")
        third = store.claim_jobs(3, worker_id="w3")

        ids_first = {row.id for row in first}
        ids_second = {row.id for row in second}
        self.assertEqual(len(ids_first), 3)
        self.assertEqual(len(ids_second), 2)
        self.assertFalse(ids_first & ids_second)
        self.assertEqual(third, [])

    def test_conditional_update_skips_rows_claimed_in_between(self) -> None:
        job_id = self._enqueue()
        store.claim_jobs(1, worker_id="w1")

        # A second claimer that read the row before w1 committed.
        with patch.object(store, "_select_claim_candidates", return_value=[job_id]):
            claimed = store.claim_jobs(1, worker_id="w2")

        self.assertEqual(claimed, [])
        with self.session() as db:
            row = db.get(Job, job_id)
            self.assertEqual(row.locked_by, "w1")
            self.assertEqual(row.attempts, 1)

    def test_exhausted_jobs_are_not_claimed(self) -> None:
        job_id = self._enqueue(max_attempts=1)
        with self.session() as db:
            row = db.get(Job, job_id)
            row.attempts = 1
            db.add(row)
            db.commit()
        self.assertEqual(store.claim_jobs(1, worker_id="w1"), [])

    def test_store_outage_raises_instead_of_returning_empty(self) -> None:
        self._enqueue()
        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(store, "_select_claim_candidates", side_effect=outage):
            with self.assertRaises(JobStoreUnavailableError):
                store.claim_jobs(1, worker_id="w1")

    def test_cancel_only_pending(self) -> None:
        pending_id = self._enqueue(entity_id=1)
        running_id = self._enqueue(entity_id=2, priority=9)
        store.claim_jobs(1, worker_id="w1")

        with self.session() as db:
            cancelled = store.cancel_job(db, pending_id, actor="tester", reason="not needed")
            self.assertEqual(cancelled.status, JobStatus.CANCELLED.value)
            self.assertIsNotNone(cancelled.finished_at)
            self.assertEqual(cancelled.log_entries[-1]["event"], "cancelled")

            with self.assertRaises(JobStateError):
                store.cancel_job(db, running_id)
            with self.assertRaises(EntityNotFoundError):
                store.cancel_job(db, 9999)

        with self.session() as db:
            self.assertEqual(db.get(Job, running_id).status, JobStatus.RUNNING.value)

    def test_stale_running_jobs_are_recovered(self) -> None:
        settings.job_stale_running_seconds = 60
        retry_id = self._enqueue(entity_id=1)
        exhausted_id = self._enqueue(entity_id=2, max_attempts=1)
        store.claim_jobs(2, worker_id="dead-worker")

        recovered = store.recover_stale_running_jobs(now=self.later(7200))

        self.assertEqual(recovered, 2)
        with self.session() as db:
            retry = db.get(Job, retry_id)
            exhausted = db.get(Job, exhausted_id)
            self.assertEqual(retry.status, JobStatus.PENDING.value)
            self.assertEqual(retry.locked_by, "")
            self.assertEqual(retry.log_entries[-1]["event"], "recovered_from_stale_running")
            self.assertEqual(retry.log_entries[-1]["worker_id"], "dead-worker")
            self.assertEqual(exhausted.status, JobStatus.FAILED.value)
            self.assertIsNotNone(exhausted.finished_at)
        self.assertEqual(store.recover_stale_running_jobs(now=self.later(7200)), 0)

    def test_fresh_running_jobs_are_left_alone(self) -> None:
        self._enqueue()
        store.claim_jobs(1, worker_id="w1")
        self.assertEqual(store.recover_stale_running_jobs(), 0)

    def test_counts_include_every_status(self) -> None:
        self._enqueue(entity_id=1)
        self._enqueue(entity_id=2)
        store.claim_jobs(1, worker_id="w1")
        with self.session() as db:
            counts = store.count_jobs_by_status(db)
        self.assertEqual(set(counts), {status.value for status in JobStatus})
        self.assertEqual(counts["PENDING"], 1)
        self.assertEqual(counts["RUNNING"], 1)
        self.assertEqual(counts["FAILED"], 0)

    def test_list_jobs_filters(self) -> None:
        self._enqueue(entity_id=1)
        self._enqueue(entity_id=2, job_type=JobType.SYNC_MARKET_DATA)
        with self.session() as db:
            rows = store.list_jobs(db, job_type="sync_market_data")
            self.assertEqual([row.entity_id for row in rows], [2])
            rows = store.list_jobs(db, scope_type="LISTING", entity_id=1)
            self.assertEqual(len(rows), 1)

    def test_log_is_capped(self) -> None:
        settings.job_log_max_entries = 3
        job = Job(job_type=JobType.COMPUTE_FEATURES.value)
        for attempt in range(5):
            store.append_log(job, store.build_log_entry("retryable", attempt=attempt))
        self.assertEqual([entry["attempt"] for entry in job.log_entries], [2, 3, 4])

    def test_find_pending_jobs_matches_scope(self) -> None:
        self._enqueue(entity_id=1)
        self._enqueue(entity_id=2)
        with self.session() as db:
            rows = store.find_pending_jobs(
                db,
                job_type=JobType.COMPUTE_FEATURES,
                scope_type=ScopeType.LISTING,
                entity_id=2,
            )
            self.assertEqual(len(rows), 1)
            self.assertEqual(len(db.exec(select(Job)).all()), 2)


if __name__ == "__main__":
    unittest.main()

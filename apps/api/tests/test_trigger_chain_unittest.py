import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlmodel import select

from db_support import SQLiteTestCase
from listing_ops.core.config import settings
from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import Job, JobStatus, JobType, ScopeType, utc_now
from listing_ops.models.listings import AsinEntity, Listing, ListingEvent, MarketSnapshot
from listing_ops.services import job_store as store
from listing_ops.services.job_executor import OutcomeKind, execute_job
from listing_ops.services.publish_jobs import create_publish_job
from listing_ops.services.triggers import enqueue_due_market_syncs, enqueue_follow_up, follow_up_priority

_KEEPA_RESULT = {
    "metrics": {
        "price_current": 21.0,
        "price_median_90d": 21.5,
        "price_p25_90d": 19.0,
        "price_p75_90d": 23.0,
        "price_volatility_90d": 0.05,
        "offers_count_current": 4,
    },
    "fetched_at": "2026-01-01T00:00:00+00:00",
}


class TriggerChainTestCase(SQLiteTestCase):
    def _pending(self, job_type: JobType, entity_id: int) -> list[Job]:
        with self.session() as db:
            return store.find_pending_jobs(db, job_type=job_type, scope_type=ScopeType.LISTING, entity_id=entity_id)

    def _run_next(self) -> tuple[int, object]:
        claimed = store.claim_jobs(1, worker_id="w1")
        self.assertEqual(len(claimed), 1)
        job_id = int(claimed[0].id)
        return job_id, execute_job(job_id, worker_id="w1")

    def test_successful_publish_queues_feature_refresh(self) -> None:
        self.make_listing(5, price_inc_vat=20.00)
        with self.session() as db:
            job, _ = create_publish_job(db, 5, JobType.PUBLISH_PRICE_CHANGE, {"price_inc_vat": 20.50}, priority=7)
            publish_id = int(job.id)

        job_id, outcome = self._run_next()

        self.assertEqual(job_id, publish_id)
        self.assertIs(outcome.kind, OutcomeKind.SUCCEEDED)
        follow_ups = self._pending(JobType.COMPUTE_FEATURES, 5)
        self.assertEqual(len(follow_ups), 1)
        self.assertEqual(follow_ups[0].priority, 5)
        self.assertEqual(follow_ups[0].input_payload, {"trigger": "publish_succeeded", "origin_job_id": publish_id})
        self.assertEqual(follow_ups[0].job_metadata["origin_job_type"], "PUBLISH_PRICE_CHANGE")
        self.assertEqual(outcome.result["follow_up_job_id"], follow_ups[0].id)
        with self.session() as db:
            self.assertEqual(db.get(Listing, 5).price_inc_vat, 20.50)
            events = db.exec(select(ListingEvent).where(ListingEvent.listing_id == 5).order_by(ListingEvent.id)).all()
        self.assertEqual([event.event_type for event in events], ["PRICE_CHANGE_DRAFTED", "PRICE_CHANGE_PUBLISHED"])
        self.assertEqual(events[1].before, {"price_inc_vat": 20.0})
        self.assertEqual(events[1].after, {"price_inc_vat": 20.5})

        # The refresh in turn queues recommendation generation one step lower.
        _, features_outcome = self._run_next()
        self.assertIs(features_outcome.kind, OutcomeKind.SUCCEEDED)
        self.assertTrue(features_outcome.result["inserted"])
        generation = self._pending(JobType.GENERATE_RECOMMENDATIONS, 5)
        self.assertEqual([row.priority for row in generation], [3])

        _, generation_outcome = self._run_next()
        self.assertIs(generation_outcome.kind, OutcomeKind.SUCCEEDED)
        self.assertEqual(generation_outcome.result["entity_id"], 5)

    def test_publish_trigger_can_be_disabled(self) -> None:
        settings.trigger_features_after_publish = False
        self.make_listing(5, price_inc_vat=20.00)
        with self.session() as db:
            create_publish_job(db, 5, JobType.PUBLISH_PRICE_CHANGE, {"price_inc_vat": 20.50})
        _, outcome = self._run_next()
        self.assertIs(outcome.kind, OutcomeKind.SUCCEEDED)
        self.assertEqual(self._pending(JobType.COMPUTE_FEATURES, 5), [])

    def test_unchanged_features_do_not_queue_generation(self) -> None:
        self.make_listing(6)
        with self.session() as db:
            for _ in range(2):
                store.enqueue_job(db, job_type=JobType.COMPUTE_FEATURES, scope_type=ScopeType.LISTING, entity_id=6)
            db.commit()
        _, first = self._run_next()
        self.assertTrue(first.result["inserted"])
        with self.session() as db:
            for row in store.find_pending_jobs(
                db, job_type=JobType.GENERATE_RECOMMENDATIONS, scope_type=ScopeType.LISTING, entity_id=6
            ):
                store.cancel_job(db, int(row.id))
        _, second = self._run_next()
        self.assertFalse(second.result["inserted"])
        self.assertIsNone(second.result["follow_up_job_id"])
        self.assertEqual(self._pending(JobType.GENERATE_RECOMMENDATIONS, 6), [])

    def test_follow_up_skipped_when_one_is_pending(self) -> None:
        with self.session() as db:
            origin = store.enqueue_job(
                db, job_type=JobType.SYNC_MARKET_DATA, scope_type=ScopeType.LISTING, entity_id=3, priority=9
            )
            first = enqueue_follow_up(db, origin, JobType.COMPUTE_FEATURES, reason="market_data_synced")
            second = enqueue_follow_up(db, origin, JobType.COMPUTE_FEATURES, reason="market_data_synced")
            self.assertIsNotNone(first)
            self.assertEqual(first.priority, 7)
            self.assertEqual(first.created_by, "worker")
            self.assertIsNone(second)

            global_origin = store.enqueue_job(db, job_type=JobType.SYNC_MARKET_DATA)
            self.assertIsNone(enqueue_follow_up(db, global_origin, JobType.COMPUTE_FEATURES, reason="x"))

    def test_follow_up_not_held_back_by_delayed_pending_job(self) -> None:
        with self.session() as db:
            origin = store.enqueue_job(
                db, job_type=JobType.SYNC_MARKET_DATA, scope_type=ScopeType.LISTING, entity_id=4, priority=9
            )
            delayed = store.enqueue_job(
                db,
                job_type=JobType.COMPUTE_FEATURES,
                scope_type=ScopeType.LISTING,
                entity_id=4,
                delay_seconds=6 * 3600,
            )
            fresh = enqueue_follow_up(db, origin, JobType.COMPUTE_FEATURES, reason="market_data_synced")
            self.assertIsNotNone(fresh)
            self.assertNotEqual(fresh.id, delayed.id)
            # The fresh job is due now, so a further trigger is absorbed by it.
            self.assertIsNone(enqueue_follow_up(db, origin, JobType.COMPUTE_FEATURES, reason="market_data_synced"))
            db.commit()

        self.assertEqual(len(self._pending(JobType.COMPUTE_FEATURES, 4)), 2)

    def test_follow_up_priority_never_drops_below_one(self) -> None:
        self.assertEqual(follow_up_priority(10), 8)
        self.assertEqual(follow_up_priority(2), 1)
        self.assertEqual(follow_up_priority(1), 1)
        settings.trigger_priority_step = 0
        self.assertEqual(follow_up_priority(5), 4)

    @patch("listing_ops.services.marketplace_client.fetch_price_history", return_value=_KEEPA_RESULT)
    def test_market_sync_feeds_features(self, mock_fetch) -> None:
        settings.price_data_api_key = "keepa-test-key"
        settings.market_sync_sources = ["keepa", "sp_api"]
        self.make_listing(8, price_inc_vat=20.00)
        with self.session() as db:
            store.enqueue_job(db, job_type=JobType.SYNC_MARKET_DATA, scope_type=ScopeType.LISTING, entity_id=8)
            db.commit()

        _, sync = self._run_next()

        self.assertIs(sync.kind, OutcomeKind.SUCCEEDED)
        self.assertEqual(sync.result["sources"], ["keepa", "sp_api"])
        self.assertEqual(mock_fetch.call_args.args[0], "B00TEST008")
        with self.session() as db:
            sources = sorted(row.source for row in db.exec(select(MarketSnapshot)).all())
        self.assertEqual(sources, ["keepa", "sp_api"])

        _, features = self._run_next()
        self.assertIs(features.kind, OutcomeKind.SUCCEEDED)
        with self.session() as db:
            snapshot = db.exec(select(FeatureSnapshot)).one()
        self.assertEqual(snapshot.features["keepa_price_median_90d"], 21.5)
        self.assertEqual(snapshot.features["competitor_price_position"], "IN_BAND")

    def test_market_sync_without_price_key_fails_permanently(self) -> None:
        settings.market_sync_sources = ["keepa"]
        self.make_listing(8)
        with self.session() as db:
            store.enqueue_job(db, job_type=JobType.SYNC_MARKET_DATA, scope_type=ScopeType.LISTING, entity_id=8)
            db.commit()
        job_id, outcome = self._run_next()
        self.assertIs(outcome.kind, OutcomeKind.PERMANENT)
        self.assertEqual(outcome.error_class, "CredentialsMissingError")
        self.assertIn("KEEPA_API_KEY", outcome.message)
        with self.session() as db:
            self.assertEqual(db.get(Job, job_id).status, JobStatus.FAILED.value)


class MarketSyncSchedulerTestCase(SQLiteTestCase):
    def setUp(self) -> None:
        super().setUp()
        settings.price_data_api_key = "keepa-test-key"
        settings.market_sync_auto_enqueue = True
        settings.market_sync_interval_seconds = 3600
        settings.market_sync_scan_limit = 100

    def _seed(self) -> int:
        self.make_listing(1)
        self.make_listing(2)
        self.make_listing(3)
        self.make_listing(4, status="INACTIVE")
        with self.session() as db:
            entity = AsinEntity(asin="B00ASIN001")
            db.add(entity)
            db.add(MarketSnapshot(entity_type="LISTING", entity_id=2, source="keepa", captured_at=utc_now()))
            db.add(
                MarketSnapshot(
                    entity_type="LISTING",
                    entity_id=3,
                    source="keepa",
                    captured_at=utc_now() - timedelta(hours=7),
                )
            )
            db.commit()
            return int(entity.id)

    def test_due_entities_are_queued_once(self) -> None:
        asin_id = self._seed()

        self.assertEqual(enqueue_due_market_syncs(), 3)
        self.assertEqual(enqueue_due_market_syncs(), 0)

        with self.session() as db:
            rows = db.exec(select(Job).order_by(Job.id)).all()
        targets = [(row.scope_type, row.entity_id) for row in rows]
        self.assertEqual(targets, [("LISTING", 1), ("LISTING", 3), ("ASIN", asin_id)])
        self.assertTrue(all(row.job_type == JobType.SYNC_MARKET_DATA.value for row in rows))
        self.assertTrue(all(row.created_by == "scheduler" for row in rows))

    def test_nothing_queued_without_price_key_or_when_disabled(self) -> None:
        self._seed()
        settings.price_data_api_key = ""
        self.assertEqual(enqueue_due_market_syncs(), 0)
        settings.price_data_api_key = "keepa-test-key"
        settings.market_sync_auto_enqueue = False
        self.assertEqual(enqueue_due_market_syncs(), 0)


if __name__ == "__main__":
    unittest.main()

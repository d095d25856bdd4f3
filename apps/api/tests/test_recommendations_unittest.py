import unittest
from unittest.mock import patch

from sqlmodel import select

from db_support import SQLiteTestCase
from listing_ops.core.config import settings
from listing_ops.core.exceptions import (
    EntityLockBusyError,
    EntityNotFoundError,
    MarketplacePublishError,
    RecommendationStateError,
)
from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import Job, JobStatus, JobType, ScopeType
from listing_ops.models.listings import Listing
from listing_ops.models.recommendations import Recommendation, RecommendationStatus
from listing_ops.services import job_store as store
from listing_ops.services.entity_lock import entity_lock_key
from listing_ops.services.feature_store import save_features
from listing_ops.services.job_executor import OutcomeKind, execute_job
from listing_ops.services.publish_jobs import create_publish_job
from listing_ops.services.recommendations import (
    accept_recommendation,
    apply_recommendation,
    get_recommendation,
    list_recommendation_events,
    list_recommendations,
    regenerate_recommendations,
    reject_recommendation,
    snooze_recommendation,
)

_MARGIN_AT_RISK = "MARGIN_AT_RISK_COMPONENT_COST"


class RecommendationsTestCase(SQLiteTestCase):
    def setUp(self) -> None:
        super().setUp()
        settings.guardrail_min_margin = 0.25

    def _seed_features(self, entity_id: int = 7, margin: float = 0.20) -> None:
        with self.session() as db:
            save_features(db, "LISTING", entity_id, {"margin": margin, "break_even_price_inc_vat": 10.0})
            db.commit()

    def _regenerate(self, entity_id: int = 7) -> dict:
        with self.session() as db:
            return regenerate_recommendations(db, "LISTING", entity_id)

    def _open(self, entity_id: int = 7) -> list[Recommendation]:
        with self.session() as db:
            return list_recommendations(db, status="OPEN", entity_type="LISTING", entity_id=entity_id)

    def _add_recommendation(self, entity_id: int, action_payload: dict, entity_type: str = "LISTING") -> int:
        with self.session() as db:
            row = Recommendation(
                recommendation_type="STOCK_INCREASE_STOCKOUT_RISK",
                entity_type=entity_type,
                entity_id=entity_id,
                action_payload=action_payload,
            )
            db.add(row)
            db.commit()
            return int(row.id)

    def test_generation_cites_feature_snapshot(self) -> None:
        self._seed_features()
        summary = self._regenerate()

        self.assertEqual(summary["generated"], 1)
        self.assertEqual(summary["recommendation_types"], [_MARGIN_AT_RISK])
        with self.session() as db:
            snapshot = db.exec(select(FeatureSnapshot)).one()
            row = get_recommendation(db, summary["recommendation_ids"][0])
            events = list_recommendation_events(db, int(row.id))
        self.assertEqual(row.status, RecommendationStatus.OPEN.value)
        self.assertEqual(row.evidence["feature_snapshot_id"], snapshot.id)
        self.assertEqual(row.evidence["values"]["margin"], 0.20)
        self.assertIsNotNone(row.expires_at)
        self.assertEqual([event.event_type for event in events], ["GENERATED"])

    def test_regeneration_supersedes_only_open_rows(self) -> None:
        self._seed_features()
        first = self._regenerate()["recommendation_ids"][0]
        with self.session() as db:
            accept_recommendation(db, first, actor="ops")

        second = self._regenerate()["recommendation_ids"][0]
        third = self._regenerate()["recommendation_ids"][0]
        with self.session() as db:
            reject_recommendation(db, third, reason="not now")
        fourth = self._regenerate()["recommendation_ids"][0]

        with self.session() as db:
            statuses = {rid: get_recommendation(db, rid).status for rid in (first, second, third, fourth)}
            superseded_events = list_recommendation_events(db, second)
        self.assertEqual(
            statuses,
            {
                first: RecommendationStatus.ACCEPTED.value,
                second: RecommendationStatus.SUPERSEDED.value,
                third: RecommendationStatus.REJECTED.value,
                fourth: RecommendationStatus.OPEN.value,
            },
        )
        self.assertEqual(superseded_events[-1].event_type, "SUPERSEDED")
        self.assertEqual([row.id for row in self._open()], [fourth])

    def test_regenerate_refuses_when_entity_is_locked(self) -> None:
        self._seed_features()
        key = entity_lock_key("LISTING", 7)
        self.assertTrue(self.locker.try_acquire(key))
        try:
            with self.assertRaises(EntityLockBusyError):
                self._regenerate()
        finally:
            self.locker.release(key)
        self.assertEqual(self._open(), [])

    def test_generation_computes_features_when_missing(self) -> None:
        self.make_listing(9)
        summary = self._regenerate(9)
        self.assertIsNotNone(summary["feature_snapshot_id"])
        with self.session() as db:
            self.assertEqual(len(db.exec(select(FeatureSnapshot)).all()), 1)

    def test_contending_generation_jobs_leave_one_open_set(self) -> None:
        self._seed_features()
        with self.session() as db:
            ids = [
                int(
                    store.enqueue_job(
                        db,
                        job_type=JobType.GENERATE_RECOMMENDATIONS,
                        scope_type=ScopeType.LISTING,
                        entity_id=7,
                        input_payload={"request": index},
                    ).id
                )
                for index in range(2)
            ]
            db.commit()
        job1, job2 = ids
        self.assertEqual(len(store.claim_jobs(2, worker_id="w1")), 2)

        key = entity_lock_key("LISTING", 7)
        self.assertTrue(self.locker.try_acquire(key))
        try:
            blocked = execute_job(job1, worker_id="w1")
        finally:
            self.locker.release(key)
        finished = execute_job(job2, worker_id="w1")

        self.assertIs(blocked.kind, OutcomeKind.CONFLICT)
        self.assertIs(finished.kind, OutcomeKind.SUCCEEDED)

        self.assertEqual([row.id for row in store.claim_jobs(1, worker_id="w1", now=self.later(60))], [job1])
        retried = execute_job(job1, worker_id="w1")
        self.assertIs(retried.kind, OutcomeKind.SUCCEEDED)

        with self.session() as db:
            self.assertEqual(db.get(Job, job1).status, JobStatus.SUCCEEDED.value)
            self.assertEqual(db.get(Job, job2).status, JobStatus.SUCCEEDED.value)
            every = db.exec(select(Recommendation).where(Recommendation.entity_id == 7)).all()
        open_types = [row.recommendation_type for row in every if row.status == RecommendationStatus.OPEN.value]
        self.assertEqual(open_types, [_MARGIN_AT_RISK])
        self.assertEqual(len(every), 2)
        self.assertEqual(
            {row.generation_job_id for row in every if row.status == RecommendationStatus.OPEN.value},
            {job1},
        )

    def test_lifecycle_transitions_require_open(self) -> None:
        self._seed_features()
        rid = self._regenerate()["recommendation_ids"][0]
        with self.session() as db:
            snoozed = snooze_recommendation(db, rid, days=3, reason="waiting on supplier")
            self.assertEqual(snoozed.status, RecommendationStatus.SNOOZED.value)
            self.assertIsNotNone(snoozed.snoozed_until)
            with self.assertRaises(RecommendationStateError):
                accept_recommendation(db, rid)
            with self.assertRaises(RecommendationStateError):
                reject_recommendation(db, rid)
            with self.assertRaises(EntityNotFoundError):
                get_recommendation(db, 999)
            events = list_recommendation_events(db, rid)
        self.assertEqual(events[-1].details, {"snooze_days": 3})
        self.assertEqual(events[-1].reason, "waiting on supplier")

    def test_apply_creates_publish_job_and_marks_applied_on_success(self) -> None:
        self.make_listing(8, available_quantity=40)
        rid = self._add_recommendation(8, {"action": "CHANGE_STOCK", "suggested_quantity": 60})

        with self.session() as db:
            row, job, created = apply_recommendation(db, rid, actor="ops", reason="restock")
            job_id = int(job.id)
            self.assertTrue(created)
            self.assertEqual(row.status, RecommendationStatus.ACCEPTED.value)
            self.assertEqual(row.applied_job_id, job_id)
            self.assertEqual(job.job_type, JobType.PUBLISH_STOCK_CHANGE.value)
            self.assertEqual(job.input_payload, {"available_quantity": 60})
            self.assertEqual(job.job_metadata["recommendation_id"], rid)
            with self.assertRaises(RecommendationStateError):
                apply_recommendation(db, rid)

        store.claim_jobs(1, worker_id="w1")
        outcome = execute_job(job_id, worker_id="w1")

        self.assertIs(outcome.kind, OutcomeKind.SUCCEEDED)
        self.assertTrue(outcome.result["marketplace"]["simulated"])
        with self.session() as db:
            self.assertEqual(get_recommendation(db, rid).status, RecommendationStatus.APPLIED.value)
            self.assertEqual(db.get(Listing, 8).available_quantity, 60)
            event_types = [event.event_type for event in list_recommendation_events(db, rid)]
        self.assertEqual(event_types, ["ACCEPTED", "APPLY_REQUESTED", "APPLIED"])

    def test_apply_links_to_identical_pending_publish(self) -> None:
        self.make_listing(8, available_quantity=40)
        with self.session() as db:
            queued, _ = create_publish_job(db, 8, JobType.PUBLISH_STOCK_CHANGE, {"available_quantity": 60})
            queued_id = int(queued.id)
        rid = self._add_recommendation(8, {"action": "CHANGE_STOCK", "suggested_quantity": 60})

        with self.session() as db:
            row, job, created = apply_recommendation(db, rid, actor="ops")
            self.assertFalse(created)
            self.assertEqual(job.id, queued_id)
            self.assertEqual(row.applied_job_id, queued_id)
            self.assertEqual(job.job_metadata["recommendation_ids"], [rid])

        store.claim_jobs(1, worker_id="w1")
        outcome = execute_job(queued_id, worker_id="w1")

        self.assertIs(outcome.kind, OutcomeKind.SUCCEEDED)
        with self.session() as db:
            self.assertEqual(get_recommendation(db, rid).status, RecommendationStatus.APPLIED.value)
            stock_jobs = db.exec(select(Job).where(Job.job_type == JobType.PUBLISH_STOCK_CHANGE.value)).all()
        self.assertEqual([row.id for row in stock_jobs], [queued_id])

    def test_apply_refuses_when_identical_publish_left_pending(self) -> None:
        self.make_listing(8, available_quantity=40)
        with self.session() as db:
            queued, _ = create_publish_job(db, 8, JobType.PUBLISH_STOCK_CHANGE, {"available_quantity": 60})
            queued_id = int(queued.id)
        rid = self._add_recommendation(8, {"action": "CHANGE_STOCK", "suggested_quantity": 60})

        with self.session() as db:
            with patch(
                "listing_ops.services.recommendations.create_publish_job",
                return_value=(db.get(Job, queued_id), False),
            ), patch("listing_ops.services.recommendations.link_recommendation", return_value=None):
                with self.assertRaises(RecommendationStateError):
                    apply_recommendation(db, rid)
        with self.session() as db:
            row = get_recommendation(db, rid)
        self.assertEqual(row.status, RecommendationStatus.OPEN.value)
        self.assertIsNone(row.applied_job_id)

    def test_apply_marks_failed_when_publish_is_rejected(self) -> None:
        self.make_listing(8, price_inc_vat=19.50)
        rid = self._add_recommendation(8, {"action": "CHANGE_PRICE", "suggested_price_inc_vat": 19.99})
        with self.session() as db:
            accept_recommendation(db, rid)
            _, job, _ = apply_recommendation(db, rid)
            job_id = int(job.id)

        store.claim_jobs(1, worker_id="w1")
        rejection = MarketplacePublishError("listing INVALID", retryable=False)
        with patch("listing_ops.services.marketplace_client.publish_price", side_effect=rejection):
            outcome = execute_job(job_id, worker_id="w1")

        self.assertIs(outcome.kind, OutcomeKind.PERMANENT)
        with self.session() as db:
            row = get_recommendation(db, rid)
            self.assertEqual(row.status, RecommendationStatus.FAILED.value)
            self.assertEqual(db.get(Listing, 8).price_inc_vat, 19.50)

    def test_apply_rejects_unsupported_targets(self) -> None:
        asin_rec = self._add_recommendation(3, {"action": "CHANGE_PRICE", "suggested_price_inc_vat": 9.0}, "ASIN")
        review = self._add_recommendation(3, {"action": "REVIEW_COSTS"})
        with self.session() as db:
            with self.assertRaises(RecommendationStateError):
                apply_recommendation(db, asin_rec)
            with self.assertRaises(RecommendationStateError):
                apply_recommendation(db, review)


if __name__ == "__main__":
    unittest.main()

import logging
from datetime import timedelta
from typing import Any

from sqlmodel import Session, select

from listing_ops.core.config import settings
from listing_ops.core.database import is_postgres
from listing_ops.core.exceptions import (
    EntityNotFoundError,
    InvalidJobInputError,
    RecommendationStateError,
)
from listing_ops.models.jobs import Job, JobType, ScopeType, utc_now
from listing_ops.models.recommendations import (
    Recommendation,
    RecommendationEvent,
    RecommendationStatus,
)
from listing_ops.services.entity_lock import with_entity_lock
from listing_ops.services.feature_store import compute_and_save_features, get_latest_features
from listing_ops.services.publish_jobs import create_publish_job, link_recommendation
from listing_ops.services.recommendation_rules import build_candidates

_LOGGER = logging.getLogger(__name__)

RECOMMENDATION_ENTITY_TYPES = (ScopeType.LISTING.value, ScopeType.ASIN.value)


def _record_event(
    db: Session,
    recommendation: Recommendation,
    event_type: str,
    *,
    job_id: int | None = None,
    details: dict[str, Any] | None = None,
    reason: str = "",
    created_by: str = "system",
) -> RecommendationEvent:
    event = RecommendationEvent(
        recommendation_id=int(recommendation.id or 0),
        event_type=event_type,
        job_id=job_id,
        details=dict(details or {}),
        reason=str(reason or "")[:1000],
        created_by=str(created_by or "system"),
    )
    db.add(event)
    return event


def _open_recommendations(db: Session, entity_type: str, entity_id: int) -> list[Recommendation]:
    stmt = select(Recommendation).where(
        Recommendation.entity_type == entity_type,
        Recommendation.entity_id == int(entity_id),
        Recommendation.status == RecommendationStatus.OPEN.value,
    )
    if is_postgres(db):
        stmt = stmt.with_for_update()
    return list(db.exec(stmt).all())


def generate_recommendations(
    db: Session,
    entity_type: str,
    entity_id: int,
    *,
    job_id: int | None = None,
) -> dict[str, Any]:
    """Supersede the entity's OPEN recommendations and insert a fresh set.

    Flush-only, so both steps land in the caller's commit. Callers must hold
    the entity lock; ``regenerate_recommendations`` is the locked entry point.
    """
    kind = str(entity_type or "").upper()
    if kind not in RECOMMENDATION_ENTITY_TYPES:
        raise InvalidJobInputError(f"recommendations are not generated for entity_type {entity_type!r}")

    snapshot = get_latest_features(db, kind, entity_id)
    if snapshot is None:
        snapshot, _ = compute_and_save_features(db, kind, entity_id)

    now = utc_now()
    superseded = _open_recommendations(db, kind, entity_id)
    for row in superseded:
        row.status = RecommendationStatus.SUPERSEDED.value
        row.updated_at = now
        db.add(row)
        _record_event(db, row, RecommendationStatus.SUPERSEDED.value, job_id=job_id)
    db.flush()

    created: list[Recommendation] = []
    expires_at = now + timedelta(days=int(settings.recommendation_expiry_days))
    for candidate in build_candidates(kind, snapshot):
        row = Recommendation(
            recommendation_type=candidate["recommendation_type"],
            entity_type=kind,
            entity_id=int(entity_id),
            status=RecommendationStatus.OPEN.value,
            action_payload=candidate["action_payload"],
            evidence=candidate["evidence"],
            guardrails=candidate.get("guardrails") or {},
            impact=candidate.get("impact") or {},
            confidence=candidate["confidence"],
            confidence_score=float(candidate["confidence_score"]),
            generation_job_id=job_id,
            generated_at=now,
            expires_at=expires_at,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        _record_event(db, row, "GENERATED", job_id=job_id)
        created.append(row)

    _LOGGER.info(
        "recommendations_generated entity_type=%s entity_id=%s superseded=%s created=%s job_id=%s",
        kind,
        entity_id,
        len(superseded),
        len(created),
        job_id,
    )
    return {
        "entity_type": kind,
        "entity_id": int(entity_id),
        "feature_snapshot_id": snapshot.id,
        "superseded": len(superseded),
        "generated": len(created),
        "recommendation_ids": [int(row.id or 0) for row in created],
        "recommendation_types": [row.recommendation_type for row in created],
    }


def regenerate_recommendations(
    db: Session,
    entity_type: str,
    entity_id: int,
    *,
    job_id: int | None = None,
) -> dict[str, Any]:
    kind = str(entity_type or "").upper()

    def _generate_and_commit() -> dict[str, Any]:
        try:
            summary = generate_recommendations(db, kind, entity_id, job_id=job_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return summary

    return with_entity_lock(kind, entity_id, _generate_and_commit)


def get_recommendation(db: Session, recommendation_id: int) -> Recommendation:
    row = db.get(Recommendation, recommendation_id)
    if row is None:
        raise EntityNotFoundError("recommendation", recommendation_id)
    return row


def list_recommendations(
    db: Session,
    *,
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    recommendation_type: str | None = None,
    limit: int = 50,
) -> list[Recommendation]:
    stmt = select(Recommendation)
    if status:
        stmt = stmt.where(Recommendation.status == str(status).upper())
    if entity_type:
        stmt = stmt.where(Recommendation.entity_type == str(entity_type).upper())
    if entity_id is not None:
        stmt = stmt.where(Recommendation.entity_id == int(entity_id))
    if recommendation_type:
        stmt = stmt.where(Recommendation.recommendation_type == str(recommendation_type).upper())
    stmt = stmt.order_by(Recommendation.generated_at.desc(), Recommendation.id.desc()).limit(
        min(max(int(limit), 1), 200)
    )
    return list(db.exec(stmt).all())


def list_recommendation_events(db: Session, recommendation_id: int) -> list[RecommendationEvent]:
    stmt = (
        select(RecommendationEvent)
        .where(RecommendationEvent.recommendation_id == recommendation_id)
        .order_by(RecommendationEvent.id.asc())
    )
    return list(db.exec(stmt).all())


def _require_status(row: Recommendation, allowed: set[str], action: str) -> None:
    if row.status not in allowed:
        raise RecommendationStateError(f"cannot {action} recommendation {row.id} in status {row.status}")


def accept_recommendation(db: Session, recommendation_id: int, *, actor: str = "user", reason: str = "") -> Recommendation:
    row = get_recommendation(db, recommendation_id)
    _require_status(row, {RecommendationStatus.OPEN.value}, "accept")
    now = utc_now()
    row.status = RecommendationStatus.ACCEPTED.value
    row.accepted_at = now
    row.updated_at = now
    db.add(row)
    _record_event(db, row, RecommendationStatus.ACCEPTED.value, reason=reason, created_by=actor)
    db.commit()
    db.refresh(row)
    return row


def reject_recommendation(db: Session, recommendation_id: int, *, actor: str = "user", reason: str = "") -> Recommendation:
    row = get_recommendation(db, recommendation_id)
    _require_status(row, {RecommendationStatus.OPEN.value}, "reject")
    now = utc_now()
    row.status = RecommendationStatus.REJECTED.value
    row.rejected_at = now
    row.updated_at = now
    db.add(row)
    _record_event(db, row, RecommendationStatus.REJECTED.value, reason=reason, created_by=actor)
    db.commit()
    db.refresh(row)
    return row


def snooze_recommendation(
    db: Session,
    recommendation_id: int,
    *,
    days: int | None = None,
    actor: str = "user",
    reason: str = "",
) -> Recommendation:
    row = get_recommendation(db, recommendation_id)
    _require_status(row, {RecommendationStatus.OPEN.value}, "snooze")
    snooze_days = max(int(days or settings.recommendation_snooze_days), 1)
    now = utc_now()
    row.status = RecommendationStatus.SNOOZED.value
    row.snoozed_until = now + timedelta(days=snooze_days)
    row.updated_at = now
    db.add(row)
    _record_event(
        db,
        row,
        RecommendationStatus.SNOOZED.value,
        details={"snooze_days": snooze_days},
        reason=reason,
        created_by=actor,
    )
    db.commit()
    db.refresh(row)
    return row


def apply_recommendation(
    db: Session,
    recommendation_id: int,
    *,
    actor: str = "user",
    reason: str = "",
) -> tuple[Recommendation, Job, bool]:
    """Turn an OPEN or ACCEPTED price/stock recommendation into a publish job.

    The recommendation moves to APPLIED or FAILED once the publish job
    reaches a terminal state.
    """
    row = get_recommendation(db, recommendation_id)
    _require_status(
        row,
        {RecommendationStatus.OPEN.value, RecommendationStatus.ACCEPTED.value},
        "apply",
    )
    if row.applied_job_id is not None:
        raise RecommendationStateError(f"recommendation {row.id} already has publish job {row.applied_job_id}")
    if row.entity_type != ScopeType.LISTING.value:
        raise RecommendationStateError(f"recommendation {row.id} does not target a listing")

    action = str((row.action_payload or {}).get("action") or "")
    if action == "CHANGE_PRICE":
        job_type = JobType.PUBLISH_PRICE_CHANGE
        payload: dict[str, Any] = {"price_inc_vat": row.action_payload["suggested_price_inc_vat"]}
    elif action == "CHANGE_STOCK":
        job_type = JobType.PUBLISH_STOCK_CHANGE
        payload = {"available_quantity": row.action_payload["suggested_quantity"]}
    else:
        raise RecommendationStateError(f"recommendation {row.id} action {action or 'unknown'} cannot be applied")

    recommendation_ref = int(row.id or 0)
    job, created = create_publish_job(
        db,
        row.entity_id,
        job_type,
        payload,
        reason=reason or f"apply recommendation {recommendation_ref}",
        actor=actor,
        metadata={"recommendation_id": recommendation_ref},
    )
    if not created:
        # An identical publish is already queued; report its outcome here too.
        existing_id = int(job.id)
        linked = link_recommendation(db, existing_id, recommendation_ref)
        if linked is None:
            db.rollback()
            raise RecommendationStateError(
                f"publish job {existing_id} for recommendation {recommendation_ref} is no longer pending; retry apply"
            )
        job = linked
    row = get_recommendation(db, recommendation_ref)
    now = utc_now()
    if row.status == RecommendationStatus.OPEN.value:
        row.status = RecommendationStatus.ACCEPTED.value
        row.accepted_at = now
        _record_event(db, row, RecommendationStatus.ACCEPTED.value, reason=reason, created_by=actor)
    row.applied_job_id = int(job.id or 0)
    row.updated_at = now
    db.add(row)
    _record_event(
        db,
        row,
        "APPLY_REQUESTED",
        job_id=int(job.id or 0),
        details={"job_type": job_type.value, "payload": payload, "created": created},
        reason=reason,
        created_by=actor,
    )
    db.commit()
    db.refresh(row)
    db.refresh(job)
    return row, job, created


def mark_recommendation_applied(db: Session, recommendation_id: int, *, job_id: int) -> Recommendation | None:
    """Flush-only; the caller commits with the publish job's outcome."""
    row = db.get(Recommendation, recommendation_id)
    if row is None or row.status != RecommendationStatus.ACCEPTED.value:
        return None
    row.status = RecommendationStatus.APPLIED.value
    row.updated_at = utc_now()
    db.add(row)
    _record_event(db, row, RecommendationStatus.APPLIED.value, job_id=job_id)
    db.flush()
    return row


def mark_recommendation_failed(
    db: Session,
    recommendation_id: int,
    *,
    job_id: int,
    message: str,
) -> Recommendation | None:
    row = db.get(Recommendation, recommendation_id)
    if row is None or row.status != RecommendationStatus.ACCEPTED.value:
        return None
    row.status = RecommendationStatus.FAILED.value
    row.updated_at = utc_now()
    db.add(row)
    _record_event(db, row, RecommendationStatus.FAILED.value, job_id=job_id, details={"error": message[:500]})
    db.flush()
    return row

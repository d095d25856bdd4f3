from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from listing_ops.core.database import get_session
from listing_ops.core.exceptions import ListingOpsError
from listing_ops.schemas.jobs import (
    JobRead,
    RecommendationApplyRead,
    RecommendationDecisionRequest,
    RecommendationRead,
    RecommendationSnoozeRequest,
)
from listing_ops.services.recommendations import (
    accept_recommendation,
    apply_recommendation,
    get_recommendation,
    list_recommendations,
    reject_recommendation,
    snooze_recommendation,
)

from .common import http_error

router = APIRouter(prefix="/recommendations", tags=["recommendations"])


@router.get("", response_model=list[RecommendationRead])
def read_recommendations(
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    recommendation_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_session),
):
    return list_recommendations(
        db,
        status=status,
        entity_type=entity_type,
        entity_id=entity_id,
        recommendation_type=recommendation_type,
        limit=limit,
    )


@router.get("/{recommendation_id}", response_model=RecommendationRead)
def read_recommendation(recommendation_id: int, db: Session = Depends(get_session)):
    try:
        return get_recommendation(db, recommendation_id)
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.post("/{recommendation_id}/accept", response_model=RecommendationRead)
def accept(
    recommendation_id: int,
    payload: RecommendationDecisionRequest | None = None,
    db: Session = Depends(get_session),
):
    try:
        return accept_recommendation(db, recommendation_id, actor="api", reason=payload.reason if payload else "")
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.post("/{recommendation_id}/reject", response_model=RecommendationRead)
def reject(
    recommendation_id: int,
    payload: RecommendationDecisionRequest | None = None,
    db: Session = Depends(get_session),
):
    try:
        return reject_recommendation(db, recommendation_id, actor="api", reason=payload.reason if payload else "")
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.post("/{recommendation_id}/snooze", response_model=RecommendationRead)
def snooze(
    recommendation_id: int,
    payload: RecommendationSnoozeRequest | None = None,
    db: Session = Depends(get_session),
):
    request = payload or RecommendationSnoozeRequest()
    try:
        return snooze_recommendation(
            db,
            recommendation_id,
            days=request.days,
            actor="api",
            reason=request.reason,
        )
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.post("/{recommendation_id}/apply", response_model=RecommendationApplyRead)
def apply(
    recommendation_id: int,
    payload: RecommendationDecisionRequest | None = None,
    db: Session = Depends(get_session),
):
    try:
        row, job, created = apply_recommendation(
            db,
            recommendation_id,
            actor="api",
            reason=payload.reason if payload else "",
        )
    except ListingOpsError as exc:
        raise http_error(exc) from exc
    return RecommendationApplyRead(
        recommendation=RecommendationRead.model_validate(row.model_dump()),
        job=JobRead.model_validate(job.model_dump()),
        created=created,
    )

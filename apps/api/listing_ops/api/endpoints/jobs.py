from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlmodel import Session

from listing_ops.core.database import get_session
from listing_ops.core.exceptions import ListingOpsError
from listing_ops.schemas.jobs import (
    JobCancelRequest,
    JobConflictRead,
    JobCreateRequest,
    JobDeadLetterRead,
    JobRead,
    JobStatsRead,
)
from listing_ops.services.job_store import cancel_job, count_jobs_by_status, get_job, list_dead_letters, list_jobs
from listing_ops.services.job_submission import submit_job

from .common import http_error

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post(
    "",
    response_model=JobRead,
    status_code=201,
    responses={409: {"model": JobConflictRead}},
)
def create_job(payload: JobCreateRequest, db: Session = Depends(get_session)):
    try:
        result = submit_job(
            db,
            job_type=payload.job_type,
            scope_type=payload.scope_type,
            entity_id=payload.entity_id,
            input_payload=payload.input_payload,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
            created_by="api",
            reason=payload.reason,
            allow_guardrail_violations=payload.allow_guardrail_violations,
        )
    except ListingOpsError as exc:
        raise http_error(exc) from exc
    if not result.created:
        return JSONResponse(
            status_code=409,
            content={
                "detail": f"equivalent publish job {result.job.id} is already pending",
                "existing_job_id": int(result.job.id),
            },
        )
    return result.job


@router.get("", response_model=list[JobRead])
def read_jobs(
    status: str | None = None,
    job_type: str | None = None,
    scope_type: str | None = None,
    entity_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_session),
):
    try:
        return list_jobs(
            db,
            status=status,
            job_type=job_type,
            scope_type=scope_type,
            entity_id=entity_id,
            limit=limit,
            offset=offset,
        )
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.get("/stats", response_model=JobStatsRead)
def read_job_stats(db: Session = Depends(get_session)):
    try:
        counts = count_jobs_by_status(db)
    except ListingOpsError as exc:
        raise http_error(exc) from exc
    return JobStatsRead(counts=counts, total=sum(counts.values()))


@router.get("/dead-letters", response_model=list[JobDeadLetterRead])
def read_dead_letters(
    limit: int = Query(default=50, ge=1, le=200),
    include_resolved: bool = False,
    db: Session = Depends(get_session),
):
    try:
        return list_dead_letters(db, limit=limit, include_resolved=include_resolved)
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}", response_model=JobRead)
def read_job(job_id: int, db: Session = Depends(get_session)):
    try:
        row = get_job(db, job_id)
    except ListingOpsError as exc:
        raise http_error(exc) from exc
    if row is None:
        raise HTTPException(status_code=404, detail="job not found")
    return row


@router.post("/{job_id}/cancel", response_model=JobRead)
def cancel(job_id: int, payload: JobCancelRequest | None = None, db: Session = Depends(get_session)):
    try:
        return cancel_job(db, job_id, actor="api", reason=payload.reason if payload else "")
    except ListingOpsError as exc:
        raise http_error(exc) from exc

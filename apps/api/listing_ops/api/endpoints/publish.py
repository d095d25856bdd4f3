from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlmodel import Session

from listing_ops.core.database import get_session
from listing_ops.core.exceptions import ListingOpsError
from listing_ops.schemas.jobs import JobConflictRead, JobRead, PublishPreviewRead, PublishRequest
from listing_ops.services.publish_jobs import preview_publish
from listing_ops.services.job_submission import submit_job

from .common import http_error

router = APIRouter(prefix="/listings", tags=["publish"])


@router.post("/{listing_id}/publish/preview", response_model=PublishPreviewRead)
def preview(listing_id: int, payload: PublishRequest, db: Session = Depends(get_session)):
    try:
        return preview_publish(db, listing_id, payload.job_type, payload.input_payload)
    except ListingOpsError as exc:
        raise http_error(exc) from exc


@router.post(
    "/{listing_id}/publish",
    response_model=JobRead,
    status_code=201,
    responses={409: {"model": JobConflictRead}},
)
def publish(listing_id: int, payload: PublishRequest, db: Session = Depends(get_session)):
    try:
        result = submit_job(
            db,
            job_type=payload.job_type,
            scope_type="LISTING",
            entity_id=listing_id,
            input_payload=payload.input_payload,
            priority=payload.priority,
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

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlmodel import Session

from listing_ops.core.exceptions import InvalidJobInputError
from listing_ops.models.jobs import PUBLISH_JOB_TYPES, Job, JobType, ScopeType
from listing_ops.services.job_store import enqueue_job, store_guard
from listing_ops.services.publish_jobs import create_publish_job

_LOGGER = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    job: Job
    created: bool


def submit_job(
    db: Session,
    *,
    job_type: JobType | str,
    scope_type: ScopeType | str = ScopeType.GLOBAL,
    entity_id: int | None = None,
    input_payload: dict[str, Any] | None = None,
    priority: int | None = None,
    max_attempts: int | None = None,
    created_by: str = "api",
    reason: str = "",
    allow_guardrail_violations: bool = False,
) -> SubmitResult:
    """Insert a job. Publish jobs go through the duplicate check and guardrails.

    ``created=False`` means an identical PENDING publish job already exists
    and is returned instead.
    """
    try:
        resolved = JobType(str(getattr(job_type, "value", job_type)).upper())
    except ValueError as exc:
        raise InvalidJobInputError(f"unknown job_type {job_type!r}") from exc

    if resolved in PUBLISH_JOB_TYPES:
        scope = str(getattr(scope_type, "value", scope_type)).upper()
        if scope != ScopeType.LISTING.value or entity_id is None:
            raise InvalidJobInputError(f"{resolved.value} requires LISTING scope and an entity_id")
        with store_guard("submit_publish"):
            job, created = create_publish_job(
                db,
                int(entity_id),
                resolved,
                dict(input_payload or {}),
                reason=reason,
                actor=created_by,
                priority=priority,
                max_attempts=max_attempts,
                allow_guardrail_violations=allow_guardrail_violations,
            )
        return SubmitResult(job=job, created=created)

    with store_guard("submit"):
        job = enqueue_job(
            db,
            job_type=resolved,
            scope_type=scope_type,
            entity_id=entity_id,
            input_payload=input_payload,
            priority=priority,
            max_attempts=max_attempts,
            created_by=created_by,
            metadata={"reason": reason} if reason else None,
        )
        db.commit()
        db.refresh(job)
    _LOGGER.info(
        "job_submitted job_id=%s job_type=%s scope=%s:%s priority=%s",
        job.id,
        job.job_type,
        job.scope_type,
        job.entity_id,
        job.priority,
    )
    return SubmitResult(job=job, created=True)

"""Run one claimed job and record its outcome.

This is the only place that turns handler results and typed errors into
status transitions. Success is committed in the same transaction as the
handler's writes, before the entity lock is released.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session

from listing_ops.core.config import settings
from listing_ops.core.database import engine
from listing_ops.core.exceptions import (
    EntityLockBusyError,
    InvalidJobInputError,
    MarketplacePublishError,
    PermanentJobError,
    RetryableJobError,
    TransientInfrastructureError,
)
from listing_ops.models.jobs import Job, JobStatus, JobType
from listing_ops.services.entity_lock import entity_lock
from listing_ops.services.job_handlers import LOCKED_JOB_TYPES, JobContext, handle_terminal_failure, resolve_handler
from listing_ops.services.job_store import (
    build_log_entry,
    mark_failed,
    mark_retry,
    mark_succeeded,
    store_guard,
    write_dead_letter,
)
from listing_ops.services.telemetry import JobTracePayload, emit_job_trace

_LOGGER = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


@dataclass
class JobOutcome:
    kind: OutcomeKind
    result: dict[str, Any] = field(default_factory=dict)
    error_class: str = ""
    message: str = ""
    status: str = ""
    duration_ms: int = 0

    @classmethod
    def from_error(cls, kind: OutcomeKind, exc: BaseException) -> "JobOutcome":
        return cls(kind=kind, error_class=exc.__class__.__name__, message=str(exc)[:2000])


def _is_disconnect(exc: Exception) -> bool:
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def classify_error(exc: Exception) -> OutcomeKind:
    """Map a handler exception to an outcome.

    Only lost connections and pool exhaustion are transient. Other driver
    errors (a bad statement, a constraint) spend attempts like any retryable
    failure so they end in FAILED.
    """
    if isinstance(exc, EntityLockBusyError):
        return OutcomeKind.CONFLICT
    if isinstance(exc, (TransientInfrastructureError, PoolTimeoutError)) or _is_disconnect(exc):
        return OutcomeKind.TRANSIENT
    if isinstance(exc, MarketplacePublishError):
        return OutcomeKind.RETRYABLE if exc.retryable else OutcomeKind.PERMANENT
    if isinstance(exc, PermanentJobError):
        return OutcomeKind.PERMANENT
    if isinstance(exc, RetryableJobError):
        return OutcomeKind.RETRYABLE
    return OutcomeKind.RETRYABLE


def retry_delay_seconds(attempts: int) -> float:
    return max(int(attempts), 1) * float(settings.job_retry_base_seconds)


@contextmanager
def _scope_lock(job: Job, job_type: JobType) -> Iterator[None]:
    if job_type not in LOCKED_JOB_TYPES or job.entity_id is None:
        yield
        return
    with entity_lock(job.scope_type, int(job.entity_id)) as acquired:
        if not acquired:
            raise EntityLockBusyError(job.scope_type, int(job.entity_id))
        yield


def _terminal_failure(db: Session, row: Job, message: str) -> None:
    if settings.job_dead_letter_enabled:
        write_dead_letter(db, row)
    handle_terminal_failure(db, row, message)


def record_outcome(db: Session, job_id: int, outcome: JobOutcome, *, worker_id: str) -> Job | None:
    """Apply ``outcome`` to a RUNNING job owned by ``worker_id`` and commit.

    Returns ``None`` when the row is no longer RUNNING for this worker, for
    example after stale recovery handed it to someone else.
    """
    row = db.get(Job, job_id)
    attempt = int(row.attempts) if row is not None else 0
    entry = build_log_entry(
        outcome.kind.value,
        attempt=attempt,
        worker_id=worker_id,
        error_class=outcome.error_class,
        message=outcome.message,
        duration_ms=outcome.duration_ms,
    )
    error = f"{outcome.error_class}: {outcome.message}" if outcome.error_class else outcome.message

    if outcome.kind is OutcomeKind.SUCCEEDED:
        updated = mark_succeeded(db, job_id, worker_id=worker_id, result=outcome.result, log_entry=entry)
    elif outcome.kind in {OutcomeKind.CONFLICT, OutcomeKind.TRANSIENT}:
        updated = mark_retry(
            db,
            job_id,
            worker_id=worker_id,
            delay_seconds=float(settings.job_lock_retry_delay_seconds),
            error=error,
            log_entry=entry,
            refund_attempt=True,
        )
    elif outcome.kind is OutcomeKind.RETRYABLE and row is not None and attempt < int(row.max_attempts):
        delay = retry_delay_seconds(attempt)
        entry["retry_in_seconds"] = delay
        updated = mark_retry(db, job_id, worker_id=worker_id, delay_seconds=delay, error=error, log_entry=entry)
    else:
        if outcome.kind is OutcomeKind.RETRYABLE:
            entry["event"] = "retries_exhausted"
        updated = mark_failed(db, job_id, worker_id=worker_id, error=error, log_entry=entry)
        if updated is not None:
            _terminal_failure(db, updated, error)

    if updated is None:
        db.rollback()
        _LOGGER.warning("job_outcome_dropped job_id=%s worker_id=%s outcome=%s", job_id, worker_id, outcome.kind.value)
        return None

    db.commit()
    db.refresh(updated)
    outcome.status = updated.status
    return updated


def _run_handler(db: Session, job: Job, worker_id: str, started: float) -> JobOutcome:
    try:
        job_type = JobType(job.job_type)
    except ValueError as exc:
        raise InvalidJobInputError(f"unknown job_type {job.job_type!r}") from exc
    handler = resolve_handler(job_type)
    with _scope_lock(job, job_type):
        try:
            result = handler(JobContext(db=db, job=job, worker_id=worker_id))
            outcome = JobOutcome(
                kind=OutcomeKind.SUCCEEDED,
                result=result,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            record_outcome(db, int(job.id), outcome, worker_id=worker_id)
        except Exception:
            db.rollback()
            raise
    return outcome


def execute_job(job_id: int, *, worker_id: str) -> JobOutcome:
    """Run the handler for a job this worker has claimed."""
    started = time.perf_counter()
    with Session(engine) as db:
        with store_guard("execute_load"):
            job = db.get(Job, job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            _LOGGER.warning("job_execute_skipped job_id=%s worker_id=%s", job_id, worker_id)
            return JobOutcome(kind=OutcomeKind.PERMANENT, error_class="JobStateError", message="job is not running")

        job_type_value = job.job_type
        scope_type, entity_id, attempt = job.scope_type, job.entity_id, int(job.attempts)
        _LOGGER.info(
            "job_start job_id=%s job_type=%s scope=%s:%s attempt=%s worker_id=%s",
            job_id,
            job_type_value,
            scope_type,
            entity_id,
            attempt,
            worker_id,
        )
        try:
            outcome = _run_handler(db, job, worker_id, started)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is OutcomeKind.RETRYABLE and not isinstance(exc, (RetryableJobError, MarketplacePublishError)):
                _LOGGER.exception("job_unexpected_error job_id=%s job_type=%s", job_id, job_type_value)
            outcome = JobOutcome.from_error(kind, exc)
            outcome.duration_ms = int((time.perf_counter() - started) * 1000)
            with store_guard("record_outcome"):
                record_outcome(db, job_id, outcome, worker_id=worker_id)

    _LOGGER.info(
        "job_finish job_id=%s job_type=%s outcome=%s status=%s duration_ms=%s error_class=%s",
        job_id,
        job_type_value,
        outcome.kind.value,
        outcome.status,
        outcome.duration_ms,
        outcome.error_class,
    )
    emit_job_trace(
        JobTracePayload(
            job_id=int(job_id),
            job_type=job_type_value,
            scope_type=scope_type,
            entity_id=entity_id,
            worker_id=worker_id,
            attempt=attempt,
            outcome=outcome.kind.value,
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            error_class=outcome.error_class,
            message=outcome.message,
            result=outcome.result,
        )
    )
    return outcome

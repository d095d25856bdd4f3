import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator

from sqlalchemy import func, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, select

from listing_ops.core.config import settings
from listing_ops.core.database import engine, is_postgres
from listing_ops.core.exceptions import (
    EntityNotFoundError,
    InvalidJobInputError,
    JobStateError,
    JobStoreUnavailableError,
)
from listing_ops.models.jobs import (
    Job,
    JobDeadLetter,
    JobStatus,
    JobType,
    ScopeType,
    as_utc,
    utc_now,
)

_LOGGER = logging.getLogger(__name__)

_STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


@contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Translate driver connectivity failures into ``JobStoreUnavailableError``."""
    try:
        yield
    except _STORE_ERRORS as exc:
        _LOGGER.warning(
            "job_store_unavailable operation=%s error_class=%s",
            operation,
            exc.__class__.__name__,
        )
        raise JobStoreUnavailableError(f"job store unavailable during {operation}") from exc


def build_log_entry(
    event: str,
    *,
    attempt: int,
    worker_id: str = "",
    error_class: str = "",
    message: str = "",
    duration_ms: int | None = None,
    **extra: Any,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "event": event,
        "attempt": int(attempt),
        "at": utc_now().isoformat(),
    }
    if worker_id:
        entry["worker_id"] = worker_id
    if error_class:
        entry["error_class"] = error_class
    if message:
        entry["message"] = str(message)[:2000]
    if duration_ms is not None:
        entry["duration_ms"] = int(duration_ms)
    entry.update(extra)
    return entry


def append_log(row: Job, entry: dict[str, Any]) -> None:
    entries = list(row.log_entries or [])
    entries.append(entry)
    row.log_entries = entries[-max(int(settings.job_log_max_entries), 1):]


def _normalize_scope(scope_type: ScopeType | str, entity_id: int | None) -> tuple[str, int | None]:
    try:
        scope = ScopeType(str(getattr(scope_type, "value", scope_type)))
    except ValueError as exc:
        raise InvalidJobInputError(f"unknown scope_type {scope_type!r}") from exc
    if scope is ScopeType.GLOBAL:
        return scope.value, None
    if entity_id is None or int(entity_id) <= 0:
        raise InvalidJobInputError(f"{scope.value} scoped jobs require a positive entity_id")
    return scope.value, int(entity_id)


def _normalize_job_type(job_type: JobType | str) -> str:
    try:
        return JobType(str(getattr(job_type, "value", job_type))).value
    except ValueError as exc:
        raise InvalidJobInputError(f"unknown job_type {job_type!r}") from exc


def enqueue_job(
    db: Session,
    *,
    job_type: JobType | str,
    scope_type: ScopeType | str = ScopeType.GLOBAL,
    entity_id: int | None = None,
    input_payload: dict[str, Any] | None = None,
    priority: int | None = None,
    max_attempts: int | None = None,
    delay_seconds: float = 0.0,
    created_by: str = "system",
    metadata: dict[str, Any] | None = None,
) -> Job:
    """Insert a PENDING job and flush it; the caller owns the commit."""
    now = utc_now()
    scope, target_id = _normalize_scope(scope_type, entity_id)
    resolved_priority = settings.job_default_priority if priority is None else int(priority)
    if not 1 <= resolved_priority <= 10:
        raise InvalidJobInputError("priority must be between 1 and 10")
    body = input_payload if isinstance(input_payload, dict) else {}
    row = Job(
        job_type=_normalize_job_type(job_type),
        scope_type=scope,
        entity_id=target_id,
        status=JobStatus.PENDING.value,
        priority=resolved_priority,
        attempts=0,
        max_attempts=max(int(max_attempts or settings.job_default_max_attempts), 1),
        scheduled_for=now + timedelta(seconds=max(float(delay_seconds), 0.0)),
        input_payload=dict(body),
        job_metadata=dict(metadata or {}),
        created_by=str(created_by or "system"),
        created_at=now,
        updated_at=now,
    )
    append_log(row, build_log_entry("enqueued", attempt=0, created_by=row.created_by))
    db.add(row)
    db.flush()
    return row


def find_pending_jobs(
    db: Session,
    *,
    job_type: JobType | str,
    scope_type: ScopeType | str,
    entity_id: int | None,
) -> list[Job]:
    scope, target_id = _normalize_scope(scope_type, entity_id)
    stmt = select(Job).where(
        Job.job_type == _normalize_job_type(job_type),
        Job.scope_type == scope,
        Job.status == JobStatus.PENDING.value,
    )
    if target_id is None:
        stmt = stmt.where(Job.entity_id.is_(None))
    else:
        stmt = stmt.where(Job.entity_id == target_id)
    return list(db.exec(stmt.order_by(Job.id.asc())).all())


def _select_claim_candidates(db: Session, size: int, now: datetime) -> list[int]:
    stmt = (
        select(Job.id)
        .where(
            Job.status == JobStatus.PENDING.value,
            Job.scheduled_for <= now,
            Job.attempts < Job.max_attempts,
        )
        .order_by(Job.priority.desc(), Job.scheduled_for.asc(), Job.id.asc())
        .limit(size)
    )
    if is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=True)
    return [int(job_id) for job_id in db.exec(stmt).all()]


def claim_jobs(batch_size: int, *, worker_id: str, now: datetime | None = None) -> list[Job]:
    """Move up to ``batch_size`` eligible jobs to RUNNING for ``worker_id``.

    Candidates are selected with ``FOR UPDATE SKIP LOCKED`` on PostgreSQL so
    concurrent claimers never wait on each other. Each row is then flipped
    with a conditional update; a row that is no longer PENDING is skipped.
    Store outages raise ``JobStoreUnavailableError`` instead of returning an
    empty batch.
    """
    size = max(int(batch_size), 1)
    claimed_at = now or utc_now()
    owner = str(worker_id or "worker")
    with store_guard("claim"):
        with Session(engine) as db:
            candidate_ids = _select_claim_candidates(db, size, claimed_at)
            if not candidate_ids:
                db.rollback()
                return []

            claimed_ids: list[int] = []
            for job_id in candidate_ids:
                result = db.connection().execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == JobStatus.PENDING.value,
                        Job.attempts < Job.max_attempts,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=claimed_at,
                        finished_at=None,
                        locked_by=owner,
                        attempts=Job.attempts + 1,
                        updated_at=claimed_at,
                    )
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
                else:
                    _LOGGER.debug("job_claim_skipped job_id=%s worker_id=%s", job_id, owner)

            if not claimed_ids:
                db.rollback()
                return []

            rows = db.exec(
                select(Job)
                .where(Job.id.in_(claimed_ids))
                .order_by(Job.priority.desc(), Job.scheduled_for.asc(), Job.id.asc())
            ).all()
            for row in rows:
                append_log(row, build_log_entry("claimed", attempt=row.attempts, worker_id=owner))
                db.add(row)
            db.commit()
            for row in rows:
                db.refresh(row)

    _LOGGER.info("job_claim worker_id=%s claimed=%s candidates=%s", owner, len(rows), len(candidate_ids))
    return list(rows)


def _load_running(db: Session, job_id: int, worker_id: str) -> Job | None:
    row = db.get(Job, job_id)
    if row is None:
        return None
    db.refresh(row)
    if row.status != JobStatus.RUNNING.value:
        return None
    if worker_id and str(row.locked_by or "") != worker_id:
        return None
    return row


def mark_succeeded(
    db: Session,
    job_id: int,
    *,
    worker_id: str,
    result: dict[str, Any],
    log_entry: dict[str, Any],
) -> Job | None:
    row = _load_running(db, job_id, worker_id)
    if row is None:
        return None
    now = utc_now()
    row.status = JobStatus.SUCCEEDED.value
    row.result_payload = dict(result or {})
    row.finished_at = now
    row.locked_by = ""
    row.updated_at = now
    append_log(row, log_entry)
    db.add(row)
    return row


def mark_retry(
    db: Session,
    job_id: int,
    *,
    worker_id: str,
    delay_seconds: float,
    error: str,
    log_entry: dict[str, Any],
    refund_attempt: bool = False,
) -> Job | None:
    row = _load_running(db, job_id, worker_id)
    if row is None:
        return None
    now = utc_now()
    if refund_attempt:
        row.attempts = max(int(row.attempts) - 1, 0)
    row.status = JobStatus.PENDING.value
    row.scheduled_for = now + timedelta(seconds=max(float(delay_seconds), 0.0))
    row.locked_by = ""
    row.last_error = str(error or "")[:3900]
    row.updated_at = now
    append_log(row, log_entry)
    db.add(row)
    return row


def mark_failed(
    db: Session,
    job_id: int,
    *,
    worker_id: str,
    error: str,
    log_entry: dict[str, Any],
) -> Job | None:
    row = _load_running(db, job_id, worker_id)
    if row is None:
        return None
    now = utc_now()
    row.status = JobStatus.FAILED.value
    row.finished_at = now
    row.locked_by = ""
    row.last_error = str(error or "")[:3900]
    row.updated_at = now
    append_log(row, log_entry)
    db.add(row)
    return row


def cancel_job(db: Session, job_id: int, *, actor: str = "system", reason: str = "") -> Job:
    now = utc_now()
    with store_guard("cancel"):
        result = db.connection().execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
            .values(status=JobStatus.CANCELLED.value, finished_at=now, updated_at=now)
        )
        row = db.get(Job, job_id)
        if row is None:
            db.rollback()
            raise EntityNotFoundError("job", job_id)
        db.refresh(row)
        if result.rowcount != 1:
            db.rollback()
            raise JobStateError(f"job {job_id} is {row.status}; only PENDING jobs can be cancelled")
        append_log(
            row,
            build_log_entry("cancelled", attempt=row.attempts, actor=actor, reason=str(reason or "")),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
    _LOGGER.info("job_cancelled job_id=%s actor=%s", job_id, actor)
    return row


def get_job(db: Session, job_id: int) -> Job | None:
    with store_guard("get"):
        return db.get(Job, job_id)


def list_jobs(
    db: Session,
    *,
    status: str | None = None,
    job_type: str | None = None,
    scope_type: str | None = None,
    entity_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    stmt = select(Job)
    if status:
        stmt = stmt.where(Job.status == str(status).upper())
    if job_type:
        stmt = stmt.where(Job.job_type == str(job_type).upper())
    if scope_type:
        stmt = stmt.where(Job.scope_type == str(scope_type).upper())
    if entity_id is not None:
        stmt = stmt.where(Job.entity_id == int(entity_id))
    stmt = stmt.order_by(Job.id.desc()).offset(max(int(offset), 0)).limit(min(max(int(limit), 1), 500))
    with store_guard("list"):
        return list(db.exec(stmt).all())


def count_jobs_by_status(db: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    with store_guard("count"):
        rows = db.exec(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts


def recover_stale_running_jobs(now: datetime | None = None) -> int:
    """Return RUNNING jobs abandoned by a crashed worker to the queue."""
    current = now or utc_now()
    threshold = current - timedelta(seconds=max(int(settings.job_stale_running_seconds), 30))
    with store_guard("recover_stale"):
        with Session(engine) as db:
            stmt = select(Job).where(
                Job.status == JobStatus.RUNNING.value,
                Job.started_at.is_not(None),
                Job.started_at < threshold,
            )
            if is_postgres(db):
                stmt = stmt.with_for_update(skip_locked=True)
            rows = db.exec(stmt).all()
            if not rows:
                return 0
            for row in rows:
                stale_owner = row.locked_by
                exhausted = int(row.attempts) >= int(row.max_attempts)
                row.status = JobStatus.FAILED.value if exhausted else JobStatus.PENDING.value
                if exhausted:
                    row.finished_at = current
                else:
                    row.scheduled_for = current
                row.locked_by = ""
                row.last_error = "recovered_from_stale_running"
                row.updated_at = current
                append_log(
                    row,
                    build_log_entry(
                        "recovered_from_stale_running",
                        attempt=row.attempts,
                        worker_id=stale_owner,
                        message=f"started_at={as_utc(row.started_at).isoformat()}",
                    ),
                )
                db.add(row)
            db.commit()
    _LOGGER.warning("job_stale_running_recovered count=%s threshold=%s", len(rows), threshold.isoformat())
    return len(rows)


def write_dead_letter(db: Session, row: Job) -> JobDeadLetter:
    letter = JobDeadLetter(
        job_id=int(row.id or 0),
        job_type=row.job_type,
        scope_type=row.scope_type,
        entity_id=row.entity_id,
        payload=dict(row.input_payload or {}),
        attempts=int(row.attempts),
        last_error=str(row.last_error or "")[:3900],
        failed_at=utc_now(),
    )
    db.add(letter)
    db.flush()
    return letter


def list_dead_letters(db: Session, *, limit: int = 50, include_resolved: bool = False) -> list[JobDeadLetter]:
    stmt = select(JobDeadLetter)
    if not include_resolved:
        stmt = stmt.where(JobDeadLetter.resolved_at.is_(None))
    stmt = stmt.order_by(JobDeadLetter.failed_at.desc()).limit(min(max(int(limit), 1), 200))
    with store_guard("list_dead_letters"):
        return list(db.exec(stmt).all())

import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlmodel import Session, select

from listing_ops.core.config import settings
from listing_ops.core.credentials import has_price_data_credentials
from listing_ops.core.database import engine
from listing_ops.models.jobs import Job, JobType, ScopeType, as_utc, utc_now
from listing_ops.models.listings import AsinEntity, Listing, MarketSnapshot
from listing_ops.services.job_store import enqueue_job, find_pending_jobs, store_guard

_LOGGER = logging.getLogger(__name__)


def follow_up_priority(origin_priority: int) -> int:
    """One ``trigger_priority_step`` below the origin, floored at 1.

    Chains that start at a low priority flatten out at 1 instead of going
    negative, so deep follow-ups run after everything else but still run.
    """
    step = max(int(settings.trigger_priority_step), 1)
    return max(int(origin_priority) - step, 1)


def enqueue_follow_up(
    db: Session,
    origin: Job,
    job_type: JobType,
    *,
    reason: str,
) -> Job | None:
    """Queue ``job_type`` for the origin's scope unless an equivalent one is due.

    A PENDING job held back by a retry or conflict delay does not count: the
    fresh data should not wait behind it. Flush-only; the follow-up commits
    with the origin's bookkeeping.
    """
    if origin.scope_type == ScopeType.GLOBAL.value or origin.entity_id is None:
        return None
    now = utc_now()
    pending = [
        row
        for row in find_pending_jobs(
            db,
            job_type=job_type,
            scope_type=origin.scope_type,
            entity_id=origin.entity_id,
        )
        if as_utc(row.scheduled_for) <= now
    ]
    if pending:
        _LOGGER.debug(
            "follow_up_skipped origin_job_id=%s job_type=%s pending_job_id=%s",
            origin.id,
            job_type.value,
            pending[0].id,
        )
        return None
    row = enqueue_job(
        db,
        job_type=job_type,
        scope_type=origin.scope_type,
        entity_id=origin.entity_id,
        input_payload={"trigger": reason, "origin_job_id": origin.id},
        priority=follow_up_priority(origin.priority),
        created_by="worker",
        metadata={"origin_job_id": origin.id, "origin_job_type": origin.job_type},
    )
    _LOGGER.info(
        "follow_up_enqueued origin_job_id=%s job_id=%s job_type=%s priority=%s reason=%s",
        origin.id,
        row.id,
        job_type.value,
        row.priority,
        reason,
    )
    return row


def _latest_capture(db: Session, entity_type: str, entity_id: int) -> datetime | None:
    captured = db.exec(
        select(func.max(MarketSnapshot.captured_at)).where(
            MarketSnapshot.entity_type == entity_type,
            MarketSnapshot.entity_id == entity_id,
        )
    ).one()
    return as_utc(captured) if captured is not None else None


def enqueue_due_market_syncs(now: datetime | None = None) -> int:
    if not settings.market_sync_auto_enqueue or not has_price_data_credentials():
        return 0

    current = now or utc_now()
    threshold = current - timedelta(seconds=max(int(settings.market_sync_interval_seconds), 60))
    scan_limit = max(int(settings.market_sync_scan_limit), 1)
    queued_count = 0
    scanned = 0

    with store_guard("enqueue_market_syncs"):
        with Session(engine) as db:
            targets: list[tuple[str, int]] = [
                (ScopeType.LISTING.value, int(listing_id))
                for listing_id in db.exec(
                    select(Listing.id).where(Listing.status == "ACTIVE").order_by(Listing.id.asc()).limit(scan_limit)
                ).all()
            ]
            targets.extend(
                (ScopeType.ASIN.value, int(asin_id))
                for asin_id in db.exec(select(AsinEntity.id).order_by(AsinEntity.id.asc()).limit(scan_limit)).all()
            )
            for scope, entity_id in targets:
                scanned += 1
                latest = _latest_capture(db, scope, entity_id)
                if latest is not None and latest > threshold:
                    continue
                if find_pending_jobs(db, job_type=JobType.SYNC_MARKET_DATA, scope_type=scope, entity_id=entity_id):
                    continue
                enqueue_job(
                    db,
                    job_type=JobType.SYNC_MARKET_DATA,
                    scope_type=scope,
                    entity_id=entity_id,
                    input_payload={"trigger": "scheduled"},
                    created_by="scheduler",
                )
                queued_count += 1

            if queued_count > 0:
                db.commit()

    if queued_count > 0:
        _LOGGER.info("market_sync_enqueue queued=%s scanned=%s", queued_count, scanned)
    return queued_count

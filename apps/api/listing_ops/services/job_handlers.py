"""Per-type job handlers.

A handler receives a ``JobContext`` and returns the job's result payload, or
raises one of the typed errors in ``listing_ops.core.exceptions``. Handlers
only flush; the executor commits their writes together with the SUCCEEDED
transition while still holding the entity lock.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlmodel import Session

from listing_ops.core.config import settings
from listing_ops.core.credentials import (
    MarketplaceCredentials,
    get_marketplace_credentials,
    get_price_data_credentials,
    has_marketplace_credentials,
)
from listing_ops.core.exceptions import (
    EntityNotFoundError,
    GuardrailViolationError,
    InvalidJobInputError,
)
from listing_ops.models.jobs import PUBLISH_JOB_TYPES, Job, JobType, ScopeType, utc_now
from listing_ops.models.listings import AsinEntity, Listing, ListingEvent, MarketSnapshot
from listing_ops.services import marketplace_client
from listing_ops.services.feature_store import compute_and_save_features
from listing_ops.services.publish_jobs import (
    evaluate_publish,
    linked_recommendation_ids,
    requested_price,
    requested_quantity,
)
from listing_ops.services.recommendations import (
    generate_recommendations,
    mark_recommendation_applied,
    mark_recommendation_failed,
)
from listing_ops.services.triggers import enqueue_follow_up

_LOGGER = logging.getLogger(__name__)


@dataclass
class JobContext:
    db: Session
    job: Job
    worker_id: str

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self.job.input_payload or {})

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self.job.job_metadata or {})


Handler = Callable[[JobContext], dict[str, Any]]


def _require_entity(job: Job, *allowed: ScopeType) -> int:
    if job.scope_type not in {scope.value for scope in allowed} or job.entity_id is None:
        names = "/".join(scope.value for scope in allowed)
        raise InvalidJobInputError(f"{job.job_type} requires {names} scope, got {job.scope_type}")
    return int(job.entity_id)


def _marketplace_credentials() -> MarketplaceCredentials | None:
    if not settings.marketplace_enabled or not has_marketplace_credentials():
        return None
    return get_marketplace_credentials()


def _load_listing(db: Session, listing_id: int) -> Listing:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise EntityNotFoundError(ScopeType.LISTING.value, listing_id)
    return listing


def sync_market_data(ctx: JobContext) -> dict[str, Any]:
    job = ctx.job
    entity_id = _require_entity(job, ScopeType.LISTING, ScopeType.ASIN)
    if job.scope_type == ScopeType.LISTING.value:
        asin = _load_listing(ctx.db, entity_id).asin
    else:
        entity = ctx.db.get(AsinEntity, entity_id)
        if entity is None:
            raise EntityNotFoundError(ScopeType.ASIN.value, entity_id)
        asin = entity.asin
    if not asin:
        raise InvalidJobInputError(f"{job.scope_type} {entity_id} has no ASIN to sync")

    sources = [source for source in settings.market_sync_sources if source in {"keepa", "sp_api"}]
    captured: list[str] = []
    now = utc_now()
    if "keepa" in sources:
        payload = marketplace_client.fetch_price_history(asin, get_price_data_credentials())
        ctx.db.add(
            MarketSnapshot(entity_type=job.scope_type, entity_id=entity_id, source="keepa", payload=payload, captured_at=now)
        )
        captured.append("keepa")
    if "sp_api" in sources and job.scope_type == ScopeType.LISTING.value:
        payload = marketplace_client.fetch_offer_summary(asin, _marketplace_credentials())
        ctx.db.add(
            MarketSnapshot(entity_type=job.scope_type, entity_id=entity_id, source="sp_api", payload=payload, captured_at=now)
        )
        captured.append("sp_api")
    ctx.db.flush()

    follow_up = None
    if captured and settings.trigger_features_after_sync:
        follow_up = enqueue_follow_up(ctx.db, job, JobType.COMPUTE_FEATURES, reason="market_data_synced")
    return {
        "asin": asin,
        "sources": captured,
        "follow_up_job_id": follow_up.id if follow_up is not None else None,
    }


def compute_features(ctx: JobContext) -> dict[str, Any]:
    job = ctx.job
    entity_id = _require_entity(job, ScopeType.LISTING, ScopeType.ASIN)
    snapshot, inserted = compute_and_save_features(ctx.db, job.scope_type, entity_id)
    follow_up = None
    if inserted and settings.trigger_recommendations_after_features:
        follow_up = enqueue_follow_up(ctx.db, job, JobType.GENERATE_RECOMMENDATIONS, reason="features_changed")
    return {
        "feature_snapshot_id": snapshot.id,
        "inserted": inserted,
        "content_hash": snapshot.content_hash,
        "follow_up_job_id": follow_up.id if follow_up is not None else None,
    }


def generate_entity_recommendations(ctx: JobContext) -> dict[str, Any]:
    job = ctx.job
    entity_id = _require_entity(job, ScopeType.LISTING, ScopeType.ASIN)
    return generate_recommendations(ctx.db, job.scope_type, entity_id, job_id=job.id)


def _check_guardrails(ctx: JobContext, listing: Listing, job_type: JobType) -> None:
    if ctx.metadata.get("guardrail_override"):
        return
    report = evaluate_publish(ctx.db, listing, job_type, ctx.payload)
    result = report["_result"]
    if not result.passed:
        raise GuardrailViolationError(result.violations)


def _finish_publish(
    ctx: JobContext,
    listing: Listing,
    event_type: str,
    before: dict[str, Any],
    after: dict[str, Any],
    response: dict[str, Any],
) -> dict[str, Any]:
    job = ctx.job
    ctx.db.add(listing)
    ctx.db.add(
        ListingEvent(
            listing_id=int(listing.id),
            event_type=event_type,
            job_id=job.id,
            before=before,
            after=after,
            reason=str(ctx.metadata.get("reason") or "")[:1000],
            created_by=ctx.worker_id or "worker",
        )
    )
    for recommendation_id in linked_recommendation_ids(ctx.metadata):
        mark_recommendation_applied(ctx.db, recommendation_id, job_id=int(job.id or 0))
    follow_up = None
    if settings.trigger_features_after_publish:
        follow_up = enqueue_follow_up(ctx.db, job, JobType.COMPUTE_FEATURES, reason="publish_succeeded")
    ctx.db.flush()
    return {
        "listing_id": int(listing.id),
        "before": before,
        "after": after,
        "marketplace": response,
        "follow_up_job_id": follow_up.id if follow_up is not None else None,
    }


def publish_price_change(ctx: JobContext) -> dict[str, Any]:
    listing_id = _require_entity(ctx.job, ScopeType.LISTING)
    price = requested_price(ctx.payload)
    listing = _load_listing(ctx.db, listing_id)
    _check_guardrails(ctx, listing, JobType.PUBLISH_PRICE_CHANGE)
    response = marketplace_client.publish_price(listing.seller_sku, price, _marketplace_credentials())
    before = {"price_inc_vat": listing.price_inc_vat}
    listing.price_inc_vat = price
    listing.updated_at = utc_now()
    return _finish_publish(ctx, listing, "PRICE_CHANGE_PUBLISHED", before, {"price_inc_vat": price}, response)


def publish_stock_change(ctx: JobContext) -> dict[str, Any]:
    listing_id = _require_entity(ctx.job, ScopeType.LISTING)
    quantity = requested_quantity(ctx.payload)
    listing = _load_listing(ctx.db, listing_id)
    _check_guardrails(ctx, listing, JobType.PUBLISH_STOCK_CHANGE)
    response = marketplace_client.publish_stock(
        listing.seller_sku,
        quantity,
        listing.fulfillment_channel,
        _marketplace_credentials(),
    )
    before = {"available_quantity": listing.available_quantity}
    listing.available_quantity = quantity
    listing.updated_at = utc_now()
    return _finish_publish(ctx, listing, "STOCK_CHANGE_PUBLISHED", before, {"available_quantity": quantity}, response)


def resolve_handler(job_type: JobType) -> Handler:
    match job_type:
        case JobType.SYNC_MARKET_DATA:
            return sync_market_data
        case JobType.COMPUTE_FEATURES:
            return compute_features
        case JobType.GENERATE_RECOMMENDATIONS:
            return generate_entity_recommendations
        case JobType.PUBLISH_PRICE_CHANGE:
            return publish_price_change
        case JobType.PUBLISH_STOCK_CHANGE:
            return publish_stock_change
        case _:
            raise InvalidJobInputError(f"no handler for job_type {job_type!r}")


HANDLERS: dict[JobType, Handler] = {job_type: resolve_handler(job_type) for job_type in JobType}

# Job types that run under the entity lock for their scope.
LOCKED_JOB_TYPES = frozenset(
    {
        JobType.COMPUTE_FEATURES,
        JobType.GENERATE_RECOMMENDATIONS,
        JobType.PUBLISH_PRICE_CHANGE,
        JobType.PUBLISH_STOCK_CHANGE,
    }
)


def handle_terminal_failure(db: Session, job: Job, message: str) -> None:
    """Record the failure on the listing and linked recommendation. Flush-only."""
    try:
        job_type = JobType(job.job_type)
    except ValueError:
        return
    if job_type not in PUBLISH_JOB_TYPES or job.entity_id is None:
        return
    metadata = dict(job.job_metadata or {})
    if db.get(Listing, int(job.entity_id)) is not None:
        prefix = "PRICE_CHANGE" if job_type is JobType.PUBLISH_PRICE_CHANGE else "STOCK_CHANGE"
        db.add(
            ListingEvent(
                listing_id=int(job.entity_id),
                event_type=f"{prefix}_FAILED",
                job_id=job.id,
                before={},
                after=dict(job.input_payload or {}),
                reason=str(message or "")[:1000],
                created_by="worker",
            )
        )
    recommendation_ids = linked_recommendation_ids(metadata)
    for recommendation_id in recommendation_ids:
        mark_recommendation_failed(db, recommendation_id, job_id=int(job.id or 0), message=message)
    db.flush()
    _LOGGER.info(
        "publish_job_failed job_id=%s listing_id=%s recommendation_ids=%s",
        job.id,
        job.entity_id,
        ",".join(str(value) for value in recommendation_ids),
    )

import logging
from typing import Any

from sqlmodel import Session, select

from listing_ops.core.database import is_postgres
from listing_ops.core.exceptions import (
    EntityNotFoundError,
    GuardrailViolationError,
    InvalidJobInputError,
)
from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import PUBLISH_JOB_TYPES, Job, JobStatus, JobType, ScopeType, utc_now
from listing_ops.models.listings import Listing, ListingEvent
from listing_ops.services.economics import calculate_economics, listing_snapshot
from listing_ops.services.feature_store import get_latest_features
from listing_ops.services.guardrails import GuardrailResult, evaluate_price_change, evaluate_stock_change
from listing_ops.services.job_store import enqueue_job, find_pending_jobs
from listing_ops.services.payloads import payloads_equal

_LOGGER = logging.getLogger(__name__)

_DRAFTED_EVENTS = {
    JobType.PUBLISH_PRICE_CHANGE.value: "PRICE_CHANGE_DRAFTED",
    JobType.PUBLISH_STOCK_CHANGE.value: "STOCK_CHANGE_DRAFTED",
}


def _publish_type(job_type: JobType | str) -> JobType:
    try:
        resolved = JobType(str(getattr(job_type, "value", job_type)).upper())
    except ValueError as exc:
        raise InvalidJobInputError(f"unknown job_type {job_type!r}") from exc
    if resolved not in PUBLISH_JOB_TYPES:
        raise InvalidJobInputError(f"{resolved.value} is not a publish job type")
    return resolved


def requested_price(payload: dict[str, Any]) -> float:
    raw = payload.get("price_inc_vat", payload.get("price"))
    if raw is None or isinstance(raw, bool):
        raise InvalidJobInputError("price change payload requires price_inc_vat")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidJobInputError(f"invalid price {raw!r}") from exc


def requested_quantity(payload: dict[str, Any]) -> int:
    raw = payload.get("available_quantity", payload.get("quantity"))
    if raw is None or isinstance(raw, bool):
        raise InvalidJobInputError("stock change payload requires available_quantity")
    try:
        quantity = int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidJobInputError(f"invalid quantity {raw!r}") from exc
    if quantity != float(raw):
        raise InvalidJobInputError(f"quantity must be a whole number, got {raw!r}")
    return quantity


def _days_of_cover(snapshot: FeatureSnapshot | None) -> float | None:
    if snapshot is None:
        return None
    value = (snapshot.features or {}).get("days_of_cover")
    return None if value is None else float(value)


def evaluate_publish(
    db: Session,
    listing: Listing,
    job_type: JobType,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """Economics and guardrail report for a proposed listing change."""
    current = listing_snapshot(listing)
    if job_type is JobType.PUBLISH_PRICE_CHANGE:
        new_price = requested_price(payload)
        economics = calculate_economics(current, {"price_inc_vat": new_price})
        result = evaluate_price_change(
            current,
            economics,
            days_of_cover=_days_of_cover(get_latest_features(db, ScopeType.LISTING.value, int(listing.id))),
        )
        proposed: dict[str, Any] = {"price_inc_vat": float(economics.price_inc_vat)}
        economics_report = {
            "current": calculate_economics(current).as_dict(),
            "proposed": economics.as_dict(),
        }
    else:
        quantity = requested_quantity(payload)
        result = evaluate_stock_change(current, quantity)
        proposed = {"available_quantity": quantity}
        economics_report = {}
    return {
        "listing_id": int(listing.id),
        "job_type": job_type.value,
        "current": {
            "price_inc_vat": listing.price_inc_vat,
            "available_quantity": listing.available_quantity,
        },
        "proposed": proposed,
        "economics": economics_report,
        "guardrails": result.as_dict(),
        "_result": result,
    }


def _load_listing(db: Session, listing_id: int, *, for_update: bool = False) -> Listing:
    if for_update and is_postgres(db):
        listing = db.exec(select(Listing).where(Listing.id == int(listing_id)).with_for_update()).first()
    else:
        listing = db.get(Listing, int(listing_id))
    if listing is None:
        raise EntityNotFoundError(ScopeType.LISTING.value, listing_id)
    return listing


def preview_publish(
    db: Session,
    listing_id: int,
    job_type: JobType | str,
    input_payload: dict[str, Any],
) -> dict[str, Any]:
    listing = _load_listing(db, listing_id)
    report = evaluate_publish(db, listing, _publish_type(job_type), dict(input_payload or {}))
    report.pop("_result", None)
    return report


def find_equivalent_publish_job(
    db: Session,
    listing_id: int,
    job_type: JobType,
    input_payload: dict[str, Any],
) -> Job | None:
    for row in find_pending_jobs(
        db,
        job_type=job_type,
        scope_type=ScopeType.LISTING,
        entity_id=listing_id,
    ):
        if payloads_equal(row.input_payload or {}, input_payload):
            return row
    return None


def create_publish_job(
    db: Session,
    listing_id: int,
    job_type: JobType | str,
    input_payload: dict[str, Any],
    *,
    reason: str = "",
    actor: str = "user",
    priority: int | None = None,
    max_attempts: int | None = None,
    allow_guardrail_violations: bool = False,
    metadata: dict[str, Any] | None = None,
) -> tuple[Job, bool]:
    """Create a publish job unless an identical one is already PENDING.

    Returns ``(job, created)``. ``created=False`` means a PENDING job for the
    same listing, type and exact payload exists and is returned untouched.
    The listing row is locked for the duration of the transaction on
    PostgreSQL so two concurrent callers cannot both insert.
    """
    resolved = _publish_type(job_type)
    payload = dict(input_payload or {})
    listing = _load_listing(db, listing_id, for_update=True)

    existing = find_equivalent_publish_job(db, int(listing.id), resolved, payload)
    if existing is not None:
        db.rollback()
        _LOGGER.info(
            "publish_job_duplicate listing_id=%s job_type=%s existing_job_id=%s",
            listing_id,
            resolved.value,
            existing.id,
        )
        return existing, False

    report = evaluate_publish(db, listing, resolved, payload)
    result: GuardrailResult = report["_result"]
    job_metadata: dict[str, Any] = dict(metadata or {})
    if not result.passed:
        if not allow_guardrail_violations:
            db.rollback()
            raise GuardrailViolationError(result.violations)
        job_metadata["guardrail_override"] = True
        job_metadata["guardrail_violations"] = result.violations

    event = ListingEvent(
        listing_id=int(listing.id),
        event_type=_DRAFTED_EVENTS[resolved.value],
        before=dict(report["current"]),
        after=dict(report["proposed"]),
        reason=str(reason or "")[:1000],
        created_by=str(actor or "user"),
        created_at=utc_now(),
    )
    db.add(event)
    db.flush()

    job_metadata.update({"listing_event_id": int(event.id or 0), "reason": str(reason or "")})
    job = enqueue_job(
        db,
        job_type=resolved,
        scope_type=ScopeType.LISTING,
        entity_id=int(listing.id),
        input_payload=payload,
        priority=priority,
        max_attempts=max_attempts,
        created_by=actor,
        metadata=job_metadata,
    )
    event.job_id = int(job.id or 0)
    db.add(event)
    db.commit()
    db.refresh(job)
    _LOGGER.info(
        "publish_job_created listing_id=%s job_type=%s job_id=%s override=%s",
        listing_id,
        resolved.value,
        job.id,
        bool(job_metadata.get("guardrail_override")),
    )
    return job, True


def linked_recommendation_ids(metadata: dict[str, Any] | None) -> list[int]:
    values = dict(metadata or {})
    linked: list[int] = []
    for value in [values.get("recommendation_id"), *list(values.get("recommendation_ids") or [])]:
        if value and int(value) not in linked:
            linked.append(int(value))
    return linked


def link_recommendation(db: Session, job_id: int, recommendation_id: int) -> Job | None:
    """Attach a recommendation to a PENDING publish job. Flush-only.

    Returns ``None`` when the job already left PENDING; its outcome could no
    longer be reported back to the recommendation.
    """
    stmt = select(Job).where(Job.id == int(job_id))
    if is_postgres(db):
        stmt = stmt.with_for_update()
    row = db.exec(stmt).first()
    if row is None or row.status != JobStatus.PENDING.value:
        return None
    metadata = dict(row.job_metadata or {})
    linked = linked_recommendation_ids(metadata)
    if int(recommendation_id) not in linked:
        metadata["recommendation_ids"] = [*linked, int(recommendation_id)]
        row.job_metadata = metadata
        row.updated_at = utc_now()
        db.add(row)
        db.flush()
    return row

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from listing_ops.core.config import settings
from listing_ops.core.exceptions import EntityNotFoundError, InvalidJobInputError
from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import ScopeType, as_utc, utc_now
from listing_ops.models.listings import AsinEntity, Listing, MarketSnapshot, SalesDaily
from listing_ops.services.economics import calculate_economics, listing_snapshot, round_money, round_ratio
from listing_ops.services.guardrails import days_of_cover, stockout_risk
from listing_ops.services.payloads import content_hash

_LOGGER = logging.getLogger(__name__)

FEATURE_ENTITY_TYPES = (ScopeType.LISTING.value, ScopeType.ASIN.value)


def _check_entity_type(entity_type: str) -> str:
    normalized = str(entity_type or "").upper()
    if normalized not in FEATURE_ENTITY_TYPES:
        raise InvalidJobInputError(f"features are not tracked for entity_type {entity_type!r}")
    return normalized


def get_latest_features(db: Session, entity_type: str, entity_id: int) -> FeatureSnapshot | None:
    stmt = (
        select(FeatureSnapshot)
        .where(
            FeatureSnapshot.entity_type == _check_entity_type(entity_type),
            FeatureSnapshot.entity_id == int(entity_id),
        )
        .order_by(FeatureSnapshot.computed_at.desc(), FeatureSnapshot.id.desc())
        .limit(1)
    )
    return db.exec(stmt).first()


def get_feature_history(db: Session, entity_type: str, entity_id: int, *, limit: int = 30) -> list[FeatureSnapshot]:
    stmt = (
        select(FeatureSnapshot)
        .where(
            FeatureSnapshot.entity_type == _check_entity_type(entity_type),
            FeatureSnapshot.entity_id == int(entity_id),
        )
        .order_by(FeatureSnapshot.computed_at.desc(), FeatureSnapshot.id.desc())
        .limit(min(max(int(limit), 1), 365))
    )
    return list(db.exec(stmt).all())


def save_features(
    db: Session,
    entity_type: str,
    entity_id: int,
    features: dict[str, Any],
) -> tuple[FeatureSnapshot, bool]:
    """Append a feature snapshot unless it matches the current one.

    Returns ``(row, inserted)``. An unchanged payload returns the current row
    with ``inserted=False``. A new row always gets a ``computed_at`` later
    than the current row. The caller owns the commit and is expected to hold
    the entity lock.
    """
    kind = _check_entity_type(entity_type)
    version = int(settings.feature_version)
    digest = content_hash(features)
    latest = get_latest_features(db, kind, entity_id)
    if latest is not None and latest.content_hash == digest and int(latest.feature_version) == version:
        _LOGGER.debug("feature_snapshot_unchanged entity_type=%s entity_id=%s id=%s", kind, entity_id, latest.id)
        return latest, False

    computed_at = utc_now()
    if latest is not None:
        previous = as_utc(latest.computed_at)
        if computed_at <= previous:
            computed_at = previous + timedelta(microseconds=1)

    row = FeatureSnapshot(
        entity_type=kind,
        entity_id=int(entity_id),
        feature_version=version,
        features=dict(features),
        content_hash=digest,
        computed_at=computed_at,
        created_at=utc_now(),
    )
    db.add(row)
    db.flush()
    _LOGGER.info(
        "feature_snapshot_saved entity_type=%s entity_id=%s id=%s hash=%s",
        kind,
        entity_id,
        row.id,
        digest[:12],
    )
    return row, True


def _latest_market_payloads(db: Session, entity_type: str, entity_id: int) -> dict[str, dict[str, Any]]:
    rows = db.exec(
        select(MarketSnapshot)
        .where(MarketSnapshot.entity_type == entity_type, MarketSnapshot.entity_id == int(entity_id))
        .order_by(MarketSnapshot.captured_at.desc(), MarketSnapshot.id.desc())
        .limit(20)
    ).all()
    latest: dict[str, dict[str, Any]] = {}
    for row in rows:
        if row.source not in latest and isinstance(row.payload, dict):
            latest[row.source] = row.payload
    return latest


def _sales_window(db: Session, listing_id: int) -> dict[str, float]:
    today = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
    since_30 = today - timedelta(days=30)
    since_7 = today - timedelta(days=7)

    def _window(since):
        units, revenue = db.exec(
            select(
                func.coalesce(func.sum(SalesDaily.units), 0),
                func.coalesce(func.sum(SalesDaily.revenue_inc_vat), 0.0),
            ).where(SalesDaily.listing_id == listing_id, SalesDaily.sale_date >= since)
        ).one()
        return int(units or 0), float(revenue or 0.0)

    units_30d, revenue_30d = _window(since_30)
    units_7d, revenue_7d = _window(since_7)
    return {
        "units_7d": units_7d,
        "units_30d": units_30d,
        "revenue_inc_vat_7d": round(revenue_7d, 2),
        "revenue_inc_vat_30d": round(revenue_30d, 2),
    }


def _sales_anomaly_score(units_7d: int, units_30d: int) -> float | None:
    if units_30d <= 0:
        return None
    expected_7d = units_30d * 7 / 30
    if expected_7d <= 0:
        return None
    drop = 1 - (units_7d / expected_7d)
    return round(min(max(drop, 0.0), 1.0), 3)


def compute_listing_features(db: Session, listing_id: int) -> dict[str, Any]:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise EntityNotFoundError(ScopeType.LISTING.value, listing_id)

    economics = calculate_economics(listing_snapshot(listing)).as_dict()
    sales = _sales_window(db, int(listing.id))
    velocity = sales["units_30d"] / 30
    cover = days_of_cover(int(listing.available_quantity), velocity)
    market = _latest_market_payloads(db, ScopeType.LISTING.value, int(listing.id))
    metrics = dict(market.get("keepa", {}).get("metrics") or {})
    offer = market.get("sp_api", {})
    buy_box_status = str(offer.get("buy_box_status") or "UNKNOWN").upper()

    p25 = metrics.get("price_p25_90d")
    p75 = metrics.get("price_p75_90d")
    price_position = None
    if p25 and p75:
        if listing.price_inc_vat < float(p25):
            price_position = "BELOW_BAND"
        elif listing.price_inc_vat > float(p75):
            price_position = "ABOVE_BAND"
        else:
            price_position = "IN_BAND"

    return {
        **economics,
        **sales,
        "sales_velocity_units_per_day_30d": round(velocity, 2),
        "available_quantity": int(listing.available_quantity),
        "days_of_cover": round(cover, 1) if cover is not None else None,
        "lead_time_days": int(listing.lead_time_days),
        "stockout_risk": stockout_risk(cover, int(listing.lead_time_days)),
        "buy_box_status": buy_box_status,
        "buy_box_percentage_30d": offer.get("buy_box_percentage_30d"),
        "buy_box_risk": {"WON": "LOW", "LOST": "HIGH"}.get(buy_box_status, "UNKNOWN"),
        "competitor_price_position": price_position,
        "keepa_price_median_90d": metrics.get("price_median_90d"),
        "keepa_price_p25_90d": p25,
        "keepa_price_p75_90d": p75,
        "keepa_volatility_90d": metrics.get("price_volatility_90d"),
        "keepa_offers_count_current": metrics.get("offers_count_current"),
        "keepa_rank_trend_90d": metrics.get("sales_rank_trend_90d"),
        "sales_anomaly_score": _sales_anomaly_score(sales["units_7d"], sales["units_30d"]),
    }


def compute_asin_features(db: Session, asin_entity_id: int) -> dict[str, Any]:
    entity = db.get(AsinEntity, asin_entity_id)
    if entity is None:
        raise EntityNotFoundError(ScopeType.ASIN.value, asin_entity_id)

    market = _latest_market_payloads(db, ScopeType.ASIN.value, int(entity.id))
    metrics = dict(market.get("keepa", {}).get("metrics") or {})
    scenario_cost = float(entity.scenario_cost_ex_vat or 0.0) or None
    features: dict[str, Any] = {
        "asin": entity.asin,
        "marketplace_id": entity.marketplace_id,
        "title": entity.title,
        "brand": entity.brand,
        "category": entity.category,
        "price_current": metrics.get("price_current"),
        "price_median_90d": metrics.get("price_median_90d"),
        "price_p25_90d": metrics.get("price_p25_90d"),
        "price_p75_90d": metrics.get("price_p75_90d"),
        "price_volatility_90d": metrics.get("price_volatility_90d"),
        "sales_rank_current": metrics.get("sales_rank_current"),
        "sales_rank_trend_90d": metrics.get("sales_rank_trend_90d"),
        "offers_count_current": metrics.get("offers_count_current"),
        "buy_box_price": metrics.get("buy_box_price"),
        "scenario_bom_cost_ex_vat": scenario_cost,
        "has_scenario_bom": scenario_cost is not None,
        "opportunity_margin": None,
        "opportunity_profit": None,
    }
    price_current = metrics.get("price_current")
    if scenario_cost is not None and price_current:
        price_ex = float(price_current) / (1 + float(entity.vat_rate))
        fees = price_ex * float(settings.referral_fee_rate)
        profit = price_ex - scenario_cost - fees
        features["opportunity_profit"] = float(round_money(profit))
        features["opportunity_margin"] = float(round_ratio(profit / price_ex)) if price_ex > 0 else 0.0
    return features


def compute_and_save_features(db: Session, entity_type: str, entity_id: int) -> tuple[FeatureSnapshot, bool]:
    kind = _check_entity_type(entity_type)
    if kind == ScopeType.LISTING.value:
        features = compute_listing_features(db, entity_id)
    else:
        features = compute_asin_features(db, entity_id)
    return save_features(db, kind, entity_id, features)

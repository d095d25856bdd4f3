"""Rule set turning one feature snapshot into recommendation candidates.

Candidates are plain dicts; at most one candidate per recommendation type is
produced for an entity. Every candidate's evidence points back to the
snapshot id, its ``computed_at`` and the feature keys the rule read.
"""
from __future__ import annotations

import math
from typing import Any

from listing_ops.core.config import settings
from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import ScopeType, as_utc
from listing_ops.models.recommendations import RecommendationType
from listing_ops.services.economics import round_money, round_ratio
from listing_ops.services.guardrails import GuardrailLimits


def _num(features: dict[str, Any], key: str, default: float = 0.0) -> float:
    value = features.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _money(value: float) -> float:
    return float(round_money(value))


def _evidence(snapshot: FeatureSnapshot, keys: list[str], notes: str) -> dict[str, Any]:
    features = snapshot.features or {}
    return {
        "feature_snapshot_id": snapshot.id,
        "feature_computed_at": as_utc(snapshot.computed_at).isoformat(),
        "feature_version": snapshot.feature_version,
        "feature_keys": list(keys),
        "values": {key: features.get(key) for key in keys},
        "notes": notes,
    }


def _total_cost(features: dict[str, Any]) -> float:
    return (
        _num(features, "bom_cost_ex_vat")
        + _num(features, "shipping_cost_ex_vat")
        + _num(features, "packaging_cost_ex_vat")
        + _num(features, "amazon_fees_ex_vat")
    )


def _margin_at(features: dict[str, Any], price_inc_vat: float) -> tuple[float, float]:
    price_ex = price_inc_vat / (1 + _num(features, "vat_rate", float(settings.default_vat_rate)))
    profit = price_ex - _total_cost(features)
    margin = profit / price_ex if price_ex > 0 else 0.0
    return profit, margin


def _price_confidence(features: dict[str, Any]) -> tuple[str, float]:
    volatility = features.get("keepa_volatility_90d")
    if volatility is not None and float(volatility) < 0.1:
        return "HIGH", 0.85
    if volatility is not None and float(volatility) < 0.2:
        return "MEDIUM", 0.65
    return "LOW", 0.45


def _price_decrease_regain_buybox(snapshot, features, limits) -> dict[str, Any] | None:
    if str(features.get("buy_box_status") or "") != "LOST":
        return None
    suggested = features.get("keepa_price_p25_90d")
    current = _num(features, "price_inc_vat")
    if not suggested or float(suggested) >= current:
        return None
    suggested = float(suggested)
    profit, margin = _margin_at(features, suggested)
    if margin < limits.min_margin:
        return None
    confidence, score = _price_confidence(features)
    return {
        "recommendation_type": RecommendationType.PRICE_DECREASE_REGAIN_BUYBOX.value,
        "action_payload": {
            "action": "CHANGE_PRICE",
            "suggested_price_inc_vat": _money(suggested),
            "current_price_inc_vat": current,
            "price_change": _money(suggested - current),
        },
        "evidence": _evidence(
            snapshot,
            ["buy_box_status", "price_inc_vat", "keepa_price_p25_90d", "keepa_volatility_90d"],
            "price is above the 90 day 25th percentile while the buy box is lost",
        ),
        "guardrails": {"passed": True, "new_margin": float(round_ratio(margin)), "min_margin": limits.min_margin},
        "impact": {
            "estimated_margin_change": float(round_ratio(margin - _num(features, "margin"))),
            "estimated_profit_change": _money(profit - _num(features, "profit_ex_vat")),
        },
        "confidence": confidence,
        "confidence_score": score,
    }


def _price_increase_margin_opportunity(snapshot, features, limits) -> dict[str, Any] | None:
    if str(features.get("buy_box_status") or "") != "WON":
        return None
    if _num(features, "margin") <= limits.min_margin + 0.05:
        return None
    target = features.get("keepa_price_median_90d")
    current = _num(features, "price_inc_vat")
    if not target or float(target) <= current:
        return None
    suggested = min(float(target), current * (1 + limits.max_price_change_pct_per_day))
    if suggested <= current * 1.01:
        return None
    profit, margin = _margin_at(features, suggested)
    return {
        "recommendation_type": RecommendationType.PRICE_INCREASE_MARGIN_OPPORTUNITY.value,
        "action_payload": {
            "action": "CHANGE_PRICE",
            "suggested_price_inc_vat": _money(suggested),
            "current_price_inc_vat": current,
            "price_change": _money(suggested - current),
        },
        "evidence": _evidence(
            snapshot,
            ["buy_box_status", "margin", "price_inc_vat", "keepa_price_median_90d"],
            "buy box is won below the 90 day median price",
        ),
        "guardrails": {"passed": True, "new_margin": float(round_ratio(margin))},
        "impact": {
            "estimated_margin_change": float(round_ratio(margin - _num(features, "margin"))),
            "estimated_profit_change": _money(profit - _num(features, "profit_ex_vat")),
        },
        "confidence": "MEDIUM",
        "confidence_score": 0.60,
    }


def _stock_increase_stockout_risk(snapshot, features, limits) -> dict[str, Any] | None:
    risk = str(features.get("stockout_risk") or "")
    if risk not in {"HIGH", "MEDIUM"}:
        return None
    velocity = _num(features, "sales_velocity_units_per_day_30d")
    lead_time = int(_num(features, "lead_time_days", 14.0)) or 14
    target_days = lead_time * 2
    suggested = int(math.ceil(velocity * target_days))
    current = int(_num(features, "available_quantity"))
    if suggested <= current:
        return None
    cover = features.get("days_of_cover")
    return {
        "recommendation_type": RecommendationType.STOCK_INCREASE_STOCKOUT_RISK.value,
        "action_payload": {
            "action": "CHANGE_STOCK",
            "suggested_quantity": suggested,
            "current_quantity": current,
            "quantity_change": suggested - current,
        },
        "evidence": _evidence(
            snapshot,
            ["available_quantity", "days_of_cover", "sales_velocity_units_per_day_30d", "lead_time_days", "stockout_risk"],
            f"{cover if cover is not None else 'n/a'} days of cover against a {lead_time} day lead time",
        ),
        "guardrails": {},
        "impact": {
            "prevented_stockout_days": max(0.0, target_days - float(cover or 0.0)),
            "estimated_revenue_protected": _money(
                velocity * (target_days - float(cover or 0.0)) * _num(features, "price_inc_vat")
            ),
        },
        "confidence": "HIGH" if risk == "HIGH" else "MEDIUM",
        "confidence_score": 0.90 if risk == "HIGH" else 0.70,
    }


def _margin_at_risk(snapshot, features, limits) -> dict[str, Any] | None:
    if "margin" not in features or _num(features, "margin") >= limits.min_margin:
        return None
    margin = _num(features, "margin")
    break_even = _num(features, "break_even_price_inc_vat")
    return {
        "recommendation_type": RecommendationType.MARGIN_AT_RISK_COMPONENT_COST.value,
        "action_payload": {
            "action": "REVIEW_COSTS",
            "current_margin": margin,
            "min_margin": limits.min_margin,
            "break_even_price_inc_vat": break_even,
        },
        "evidence": _evidence(
            snapshot,
            ["margin", "bom_cost_ex_vat", "break_even_price_inc_vat"],
            "margin is below the configured minimum",
        ),
        "guardrails": {"violation": "min_margin", "actual": margin, "threshold": limits.min_margin},
        "impact": {
            "margin_gap": float(round_ratio(limits.min_margin - margin)),
            "price_increase_needed": _money(
                break_even * (1 + limits.min_margin) - _num(features, "price_inc_vat")
            ),
        },
        "confidence": "HIGH",
        "confidence_score": 0.95,
    }


def _anomaly_sales_drop(snapshot, features, limits) -> dict[str, Any] | None:
    score = features.get("sales_anomaly_score")
    if score is None or float(score) <= float(settings.recommendation_anomaly_threshold):
        return None
    return {
        "recommendation_type": RecommendationType.ANOMALY_SALES_DROP.value,
        "action_payload": {"action": "INVESTIGATE", "anomaly_type": "SALES_DROP"},
        "evidence": _evidence(
            snapshot,
            ["sales_anomaly_score", "units_7d", "units_30d", "buy_box_status"],
            "seven day sales are well below the thirty day run rate",
        ),
        "guardrails": {},
        "impact": {"urgency": "HIGH"},
        "confidence": "MEDIUM",
        "confidence_score": 0.70,
    }


def _opportunity_create_listing(snapshot, features, limits) -> dict[str, Any] | None:
    margin = features.get("opportunity_margin")
    if margin is None or float(margin) <= float(settings.recommendation_opportunity_margin):
        return None
    high = float(margin) > 0.30
    return {
        "recommendation_type": RecommendationType.OPPORTUNITY_CREATE_LISTING.value,
        "action_payload": {
            "action": "CREATE_LISTING",
            "asin": features.get("asin"),
            "estimated_margin": margin,
            "estimated_profit": features.get("opportunity_profit"),
        },
        "evidence": _evidence(
            snapshot,
            ["opportunity_margin", "opportunity_profit", "price_current", "scenario_bom_cost_ex_vat"],
            "scenario cost leaves a margin above the opportunity threshold",
        ),
        "guardrails": {},
        "impact": {
            "estimated_margin": margin,
            "estimated_profit_per_unit": features.get("opportunity_profit"),
        },
        "confidence": "HIGH" if high else "MEDIUM",
        "confidence_score": 0.80 if high else 0.60,
    }


LISTING_RULES = (
    _price_decrease_regain_buybox,
    _price_increase_margin_opportunity,
    _stock_increase_stockout_risk,
    _margin_at_risk,
    _anomaly_sales_drop,
)
ASIN_RULES = (_opportunity_create_listing,)


def build_candidates(
    entity_type: str,
    snapshot: FeatureSnapshot,
    limits: GuardrailLimits | None = None,
) -> list[dict[str, Any]]:
    limits = limits or GuardrailLimits.from_settings()
    features = dict(snapshot.features or {})
    rules = LISTING_RULES if entity_type == ScopeType.LISTING.value else ASIN_RULES
    by_type: dict[str, dict[str, Any]] = {}
    for rule in rules:
        candidate = rule(snapshot, features, limits)
        if candidate is not None:
            by_type.setdefault(candidate["recommendation_type"], candidate)
    return list(by_type.values())

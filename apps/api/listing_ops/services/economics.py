"""Listing unit economics.

All money values are VAT-exclusive unless the name says otherwise and are
rounded half-up to pennies. Amazon referral fees are charged on the
VAT-exclusive price.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from listing_ops.core.config import settings

_PENNY = Decimal("0.01")
_RATIO = Decimal("0.0001")
_MEDIA_CATEGORIES = {"Books", "Music", "Video", "DVD", "Software"}
_MEDIA_PER_ITEM_FEE = Decimal("0.50")


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return Decimal(default)


def round_money(value: Any) -> Decimal:
    return _dec(value).quantize(_PENNY, rounding=ROUND_HALF_UP)


def round_ratio(value: Any) -> Decimal:
    return _dec(value).quantize(_RATIO, rounding=ROUND_HALF_UP)


def price_ex_vat(price_inc_vat: Any, vat_rate: Any) -> Decimal:
    return round_money(_dec(price_inc_vat) / (1 + _dec(vat_rate)))


def break_even_price_inc_vat(total_cost_ex_vat: Any, vat_rate: Any) -> Decimal:
    return round_money(_dec(total_cost_ex_vat) * (1 + _dec(vat_rate)))


def amazon_fees_ex_vat(
    price_inc_vat: Any,
    vat_rate: Any,
    *,
    fulfillment_channel: str = "FBM",
    category: str = "",
) -> Decimal:
    referral = round_money(price_ex_vat(price_inc_vat, vat_rate) * _dec(settings.referral_fee_rate))
    fulfillment = round_money(settings.fba_fee_default) if str(fulfillment_channel).upper() == "FBA" else Decimal("0")
    per_item = _MEDIA_PER_ITEM_FEE if category in _MEDIA_CATEGORIES else Decimal("0")
    return round_money(referral + fulfillment + per_item)


@dataclass(frozen=True)
class Economics:
    price_inc_vat: Decimal
    price_ex_vat: Decimal
    vat_rate: Decimal
    bom_cost_ex_vat: Decimal
    shipping_cost_ex_vat: Decimal
    packaging_cost_ex_vat: Decimal
    amazon_fees_ex_vat: Decimal
    total_cost_ex_vat: Decimal
    profit_ex_vat: Decimal
    margin: Decimal
    break_even_price_inc_vat: Decimal

    def as_dict(self) -> dict[str, float]:
        return {key: float(value) for key, value in asdict(self).items()}


def calculate_economics(
    snapshot: Mapping[str, Any],
    proposed_change: Mapping[str, Any] | None = None,
) -> Economics:
    """Compute economics for a listing snapshot, optionally under a scenario.

    ``proposed_change`` may override ``price_inc_vat`` and scale the BOM cost
    with ``bom_cost_multiplier``.
    """
    change = proposed_change or {}
    vat_rate = _dec(snapshot.get("vat_rate"), str(settings.default_vat_rate))
    price_inc = round_money(change.get("price_inc_vat", snapshot.get("price_inc_vat")))
    bom_cost = round_money(snapshot.get("bom_cost_ex_vat"))
    if change.get("bom_cost_multiplier") is not None:
        bom_cost = round_money(bom_cost * _dec(change.get("bom_cost_multiplier"), "1"))
    shipping = round_money(snapshot.get("shipping_cost_ex_vat"))
    packaging = round_money(snapshot.get("packaging_cost_ex_vat"))
    fees = amazon_fees_ex_vat(
        price_inc,
        vat_rate,
        fulfillment_channel=str(snapshot.get("fulfillment_channel") or "FBM"),
        category=str(snapshot.get("category") or ""),
    )
    total_cost = round_money(bom_cost + shipping + packaging + fees)
    net_revenue = price_ex_vat(price_inc, vat_rate)
    profit = round_money(net_revenue - total_cost)
    margin = round_ratio(profit / net_revenue) if net_revenue > 0 else Decimal("0")
    return Economics(
        price_inc_vat=price_inc,
        price_ex_vat=net_revenue,
        vat_rate=vat_rate,
        bom_cost_ex_vat=bom_cost,
        shipping_cost_ex_vat=shipping,
        packaging_cost_ex_vat=packaging,
        amazon_fees_ex_vat=fees,
        total_cost_ex_vat=total_cost,
        profit_ex_vat=profit,
        margin=margin,
        break_even_price_inc_vat=break_even_price_inc_vat(total_cost, vat_rate),
    )


def listing_snapshot(listing: Any) -> dict[str, Any]:
    return {
        "listing_id": listing.id,
        "seller_sku": listing.seller_sku,
        "asin": listing.asin,
        "marketplace_id": listing.marketplace_id,
        "fulfillment_channel": listing.fulfillment_channel,
        "price_inc_vat": listing.price_inc_vat,
        "available_quantity": listing.available_quantity,
        "vat_rate": listing.vat_rate,
        "bom_cost_ex_vat": listing.bom_cost_ex_vat,
        "shipping_cost_ex_vat": listing.shipping_cost_ex_vat,
        "packaging_cost_ex_vat": listing.packaging_cost_ex_vat,
        "lead_time_days": listing.lead_time_days,
    }

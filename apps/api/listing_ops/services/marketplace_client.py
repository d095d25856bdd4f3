"""HTTP adapters for the price-history provider and the marketplace listings API.

Failures are mapped onto the job error taxonomy here so handlers never see
raw ``httpx`` exceptions. Without marketplace credentials the publish and
offer calls run in simulated mode and return ``{"simulated": True}``.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Any
from urllib.parse import quote

import httpx

from listing_ops.core.config import settings
from listing_ops.core.credentials import MarketplaceCredentials, PriceDataCredentials
from listing_ops.core.exceptions import (
    MarketDataNotFoundError,
    MarketDataUnavailableError,
    MarketplacePublishError,
    PermanentJobError,
)
from listing_ops.models.jobs import utc_now

_LOGGER = logging.getLogger(__name__)

# Keepa minutes are counted from 2011-01-01.
_KEEPA_EPOCH_MINUTES = 21564000
_HISTORY_WINDOW_DAYS = 90
_KEEPA_NEW_PRICE = 1
_KEEPA_SALES_RANK = 3


def _timeout() -> httpx.Timeout:
    return httpx.Timeout(float(settings.marketplace_timeout_seconds))


def _request_json(
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    source: str,
) -> dict[str, Any]:
    try:
        with httpx.Client(timeout=_timeout()) as client:
            resp = client.request(method=method, url=url, params=params, json=json_body, data=data, headers=headers)
    except httpx.TimeoutException as exc:
        raise MarketDataUnavailableError(f"{source} request timed out") from exc
    except httpx.TransportError as exc:
        raise MarketDataUnavailableError(f"{source} transport error: {exc.__class__.__name__}") from exc

    status = int(resp.status_code)
    if status == 404:
        raise MarketDataNotFoundError(f"{source} returned 404")
    if status == 429 or status >= 500:
        raise MarketDataUnavailableError(f"{source} returned {status}")
    if status >= 400:
        raise PermanentJobError(f"{source} request failed: {status} {resp.text.strip()[:300]}")
    try:
        payload = resp.json()
    except ValueError as exc:
        raise MarketDataUnavailableError(f"{source} returned a non-JSON body") from exc
    return payload if isinstance(payload, dict) else {"data": payload}


def _percentile(sorted_values: list[float], pct: float) -> float:
    index = (pct / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return sorted_values[lower]
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * (index - lower)


def _window_values(series: list[Any] | None, days: int, now_ms: float) -> list[tuple[float, float]]:
    if not series:
        return []
    cutoff = now_ms - days * 24 * 60 * 60 * 1000
    points: list[tuple[float, float]] = []
    for i in range(0, len(series) - 1, 2):
        timestamp = (float(series[i]) + _KEEPA_EPOCH_MINUTES) * 60 * 1000
        value = series[i + 1]
        if value is None or float(value) <= 0 or timestamp < cutoff:
            continue
        points.append((timestamp, float(value)))
    return points


def price_stats(series: list[Any] | None, *, days: int = _HISTORY_WINDOW_DAYS, now_ms: float | None = None) -> dict[str, Any]:
    """Median, quartiles, range and coefficient of variation over ``days``.

    Keepa series alternate ``[keepa_minute, price_in_pence, ...]``.
    """
    current_ms = now_ms if now_ms is not None else time.time() * 1000
    prices = sorted(value for _, value in _window_values(series, days, current_ms))
    if not prices:
        return {"median": None, "p25": None, "p75": None, "min": None, "max": None, "volatility": None}
    mean = sum(prices) / len(prices)
    variance = sum((price - mean) ** 2 for price in prices) / len(prices)
    return {
        "median": _percentile(prices, 50),
        "p25": _percentile(prices, 25),
        "p75": _percentile(prices, 75),
        "min": prices[0],
        "max": prices[-1],
        "volatility": round(math.sqrt(variance) / mean, 3) if mean > 0 else 0.0,
    }


def series_trend(series: list[Any] | None, *, days: int = _HISTORY_WINDOW_DAYS, now_ms: float | None = None) -> float | None:
    current_ms = now_ms if now_ms is not None else time.time() * 1000
    midpoint = current_ms - (days / 2) * 24 * 60 * 60 * 1000
    first: list[float] = []
    second: list[float] = []
    for timestamp, value in _window_values(series, days, current_ms):
        (first if timestamp < midpoint else second).append(value)
    if not first or not second:
        return None
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    return round((second_avg - first_avg) / first_avg, 3)


def _pence(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    amount = float(value)
    return amount / 100 if amount > 0 else None


def _stat_at(stats: dict[str, Any], key: str, index: int) -> Any:
    values = stats.get(key)
    if isinstance(values, list) and len(values) > index:
        return values[index]
    return None


def parse_price_history(raw: dict[str, Any], *, now_ms: float | None = None) -> dict[str, Any]:
    products = raw.get("products")
    if not isinstance(products, list) or not products:
        raise MarketDataNotFoundError("price history provider returned no product")
    product = products[0] if isinstance(products[0], dict) else {}
    stats = product.get("stats") if isinstance(product.get("stats"), dict) else {}
    csv = product.get("csv") if isinstance(product.get("csv"), list) else []
    new_prices = csv[_KEEPA_NEW_PRICE] if len(csv) > _KEEPA_NEW_PRICE else None
    ranks = csv[_KEEPA_SALES_RANK] if len(csv) > _KEEPA_SALES_RANK else None
    band = price_stats(new_prices, now_ms=now_ms)
    offers = product.get("offers") if isinstance(product.get("offers"), list) else []
    rank_current = _stat_at(stats, "current", _KEEPA_SALES_RANK)
    return {
        "asin": product.get("asin"),
        "title": product.get("title"),
        "brand": product.get("brand"),
        "price_current": _pence(_stat_at(stats, "current", _KEEPA_NEW_PRICE)),
        "price_median_90d": _pence(band["median"]),
        "price_p25_90d": _pence(band["p25"]),
        "price_p75_90d": _pence(band["p75"]),
        "price_min_90d": _pence(band["min"]),
        "price_max_90d": _pence(band["max"]),
        "price_volatility_90d": band["volatility"],
        "sales_rank_current": int(rank_current) if rank_current and int(rank_current) > 0 else None,
        "sales_rank_trend_90d": series_trend(ranks, now_ms=now_ms),
        "offers_count_current": len(offers),
        "offers_fba_count": sum(1 for offer in offers if isinstance(offer, dict) and offer.get("isFBA")),
        "buy_box_price": _pence(stats.get("buyBoxPrice")),
    }


def fetch_price_history(asin: str, credentials: PriceDataCredentials) -> dict[str, Any]:
    started = time.perf_counter()
    raw = _request_json(
        "GET",
        settings.price_data_base_url.rstrip("/") + "/product",
        params={
            "key": credentials.api_key,
            "domain": str(credentials.domain),
            "asin": asin,
            "stats": str(_HISTORY_WINDOW_DAYS),
            "history": "1",
            "offers": "20",
        },
        source="keepa",
    )
    if raw.get("error"):
        error = raw["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise PermanentJobError(f"keepa error: {message}")
    metrics = parse_price_history(raw)
    _LOGGER.info(
        "price_history_fetched asin=%s elapsed_ms=%s offers=%s",
        asin,
        int((time.perf_counter() - started) * 1000),
        metrics["offers_count_current"],
    )
    return {"metrics": metrics, "fetched_at": utc_now().isoformat()}


def _access_token(credentials: MarketplaceCredentials) -> str:
    payload = _request_json(
        "POST",
        settings.marketplace_token_url,
        data={
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        },
        source="marketplace_auth",
    )
    token = str(payload.get("access_token") or "")
    if not token:
        raise PermanentJobError("marketplace auth returned no access token")
    return token


def _auth_headers(credentials: MarketplaceCredentials) -> dict[str, str]:
    return {"x-amz-access-token": _access_token(credentials), "content-type": "application/json"}


def fetch_offer_summary(asin: str, credentials: MarketplaceCredentials | None) -> dict[str, Any]:
    if credentials is None:
        return {"buy_box_status": "UNKNOWN", "buy_box_percentage_30d": None, "simulated": True}
    url = (
        settings.marketplace_base_url.rstrip("/")
        + f"/products/pricing/v0/items/{quote(asin, safe='')}/offers"
    )
    payload = _request_json(
        "GET",
        url,
        params={"MarketplaceId": credentials.marketplace_id, "ItemCondition": "New"},
        headers=_auth_headers(credentials),
        source="sp_api",
    )
    offers = (payload.get("payload") or {}).get("Offers") or []
    ours = [
        offer
        for offer in offers
        if isinstance(offer, dict) and str(offer.get("SellerId") or "") == credentials.seller_id
    ]
    if not offers:
        status = "UNKNOWN"
    elif any(offer.get("IsBuyBoxWinner") for offer in ours):
        status = "WON"
    else:
        status = "LOST"
    return {"buy_box_status": status, "buy_box_percentage_30d": None, "offers_count": len(offers)}


def _patch_listing(
    seller_sku: str,
    credentials: MarketplaceCredentials,
    patches: list[dict[str, Any]],
) -> dict[str, Any]:
    url = (
        settings.marketplace_base_url.rstrip("/")
        + f"/listings/2021-08-01/items/{quote(credentials.seller_id, safe='')}/{quote(seller_sku, safe='')}"
    )
    try:
        payload = _request_json(
            "PATCH",
            url,
            params={"marketplaceIds": credentials.marketplace_id},
            json_body={"productType": "PRODUCT", "patches": patches},
            headers=_auth_headers(credentials),
            source="sp_api",
        )
    except MarketDataUnavailableError as exc:
        raise MarketplacePublishError(str(exc), retryable=True) from exc
    except PermanentJobError as exc:
        raise MarketplacePublishError(str(exc), retryable=False) from exc

    status = str(payload.get("status") or "UNKNOWN").upper()
    if status == "INVALID":
        issues = payload.get("issues") or []
        raise MarketplacePublishError(f"marketplace rejected update: {issues}"[:1000], retryable=False)
    return {
        "status": "success" if status in {"ACCEPTED", "VALID"} else "pending",
        "marketplace_status": status,
        "submission_id": payload.get("submissionId"),
    }


def publish_price(
    seller_sku: str,
    price_inc_vat: float,
    credentials: MarketplaceCredentials | None,
) -> dict[str, Any]:
    if credentials is None:
        _LOGGER.info("publish_price_simulated seller_sku=%s", seller_sku)
        return {"status": "success", "simulated": True, "new_price": price_inc_vat}
    result = _patch_listing(
        seller_sku,
        credentials,
        [
            {
                "op": "replace",
                "path": "/attributes/purchasable_offer",
                "value": [
                    {
                        "marketplace_id": credentials.marketplace_id,
                        "currency": "GBP",
                        "our_price": [{"schedule": [{"value_with_tax": price_inc_vat}]}],
                    }
                ],
            }
        ],
    )
    _LOGGER.info("publish_price seller_sku=%s status=%s", seller_sku, result["marketplace_status"])
    return {**result, "new_price": price_inc_vat}


def publish_stock(
    seller_sku: str,
    quantity: int,
    fulfillment_channel: str,
    credentials: MarketplaceCredentials | None,
) -> dict[str, Any]:
    if str(fulfillment_channel or "").upper() == "FBA":
        return {"status": "skipped", "reason": "FBA inventory managed by marketplace", "new_quantity": quantity}
    if credentials is None:
        _LOGGER.info("publish_stock_simulated seller_sku=%s", seller_sku)
        return {"status": "success", "simulated": True, "new_quantity": quantity}
    result = _patch_listing(
        seller_sku,
        credentials,
        [
            {
                "op": "replace",
                "path": "/attributes/fulfillment_availability",
                "value": [{"fulfillment_channel_code": "DEFAULT", "quantity": int(quantity)}],
            }
        ],
    )
    _LOGGER.info("publish_stock seller_sku=%s status=%s", seller_sku, result["marketplace_status"])
    return {**result, "new_quantity": quantity}

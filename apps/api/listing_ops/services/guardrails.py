from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from listing_ops.core.config import settings
from listing_ops.services.economics import Economics


@dataclass(frozen=True)
class GuardrailLimits:
    min_margin: float
    max_price_change_pct_per_day: float
    min_days_of_cover_before_price_change: int
    min_stock_threshold: int
    allow_price_below_break_even: bool

    @classmethod
    def from_settings(cls) -> "GuardrailLimits":
        policy = settings.policy
        return cls(
            min_margin=float(policy.guardrail_min_margin),
            max_price_change_pct_per_day=float(policy.guardrail_max_price_change_pct_per_day),
            min_days_of_cover_before_price_change=int(policy.guardrail_min_days_of_cover_before_price_change),
            min_stock_threshold=int(policy.guardrail_min_stock_threshold),
            allow_price_below_break_even=bool(policy.guardrail_allow_price_below_break_even),
        )


@dataclass
class GuardrailResult:
    passed: bool
    violations: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "violations": list(self.violations)}


def _violation(rule: str, threshold: Any, actual: Any, message: str, severity: str = "error") -> dict[str, Any]:
    return {
        "rule": rule,
        "threshold": threshold,
        "actual": actual,
        "message": message,
        "severity": severity,
    }


def evaluate_price_change(
    snapshot: Mapping[str, Any],
    new_economics: Economics,
    *,
    days_of_cover: float | None = None,
    limits: GuardrailLimits | None = None,
) -> GuardrailResult:
    limits = limits or GuardrailLimits.from_settings()
    violations: list[dict[str, Any]] = []
    new_price = float(new_economics.price_inc_vat)
    current_price = float(snapshot.get("price_inc_vat") or 0.0)
    margin = float(new_economics.margin)
    break_even = float(new_economics.break_even_price_inc_vat)

    if new_price <= 0:
        violations.append(_violation("invalid_price", 0.01, new_price, "price must be positive", "critical"))
    if margin < limits.min_margin:
        violations.append(
            _violation(
                "min_margin",
                limits.min_margin,
                margin,
                f"margin {margin * 100:.1f}% is below minimum {limits.min_margin * 100:.1f}%",
            )
        )
    if not limits.allow_price_below_break_even and new_price < break_even:
        violations.append(
            _violation(
                "price_below_break_even",
                break_even,
                new_price,
                f"price {new_price:.2f} is below break-even {break_even:.2f}",
            )
        )
    if current_price > 0:
        change_pct = abs(new_price - current_price) / current_price
        if change_pct > limits.max_price_change_pct_per_day:
            violations.append(
                _violation(
                    "max_price_change_pct_per_day",
                    limits.max_price_change_pct_per_day,
                    round(change_pct, 4),
                    f"price change {change_pct * 100:.1f}% exceeds maximum "
                    f"{limits.max_price_change_pct_per_day * 100:.1f}% per day",
                )
            )
    is_decrease = current_price > 0 and new_price < current_price
    if is_decrease and days_of_cover is not None and days_of_cover < limits.min_days_of_cover_before_price_change:
        violations.append(
            _violation(
                "min_days_of_cover_before_price_change",
                limits.min_days_of_cover_before_price_change,
                round(days_of_cover, 2),
                f"only {days_of_cover:.1f} days of cover before a price decrease",
            )
        )
    return GuardrailResult(passed=not violations, violations=violations)


def evaluate_stock_change(
    snapshot: Mapping[str, Any],
    new_quantity: int,
    *,
    limits: GuardrailLimits | None = None,
) -> GuardrailResult:
    """Stock warnings never block; only a negative quantity fails."""
    limits = limits or GuardrailLimits.from_settings()
    violations: list[dict[str, Any]] = []
    if new_quantity < 0:
        violations.append(
            _violation("invalid_quantity", 0, new_quantity, "stock quantity cannot be negative", "critical")
        )
    if 0 < new_quantity < limits.min_stock_threshold:
        violations.append(
            _violation(
                "min_stock_threshold",
                limits.min_stock_threshold,
                new_quantity,
                f"stock {new_quantity} is below minimum threshold {limits.min_stock_threshold}",
                "warning",
            )
        )
    if new_quantity == 0:
        violations.append(
            _violation("zero_stock", 1, 0, "setting stock to zero marks the listing out of stock", "warning")
        )
    passed = not any(item["severity"] == "critical" for item in violations)
    return GuardrailResult(passed=passed, violations=violations)


def days_of_cover(quantity: int, sales_velocity: float | None) -> float | None:
    if not sales_velocity or sales_velocity <= 0:
        return None
    return quantity / sales_velocity


def stockout_risk(days: float | None, lead_time_days: int = 14) -> str:
    if days is None:
        return "LOW"
    if days <= lead_time_days * 0.5:
        return "HIGH"
    if days <= lead_time_days:
        return "MEDIUM"
    return "LOW"

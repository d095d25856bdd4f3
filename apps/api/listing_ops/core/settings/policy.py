from __future__ import annotations

from typing import Any


class PolicySettings:
    """Proxy view for guardrail/economics/recommendation policy settings on root Settings."""

    FIELD_NAMES: tuple[str, ...] = (
        "guardrail_min_margin",
        "guardrail_max_price_change_pct_per_day",
        "guardrail_min_days_of_cover_before_price_change",
        "guardrail_min_stock_threshold",
        "guardrail_allow_price_below_break_even",
        "referral_fee_rate",
        "fba_fee_default",
        "default_vat_rate",
        "recommendation_expiry_days",
        "recommendation_snooze_days",
        "recommendation_anomaly_threshold",
        "recommendation_opportunity_margin",
        "feature_version",
    )

    def __init__(self, root: Any) -> None:
        object.__setattr__(self, "_root", root)

    def __getattr__(self, name: str) -> Any:
        if name in self.FIELD_NAMES:
            return getattr(self._root, name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.FIELD_NAMES:
            setattr(self._root, name, value)
            return
        object.__setattr__(self, name, value)

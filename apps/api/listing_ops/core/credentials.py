from __future__ import annotations

from dataclasses import dataclass, field

from listing_ops.core.config import settings
from listing_ops.core.exceptions import CredentialsMissingError


def _mask(value: str) -> str:
    if not value:
        return ""
    return "***" + value[-2:] if len(value) > 6 else "***"


@dataclass(frozen=True)
class MarketplaceCredentials:
    refresh_token: str = field(repr=False)
    client_id: str
    client_secret: str = field(repr=False)
    seller_id: str
    marketplace_id: str

    def __repr__(self) -> str:
        return (
            "MarketplaceCredentials("
            f"client_id={_mask(self.client_id)!r}, seller_id={self.seller_id!r}, "
            f"marketplace_id={self.marketplace_id!r})"
        )


@dataclass(frozen=True)
class PriceDataCredentials:
    api_key: str = field(repr=False)
    domain: int

    def __repr__(self) -> str:
        return f"PriceDataCredentials(api_key={_mask(self.api_key)!r}, domain={self.domain})"


_MARKETPLACE_FIELDS = (
    ("SP_API_REFRESH_TOKEN", "marketplace_refresh_token"),
    ("SP_API_CLIENT_ID", "marketplace_client_id"),
    ("SP_API_CLIENT_SECRET", "marketplace_client_secret"),
    ("SP_API_SELLER_ID", "marketplace_seller_id"),
)


def has_marketplace_credentials() -> bool:
    return all(str(getattr(settings, attr) or "").strip() for _, attr in _MARKETPLACE_FIELDS)


def get_marketplace_credentials() -> MarketplaceCredentials:
    missing = [env for env, attr in _MARKETPLACE_FIELDS if not str(getattr(settings, attr) or "").strip()]
    if missing:
        raise CredentialsMissingError(missing)
    return MarketplaceCredentials(
        refresh_token=settings.marketplace_refresh_token,
        client_id=settings.marketplace_client_id,
        client_secret=settings.marketplace_client_secret,
        seller_id=settings.marketplace_seller_id,
        marketplace_id=settings.marketplace_id,
    )


def has_price_data_credentials() -> bool:
    return bool(str(settings.price_data_api_key or "").strip())


def get_price_data_credentials() -> PriceDataCredentials:
    if not has_price_data_credentials():
        raise CredentialsMissingError(["KEEPA_API_KEY"])
    return PriceDataCredentials(api_key=settings.price_data_api_key, domain=int(settings.price_data_domain))

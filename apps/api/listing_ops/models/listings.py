from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from listing_ops.models.jobs import utc_now


class Listing(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("seller_sku", "marketplace_id", name="uq_listing_sku_marketplace"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    seller_sku: str = Field(max_length=128, index=True)
    asin: str = Field(default="", max_length=16, index=True)
    marketplace_id: str = Field(default="A1F83G8C2ARO7P", max_length=32)
    status: str = Field(default="ACTIVE", max_length=16, index=True)
    fulfillment_channel: str = Field(default="FBM", max_length=8)
    price_inc_vat: float = Field(default=0.0)
    available_quantity: int = Field(default=0)
    vat_rate: float = Field(default=0.20)
    bom_cost_ex_vat: float = Field(default=0.0)
    shipping_cost_ex_vat: float = Field(default=0.0)
    packaging_cost_ex_vat: float = Field(default=0.0)
    lead_time_days: int = Field(default=14)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class AsinEntity(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("asin", "marketplace_id", name="uq_asin_entity_marketplace"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    asin: str = Field(max_length=16, index=True)
    marketplace_id: str = Field(default="A1F83G8C2ARO7P", max_length=32)
    title: str = Field(default="", max_length=512)
    brand: str = Field(default="", max_length=128)
    category: str = Field(default="", max_length=128)
    vat_rate: float = Field(default=0.20)
    scenario_cost_ex_vat: float = Field(default=0.0)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class ListingEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: int = Field(foreign_key="listing.id", index=True)
    event_type: str = Field(max_length=48, index=True)
    job_id: Optional[int] = Field(default=None, index=True)
    before: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    after: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    reason: str = Field(default="", max_length=1000)
    created_by: str = Field(default="system", max_length=128)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)


class MarketSnapshot(SQLModel, table=True):
    __table_args__ = (
        Index("ix_market_snapshot_entity_captured", "entity_type", "entity_id", "captured_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(max_length=16)
    entity_id: int = Field(index=True)
    source: str = Field(max_length=32, index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    captured_at: datetime = Field(default_factory=utc_now, nullable=False)


class SalesDaily(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("listing_id", "sale_date", name="uq_sales_daily_listing_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: int = Field(foreign_key="listing.id", index=True)
    sale_date: datetime = Field(nullable=False, index=True)
    units: int = Field(default=0)
    revenue_inc_vat: float = Field(default=0.0)

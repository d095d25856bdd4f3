from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from listing_ops.models.jobs import utc_now


class RecommendationType(str, Enum):
    PRICE_DECREASE_REGAIN_BUYBOX = "PRICE_DECREASE_REGAIN_BUYBOX"
    PRICE_INCREASE_MARGIN_OPPORTUNITY = "PRICE_INCREASE_MARGIN_OPPORTUNITY"
    STOCK_INCREASE_STOCKOUT_RISK = "STOCK_INCREASE_STOCKOUT_RISK"
    MARGIN_AT_RISK_COMPONENT_COST = "MARGIN_AT_RISK_COMPONENT_COST"
    ANOMALY_SALES_DROP = "ANOMALY_SALES_DROP"
    OPPORTUNITY_CREATE_LISTING = "OPPORTUNITY_CREATE_LISTING"


class RecommendationStatus(str, Enum):
    OPEN = "OPEN"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    SNOOZED = "SNOOZED"
    SUPERSEDED = "SUPERSEDED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"


class Recommendation(SQLModel, table=True):
    __table_args__ = (
        Index("ix_recommendation_entity_status", "entity_type", "entity_id", "status"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recommendation_type: str = Field(max_length=64, index=True)
    entity_type: str = Field(max_length=16)
    entity_id: int = Field(index=True)
    status: str = Field(default=RecommendationStatus.OPEN.value, max_length=16, index=True)
    action_payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    evidence: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    guardrails: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    impact: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    confidence: str = Field(default="MEDIUM", max_length=8)
    confidence_score: float = Field(default=0.5)
    generation_job_id: Optional[int] = Field(default=None, index=True)
    applied_job_id: Optional[int] = Field(default=None)
    generated_at: datetime = Field(default_factory=utc_now, nullable=False)
    expires_at: Optional[datetime] = Field(default=None)
    accepted_at: Optional[datetime] = Field(default=None)
    rejected_at: Optional[datetime] = Field(default=None)
    snoozed_until: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class RecommendationEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    recommendation_id: int = Field(foreign_key="recommendation.id", index=True)
    event_type: str = Field(max_length=32, index=True)
    job_id: Optional[int] = Field(default=None)
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    reason: str = Field(default="", max_length=1000)
    created_by: str = Field(default="system", max_length=128)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from listing_ops.models.jobs import utc_now


class FeatureSnapshot(SQLModel, table=True):
    __table_args__ = (
        Index("ix_feature_snapshot_entity_computed", "entity_type", "entity_id", "computed_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(max_length=16, index=True)
    entity_id: int = Field(index=True)
    feature_version: int = Field(default=1)
    features: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    content_hash: str = Field(max_length=64, index=True)
    computed_at: datetime = Field(default_factory=utc_now, nullable=False)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)

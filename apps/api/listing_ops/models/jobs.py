from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobType(str, Enum):
    SYNC_MARKET_DATA = "SYNC_MARKET_DATA"
    COMPUTE_FEATURES = "COMPUTE_FEATURES"
    GENERATE_RECOMMENDATIONS = "GENERATE_RECOMMENDATIONS"
    PUBLISH_PRICE_CHANGE = "PUBLISH_PRICE_CHANGE"
    PUBLISH_STOCK_CHANGE = "PUBLISH_STOCK_CHANGE"


PUBLISH_JOB_TYPES = frozenset({JobType.PUBLISH_PRICE_CHANGE, JobType.PUBLISH_STOCK_CHANGE})


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})


class ScopeType(str, Enum):
    LISTING = "LISTING"
    ASIN = "ASIN"
    GLOBAL = "GLOBAL"


class Job(SQLModel, table=True):
    __table_args__ = (
        Index("ix_job_claim", "status", "priority", "scheduled_for"),
        Index("ix_job_scope_type_status", "scope_type", "entity_id", "job_type", "status"),
        Index("ix_job_status_updated", "status", "updated_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    job_type: str = Field(index=True, max_length=64)
    scope_type: str = Field(default=ScopeType.GLOBAL.value, max_length=16)
    entity_id: Optional[int] = Field(default=None, index=True)
    status: str = Field(default=JobStatus.PENDING.value, index=True, max_length=16)
    priority: int = Field(default=5)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    scheduled_for: datetime = Field(default_factory=utc_now, nullable=False, index=True)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    locked_by: str = Field(default="", max_length=128)
    input_payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    job_metadata: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    result_payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    log_entries: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    last_error: str = Field(default="", max_length=4000)
    created_by: str = Field(default="system", max_length=128)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class JobDeadLetter(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(index=True)
    job_type: str = Field(max_length=64, index=True)
    scope_type: str = Field(max_length=16)
    entity_id: Optional[int] = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    attempts: int = Field(default=0)
    last_error: str = Field(default="", max_length=4000)
    failed_at: datetime = Field(default_factory=utc_now, nullable=False, index=True)
    resolved_at: Optional[datetime] = Field(default=None)
    resolution_notes: str = Field(default="", max_length=1000)

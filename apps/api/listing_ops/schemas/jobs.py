from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobCreateRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=64)
    scope_type: str = Field(default="GLOBAL", max_length=16)
    entity_id: Optional[int] = Field(default=None, ge=1)
    input_payload: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=50)
    reason: str = Field(default="", max_length=1000)
    allow_guardrail_violations: bool = False


class JobRead(BaseModel):
    id: int
    job_type: str
    scope_type: str
    entity_id: Optional[int]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    locked_by: str
    input_payload: dict[str, Any]
    job_metadata: dict[str, Any]
    result_payload: dict[str, Any]
    log_entries: list[dict[str, Any]]
    last_error: str
    created_by: str
    created_at: datetime
    updated_at: datetime


class JobConflictRead(BaseModel):
    detail: str
    existing_job_id: int


class JobCancelRequest(BaseModel):
    reason: str = Field(default="", max_length=1000)


class JobStatsRead(BaseModel):
    counts: dict[str, int]
    total: int


class JobDeadLetterRead(BaseModel):
    id: int
    job_id: int
    job_type: str
    scope_type: str
    entity_id: Optional[int]
    payload: dict[str, Any]
    attempts: int
    last_error: str
    failed_at: datetime
    resolved_at: Optional[datetime]


class PublishRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=64)
    input_payload: dict[str, Any] = Field(default_factory=dict)
    reason: str = Field(default="", max_length=1000)
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    allow_guardrail_violations: bool = False


class PublishPreviewRead(BaseModel):
    listing_id: int
    job_type: str
    current: dict[str, Any]
    proposed: dict[str, Any]
    economics: dict[str, Any]
    guardrails: dict[str, Any]


class FeatureSnapshotRead(BaseModel):
    id: int
    entity_type: str
    entity_id: int
    feature_version: int
    features: dict[str, Any]
    content_hash: str
    computed_at: datetime


class RecommendationRead(BaseModel):
    id: int
    recommendation_type: str
    entity_type: str
    entity_id: int
    status: str
    action_payload: dict[str, Any]
    evidence: dict[str, Any]
    guardrails: dict[str, Any]
    impact: dict[str, Any]
    confidence: str
    confidence_score: float
    generation_job_id: Optional[int]
    applied_job_id: Optional[int]
    generated_at: datetime
    expires_at: Optional[datetime]
    snoozed_until: Optional[datetime]
    updated_at: datetime


class RecommendationDecisionRequest(BaseModel):
    reason: str = Field(default="", max_length=1000)


class RecommendationSnoozeRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1, le=90)
    reason: str = Field(default="", max_length=1000)


class RecommendationApplyRead(BaseModel):
    recommendation: RecommendationRead
    job: JobRead
    created: bool

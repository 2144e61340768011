import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    selector: dict[str, Any]
    transform: dict[str, Any]
    policy: dict[str, Any] | None = None
    platform: str = "shopify"
    enabled: bool = True
    schedule_at: datetime | None = None

    @field_validator("schedule_at")
    @classmethod
    def schedule_in_utc(cls, value: datetime | None) -> datetime | None:
        return _naive_utc(value)


class RuleSchedule(BaseModel):
    schedule_at: datetime | None = None

    @field_validator("schedule_at")
    @classmethod
    def schedule_in_utc(cls, value: datetime | None) -> datetime | None:
        return _naive_utc(value)


class RulePolicy(BaseModel):
    """null clears the policy."""
    policy: dict[str, Any] | None = None


class RuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    project_id: str
    name: str
    description: str | None = None
    selector: dict[str, Any]
    transform: dict[str, Any]
    policy: dict[str, Any] | None = None
    platform: str
    enabled: bool
    schedule_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TargetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    position: int
    product_id: uuid.UUID
    sku: str | None = None
    external_ref: str | None = None
    before: dict[str, Any]
    after: dict[str, Any]
    status: str
    error_message: str | None = None


class RunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    rule_id: uuid.UUID
    platform: str
    status: str
    trigger: str
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    explain: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime


class RunDetail(RunRead):
    targets: list[TargetRead] = Field(default_factory=list)


class ApplyAccepted(BaseModel):
    run_id: uuid.UUID
    status: str
    target_count: int
    request_id: str | None = None


class DeadLetterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    original_id: uuid.UUID
    event_type: str
    payload: dict[str, Any]
    tenant_id: str
    correlation_id: str | None = None
    aggregate_id: str | None = None
    failure_reason: str
    attempts: int
    resolution: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from pricehub.db.base_class import Base, JSONType, TimestampMixin


class RunStatus:
    QUEUED = "QUEUED"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    ACTIVE = (QUEUED, APPLYING)
    TERMINAL = (APPLIED, PARTIAL, FAILED)
    ALL = (QUEUED, APPLYING, APPLIED, PARTIAL, FAILED)


class TargetStatus:
    QUEUED = "QUEUED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"

    TERMINAL = (APPLIED, FAILED)
    ALL = (QUEUED, APPLIED, FAILED)


# Allowed run transitions; terminal -> QUEUED is the operator re-queue
RUN_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RunStatus.QUEUED: (RunStatus.APPLYING,),
    RunStatus.APPLYING: (RunStatus.APPLIED, RunStatus.PARTIAL, RunStatus.FAILED, RunStatus.QUEUED),
    RunStatus.APPLIED: (RunStatus.QUEUED,),
    RunStatus.PARTIAL: (RunStatus.QUEUED,),
    RunStatus.FAILED: (RunStatus.QUEUED,),
}

TARGET_TRANSITIONS: dict[str, tuple[str, ...]] = {
    TargetStatus.QUEUED: (TargetStatus.APPLIED, TargetStatus.FAILED),
    TargetStatus.APPLIED: (),
    TargetStatus.FAILED: (TargetStatus.QUEUED,),
}


def can_transition_run(current: str, new: str) -> bool:
    return new in RUN_TRANSITIONS.get(current, ())


def can_transition_target(current: str, new: str) -> bool:
    return new in TARGET_TRANSITIONS.get(current, ())


def final_run_status(success_count: int, error_count: int, partial_status: bool = True) -> str:
    """FAILED only when every target failed; mixed outcomes are PARTIAL (or APPLIED when disabled)."""
    if error_count == 0:
        return RunStatus.APPLIED
    if success_count == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIAL if partial_status else RunStatus.APPLIED


class PricingRule(Base, TimestampMixin):
    __tablename__ = "pricing_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    selector: Mapped[dict[str, Any]] = mapped_column(JSONType, comment="Serialized predicate tree")
    transform: Mapped[dict[str, Any]] = mapped_column(JSONType, comment="Serialized mutation descriptor")
    policy: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True,
                                                        comment="Guardrails that reject a proposed price")
    platform: Mapped[str] = mapped_column(String(50), default="shopify", comment="Connector used to apply the rule")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    schedule_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True,
                                                         comment="NULL means manual trigger only")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RuleRun(Base, TimestampMixin):
    __tablename__ = "rule_runs"
    __table_args__ = (
        # At most one non-terminal run per (rule, trigger time)
        Index(
            "uq_rule_runs_active_schedule",
            "rule_id",
            "scheduled_for",
            unique=True,
            postgresql_where=text("status IN ('QUEUED', 'APPLYING')"),
            sqlite_where=text("status IN ('QUEUED', 'APPLYING')"),
        ),
        Index("ix_rule_runs_status_created_at", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    rule_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pricing_rules.id"), index=True)
    platform: Mapped[str] = mapped_column(String(50), default="shopify")
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.QUEUED,
                                        comment="QUEUED, APPLYING, APPLIED, PARTIAL, FAILED")
    trigger: Mapped[str] = mapped_column(String(20), default="scheduler", comment="scheduler or manual")
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    explain: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class RuleTarget(Base, TimestampMixin):
    __tablename__ = "rule_targets"
    __table_args__ = (
        Index("ix_rule_targets_run_status", "rule_run_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    rule_run_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("rule_runs.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0, comment="Creation order within the run")
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True,
                                                     comment="Connector-side variant identifier")
    before: Mapped[dict[str, Any]] = mapped_column(JSONType)
    after: Mapped[dict[str, Any]] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String(20), default=TargetStatus.QUEUED, comment="QUEUED, APPLIED, FAILED")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

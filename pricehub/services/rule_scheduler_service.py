import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricehub.core.config import Settings, settings
from pricehub.core.errors import NoTargetsError, PolicyError, RuleNotFoundError, RunConflictError, TransformError
from pricehub.core.observability import log_step
from pricehub.db.base_class import utcnow
from pricehub.models.rule import PricingRule, RuleRun, RuleTarget, RunStatus, TargetStatus
from pricehub.schemas.policy import PolicyEvaluation, parse_policy
from pricehub.schemas.pricing import CandidateProduct, TransformResult
from pricehub.schemas.transform import parse_transform
from pricehub.services.audit_service import AuditService
from pricehub.services.outbox_service import EventType, enqueue_event
from pricehub.services.policy_engine import evaluate_policy
from pricehub.services.selector_engine import SelectorEngine
from pricehub.services.transform_engine import apply_transform

logger = logging.getLogger(__name__)


class PlannedChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: CandidateProduct
    result: TransformResult


class BlockedChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: CandidateProduct
    result: TransformResult
    evaluation: PolicyEvaluation


class RulePlan(BaseModel):
    """Selector + transform outcome for one rule, before anything is persisted."""
    matched: int = 0
    without_price: int = 0
    unchanged: int = 0
    changes: list[PlannedChange] = Field(default_factory=list)
    blocked: list[BlockedChange] = Field(default_factory=list)

    def explain(self) -> dict[str, Any]:
        blocked_by = Counter(name for item in self.blocked for name in item.evaluation.failed_checks)
        return {
            "matchedProducts": self.matched,
            "withoutPrice": self.without_price,
            "unchanged": self.unchanged,
            "blocked": len(self.blocked),
            "blockedBy": dict(blocked_by),
            "targetCount": len(self.changes),
        }


async def plan_rule(session: AsyncSession, rule: PricingRule) -> RulePlan:
    """
    Evaluate a rule against the current catalog.

    Changes that fail the rule's policy are dropped into plan.blocked rather
    than clamped. Raises TransformError or PolicyError when the stored
    definition cannot be parsed; a bad selector matches nothing.
    """
    transform = parse_transform(rule.transform)
    policy = parse_policy(rule.policy)
    candidates = await SelectorEngine(session).evaluate(rule.selector, rule.tenant_id, rule.project_id)

    plan = RulePlan(matched=len(candidates))
    for candidate in candidates:
        before = candidate.snapshot()
        if before is None:
            plan.without_price += 1
            continue
        result = apply_transform(before, transform)
        if not result.changed:
            plan.unchanged += 1
            continue
        if policy is not None:
            evaluation = evaluate_policy(before.amount, result.after.amount, policy)
            if not evaluation.ok:
                plan.blocked.append(BlockedChange(candidate=candidate, result=result, evaluation=evaluation))
                continue
        plan.changes.append(PlannedChange(candidate=candidate, result=result))
    return plan


def add_run(session: AsyncSession, rule: PricingRule, plan: RulePlan, *, trigger: str,
            scheduled_for: datetime | None, status: str = RunStatus.QUEUED,
            explain: dict[str, Any] | None = None, error_message: str | None = None) -> RuleRun:
    """Stage a run and one QUEUED target per planned change, in creation order."""
    now = utcnow()
    run = RuleRun(
        id=uuid.uuid4(),
        tenant_id=rule.tenant_id,
        project_id=rule.project_id,
        rule_id=rule.id,
        platform=rule.platform,
        status=status,
        trigger=trigger,
        scheduled_for=scheduled_for,
        explain={**plan.explain(), "trigger": trigger, "queuedAt": now.isoformat(), **(explain or {})},
        error_message=error_message,
    )
    if status in RunStatus.TERMINAL:
        run.started_at = now
        run.finished_at = now
    session.add(run)

    for position, change in enumerate(plan.changes):
        session.add(RuleTarget(
            tenant_id=rule.tenant_id,
            project_id=rule.project_id,
            rule_run_id=run.id,
            position=position,
            product_id=change.candidate.product_id,
            sku=change.candidate.sku,
            external_ref=change.candidate.external_ref(rule.platform),
            before=change.result.before.model_dump(mode="json"),
            after=change.result.after.model_dump(mode="json"),
            status=TargetStatus.QUEUED,
        ))
    return run


class RuleSchedulerService:
    """Turns due one-shot rule schedules into durable runs."""
    PROCESS_NAME = "RulesScheduler"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], config: Settings = settings):
        self.session_factory = session_factory
        self.config = config

    @log_step("scheduler.check_scheduled_rules")
    async def check_scheduled_rules(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        summary = {"due": 0, "queued": 0, "empty": 0, "invalid": 0, "skipped": 0, "errors": 0}

        async with self.session_factory() as session:
            result = await session.execute(
                select(PricingRule.id, PricingRule.schedule_at)
                .where(
                    PricingRule.enabled.is_(True),
                    PricingRule.deleted_at.is_(None),
                    PricingRule.schedule_at.is_not(None),
                    PricingRule.schedule_at <= now,
                )
                .order_by(PricingRule.schedule_at)
            )
            due = result.all()

        summary["due"] = len(due)
        if not due:
            logger.debug("No scheduled rules due")
            return summary

        for rule_id, scheduled_for in due:
            try:
                outcome = await self.materialize(rule_id, scheduled_for)
            except Exception as e:
                summary["errors"] += 1
                logger.error("Failed to queue scheduled rule %s: %s", rule_id, e, exc_info=True,
                             extra={"extra": {"rule_id": str(rule_id), "process": self.PROCESS_NAME}})
                continue
            summary[outcome] += 1

        logger.info("Scheduler cycle finished", extra={"extra": {"process": self.PROCESS_NAME, **summary}})
        return summary

    async def materialize(self, rule_id: uuid.UUID, scheduled_for: datetime) -> str:
        """
        Create the run for one due rule.

        Run, targets, audit entry, outbox event and the cleared schedule are
        committed together. Returns queued, empty, invalid or skipped.
        """
        async with self.session_factory() as session:
            rule = await session.get(PricingRule, rule_id)
            if rule is None or not rule.enabled or rule.deleted_at is not None or rule.schedule_at != scheduled_for:
                return "skipped"

            existing = await session.execute(
                select(RuleRun.id)
                .where(
                    RuleRun.rule_id == rule_id,
                    RuleRun.scheduled_for == scheduled_for,
                    RuleRun.status != RunStatus.FAILED,
                )
                .limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                logger.info("Rule %s already has a run for %s", rule_id, scheduled_for)
                rule.schedule_at = None
                await session.commit()
                return "skipped"

            audit = AuditService(session, actor="scheduler")
            try:
                plan = await plan_rule(session, rule)
            except (TransformError, PolicyError) as e:
                reason = "invalid transform" if isinstance(e, TransformError) else "invalid policy"
                run = add_run(session, rule, RulePlan(), trigger="scheduler", scheduled_for=scheduled_for,
                              status=RunStatus.FAILED, explain={"reason": reason}, error_message=str(e))
                audit.record(tenant_id=rule.tenant_id, project_id=rule.project_id, entity="RuleRun",
                             entity_id=run.id, action="schedule_failed", explain={"ruleId": str(rule.id), "error": str(e)})
                rule.schedule_at = None
                await session.commit()
                logger.error("Rule %s has an %s: %s", rule_id, reason, e)
                return "invalid"

            if not plan.changes:
                run = add_run(session, rule, plan, trigger="scheduler", scheduled_for=scheduled_for,
                              status=RunStatus.APPLIED,
                              explain={"reason": "blocked by policy" if plan.blocked else "no changes",
                                       "results": {"successCount": 0, "errorCount": 0, "totalTargets": 0}})
                audit.record(tenant_id=rule.tenant_id, project_id=rule.project_id, entity="RuleRun",
                             entity_id=run.id, action="schedule", explain={"ruleId": str(rule.id), "targetCount": 0})
                rule.schedule_at = None
                await session.commit()
                logger.info("Rule %s produced no changes", rule_id, extra={"extra": plan.explain()})
                return "empty"

            run = add_run(session, rule, plan, trigger="scheduler", scheduled_for=scheduled_for)
            audit.record(tenant_id=rule.tenant_id, project_id=rule.project_id, entity="RuleRun", entity_id=run.id,
                         action="schedule", correlation_id=run.id,
                         explain={"ruleId": str(rule.id), "ruleName": rule.name,
                                  "scheduledFor": scheduled_for.isoformat(), "targetCount": len(plan.changes)})
            enqueue_event(session, event_type=EventType.RULE_SCHEDULED_QUEUED, tenant_id=rule.tenant_id,
                          project_id=rule.project_id, aggregate_id=run.id, correlation_id=run.id,
                          max_retries=self.config.OUTBOX_MAX_RETRIES,
                          payload={"ruleId": str(rule.id), "runId": str(run.id),
                                   "scheduledFor": scheduled_for.isoformat(), "targetCount": len(plan.changes)})
            rule.schedule_at = None
            run_id, target_count = run.id, len(plan.changes)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Rule %s was queued concurrently for %s", rule_id, scheduled_for)
                return "skipped"

        logger.info("Queued run %s for rule %s with %d targets", run_id, rule_id, target_count)
        return "queued"


async def trigger_rule(session: AsyncSession, rule_id: uuid.UUID, tenant_id: str, project_id: str | None = None,
                       actor: str = "api", config: Settings = settings) -> RuleRun:
    """
    Queue an immediate run for an enabled rule.

    Raises RuleNotFoundError, RunConflictError when a run is already pending,
    NoTargetsError when nothing would change and TransformError or
    PolicyError for a broken definition.
    """
    rule = await session.get(PricingRule, rule_id)
    if (rule is None or rule.tenant_id != tenant_id or (project_id and rule.project_id != project_id)
            or rule.deleted_at is not None or not rule.enabled):
        raise RuleNotFoundError(f"Pricing rule {rule_id} not found or not enabled")

    pending = await session.execute(
        select(RuleRun.id).where(RuleRun.rule_id == rule_id, RuleRun.status.in_(RunStatus.ACTIVE)).limit(1)
    )
    if pending.scalar_one_or_none() is not None:
        raise RunConflictError("Rule already has a pending execution")

    plan = await plan_rule(session, rule)
    if not plan.changes:
        if plan.blocked:
            raise NoTargetsError(f"All {len(plan.blocked)} price changes were blocked by the rule policy")
        raise NoTargetsError("No products matched or no price changes needed")

    run = add_run(session, rule, plan, trigger="manual", scheduled_for=None, explain={"queuedBy": actor})
    AuditService(session, actor=actor).record(
        tenant_id=rule.tenant_id, project_id=rule.project_id, entity="RuleRun", entity_id=run.id,
        action="apply", correlation_id=run.id, explain={"ruleId": str(rule.id), "targetCount": len(plan.changes)},
    )
    enqueue_event(session, event_type=EventType.RULE_MANUAL_QUEUED, tenant_id=rule.tenant_id,
                  project_id=rule.project_id, aggregate_id=run.id, correlation_id=run.id,
                  max_retries=config.OUTBOX_MAX_RETRIES,
                  payload={"ruleId": str(rule.id), "runId": str(run.id), "targetCount": len(plan.changes),
                           "queuedBy": actor})
    await session.commit()
    logger.info("Manual run %s queued for rule %s", run.id, rule_id,
                extra={"extra": {"target_count": len(plan.changes), "actor": actor}})
    return run

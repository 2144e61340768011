import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.errors import RuleNotFoundError
from pricehub.db.base_class import utcnow
from pricehub.models.rule import PricingRule
from pricehub.schemas.policy import parse_policy
from pricehub.schemas.selector import parse_selector
from pricehub.schemas.transform import parse_transform
from pricehub.services.audit_service import AuditService
from pricehub.services.rule_scheduler_service import plan_rule

logger = logging.getLogger(__name__)

PREVIEW_SAMPLE_SIZE = 20


def _stored_policy(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    policy = parse_policy(raw)
    return None if policy is None else policy.model_dump(mode="json", exclude_none=True)


class RuleService:
    """Rule administration; selector and transform are validated before anything is stored."""

    def __init__(self, session: AsyncSession, actor: str = "api"):
        self.session = session
        self.audit = AuditService(session, actor)

    async def create(self, *, tenant_id: str, project_id: str, name: str, selector: dict[str, Any],
                     transform: dict[str, Any], description: str | None = None, platform: str = "shopify",
                     enabled: bool = True, schedule_at: datetime | None = None,
                     policy: dict[str, Any] | None = None) -> PricingRule:
        rule = PricingRule(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            project_id=project_id,
            name=name,
            description=description,
            selector=parse_selector(selector).to_dict(),
            transform=parse_transform(transform).model_dump(mode="json", exclude_none=True),
            policy=_stored_policy(policy),
            platform=platform,
            enabled=enabled,
            schedule_at=schedule_at,
        )
        self.session.add(rule)
        self.audit.record(tenant_id=tenant_id, project_id=project_id, entity="PricingRule", entity_id=rule.id,
                          action="create", explain={"name": name, "scheduleAt": schedule_at})
        await self.session.commit()
        logger.info("Rule %s created", rule.id, extra={"extra": {"tenant_id": tenant_id, "name": name}})
        return rule

    async def get(self, rule_id: uuid.UUID, tenant_id: str) -> PricingRule:
        rule = await self.session.get(PricingRule, rule_id)
        if rule is None or rule.tenant_id != tenant_id or rule.deleted_at is not None:
            raise RuleNotFoundError(f"Pricing rule {rule_id} not found")
        return rule

    async def list_rules(self, tenant_id: str, project_id: str | None = None) -> list[PricingRule]:
        stmt = (
            select(PricingRule)
            .where(PricingRule.tenant_id == tenant_id, PricingRule.deleted_at.is_(None))
            .order_by(PricingRule.created_at.desc())
        )
        if project_id:
            stmt = stmt.where(PricingRule.project_id == project_id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def set_enabled(self, rule_id: uuid.UUID, tenant_id: str, enabled: bool) -> PricingRule:
        rule = await self.get(rule_id, tenant_id)
        rule.enabled = enabled
        self.audit.record(tenant_id=tenant_id, project_id=rule.project_id, entity="PricingRule", entity_id=rule.id,
                          action="enable" if enabled else "disable")
        await self.session.commit()
        return rule

    async def set_policy(self, rule_id: uuid.UUID, tenant_id: str, policy: dict[str, Any] | None) -> PricingRule:
        """Replace or clear the rule's price policy; applies to runs planned from now on."""
        rule = await self.get(rule_id, tenant_id)
        rule.policy = _stored_policy(policy)
        self.audit.record(tenant_id=tenant_id, project_id=rule.project_id, entity="PricingRule", entity_id=rule.id,
                          action="policy_set", explain={"policy": rule.policy})
        await self.session.commit()
        return rule

    async def reschedule(self, rule_id: uuid.UUID, tenant_id: str, schedule_at: datetime | None) -> PricingRule:
        rule = await self.get(rule_id, tenant_id)
        rule.schedule_at = schedule_at
        self.audit.record(tenant_id=tenant_id, project_id=rule.project_id, entity="PricingRule", entity_id=rule.id,
                          action="schedule_set", explain={"scheduleAt": schedule_at})
        await self.session.commit()
        return rule

    async def delete(self, rule_id: uuid.UUID, tenant_id: str) -> None:
        rule = await self.get(rule_id, tenant_id)
        rule.deleted_at = utcnow()
        rule.schedule_at = None
        self.audit.record(tenant_id=tenant_id, project_id=rule.project_id, entity="PricingRule", entity_id=rule.id,
                          action="delete")
        await self.session.commit()

    async def preview(self, rule_id: uuid.UUID, tenant_id: str) -> dict[str, Any]:
        """Dry run of selector and transform; nothing is written."""
        rule = await self.get(rule_id, tenant_id)
        plan = await plan_rule(self.session, rule)
        return {
            **plan.explain(),
            "sample": [
                {
                    "productId": str(change.candidate.product_id),
                    "sku": change.candidate.sku,
                    "before": change.result.before.model_dump(),
                    "after": change.result.after.model_dump(),
                    "trace": change.result.trace.model_dump(),
                }
                for change in plan.changes[:PREVIEW_SAMPLE_SIZE]
            ],
            "blockedSample": [
                {
                    "productId": str(item.candidate.product_id),
                    "sku": item.candidate.sku,
                    "before": item.result.before.model_dump(),
                    "after": item.result.after.model_dump(),
                    "failedChecks": item.evaluation.failed_checks,
                    "checks": [check.model_dump(mode="json") for check in item.evaluation.checks],
                }
                for item in plan.blocked[:PREVIEW_SAMPLE_SIZE]
            ],
        }

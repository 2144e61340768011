import logging
import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.errors import RunConflictError, RunNotFoundError
from pricehub.models.rule import RuleRun, RuleTarget, RunStatus, TargetStatus
from pricehub.services.audit_service import AuditService

logger = logging.getLogger(__name__)


class RunService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def status_counts(self, tenant_id: str, project_id: str | None = None) -> dict[str, Any]:
        """Run and target counts by state for the operational dashboard."""
        run_stmt = select(RuleRun.status, func.count()).where(RuleRun.tenant_id == tenant_id).group_by(RuleRun.status)
        target_stmt = (
            select(RuleTarget.status, func.count()).where(RuleTarget.tenant_id == tenant_id).group_by(RuleTarget.status)
        )
        if project_id:
            run_stmt = run_stmt.where(RuleRun.project_id == project_id)
            target_stmt = target_stmt.where(RuleTarget.project_id == project_id)

        runs = {status: 0 for status in RunStatus.ALL}
        for status, count in (await self.session.execute(run_stmt)).all():
            runs[status] = count
        targets = {status: 0 for status in TargetStatus.ALL}
        for status, count in (await self.session.execute(target_stmt)).all():
            targets[status] = count
        return {"runs": runs, "targets": targets}

    async def get_run(self, run_id: uuid.UUID, tenant_id: str) -> tuple[RuleRun, list[RuleTarget]]:
        run = await self.session.get(RuleRun, run_id)
        if run is None or run.tenant_id != tenant_id:
            raise RunNotFoundError(f"Run {run_id} not found")
        targets = (await self.session.execute(
            select(RuleTarget).where(RuleTarget.rule_run_id == run_id).order_by(RuleTarget.position)
        )).scalars().all()
        return run, list(targets)

    async def list_runs(self, tenant_id: str, rule_id: uuid.UUID | None = None, status: str | None = None,
                        limit: int = 50) -> list[RuleRun]:
        stmt = select(RuleRun).where(RuleRun.tenant_id == tenant_id).order_by(RuleRun.created_at.desc()).limit(limit)
        if rule_id:
            stmt = stmt.where(RuleRun.rule_id == rule_id)
        if status:
            stmt = stmt.where(RuleRun.status == status)
        return list((await self.session.execute(stmt)).scalars().all())

    async def requeue_failed_targets(self, run_id: uuid.UUID, tenant_id: str, actor: str = "operator") -> int:
        """
        Operator retry: move FAILED targets of a terminal run back to QUEUED and
        re-queue the run. Targets already written are protected by the ledger.
        """
        run = await self.session.get(RuleRun, run_id)
        if run is None or run.tenant_id != tenant_id:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.status not in RunStatus.TERMINAL:
            raise RunConflictError(f"Run {run_id} is {run.status}; only finished runs can be retried")

        result = await self.session.execute(
            update(RuleTarget)
            .where(RuleTarget.rule_run_id == run_id, RuleTarget.status == TargetStatus.FAILED)
            .values(status=TargetStatus.QUEUED, error_message=None)
        )
        requeued = result.rowcount
        if not requeued:
            raise RunConflictError(f"Run {run_id} has no failed targets")

        previous = run.status
        run.status = RunStatus.QUEUED
        run.finished_at = None
        run.error_message = None
        run.explain = {**(run.explain or {}), "retries": (run.explain or {}).get("retries", 0) + 1}
        AuditService(self.session, actor).record(
            tenant_id=run.tenant_id, project_id=run.project_id, entity="RuleRun", entity_id=run.id,
            action="retry_failed", correlation_id=run.id,
            explain={"previousStatus": previous, "requeuedTargets": requeued},
        )
        try:
            await self.session.commit()
        except IntegrityError as e:
            # uq_rule_runs_active_schedule: a newer run for the same trigger time is still active
            await self.session.rollback()
            raise RunConflictError(
                f"Run {run_id} cannot be retried while another run for the same schedule is active") from e
        logger.info("Run %s re-queued with %d failed targets", run_id, requeued)
        return requeued

import asyncio
import logging
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricehub.core.config import Settings, settings
from pricehub.core.logging import set_correlation_id
from pricehub.core.observability import log_step
from pricehub.db.base_class import utcnow
from pricehub.integrations.connector import ConnectorRegistry, PlatformConnector, PriceUpdateResult
from pricehub.models.catalog import PriceVersion
from pricehub.models.price_change import PriceChange, PriceChangeStatus
from pricehub.models.rule import (
    RuleRun,
    RuleTarget,
    RunStatus,
    TargetStatus,
    can_transition_run,
    can_transition_target,
    final_run_status,
)
from pricehub.schemas.pricing import PriceSnapshot
from pricehub.services.audit_service import AuditService
from pricehub.services.idempotency import is_applied, make_idempotency_key, record_consumed
from pricehub.services.outbox_service import EventType, enqueue_event

logger = logging.getLogger(__name__)

ACTOR = "worker"


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Connector call timed out"
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class ApplyWorkerService:
    """
    Applies queued runs to their platform, one target at a time.

    Every external write is keyed in the idempotency ledger, so a run that is
    re-queued after a crash or an operator retry never writes the same price
    twice.
    """
    PROCESS_NAME = "RulesWorker"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], connectors: ConnectorRegistry,
                 config: Settings = settings):
        self.session_factory = session_factory
        self.connectors = connectors
        self.config = config

    @log_step("worker.poll_and_process_runs")
    async def poll_and_process_runs(self) -> dict[str, int]:
        summary = {"requeued": 0, "claimed": 0, "applied": 0, "partial": 0, "failed": 0}
        summary["requeued"] = await self.requeue_stale_runs()

        async with self.session_factory() as session:
            result = await session.execute(
                select(RuleRun.id)
                .where(RuleRun.status == RunStatus.QUEUED)
                .order_by(RuleRun.created_at, RuleRun.id)
                .limit(self.config.RULES_WORKER_BATCH_SIZE)
            )
            run_ids = list(result.scalars().all())

        if not run_ids:
            logger.debug("No queued runs")
            return summary

        for run_id in run_ids:
            if not await self.claim_run(run_id):
                logger.info("Run %s was claimed by another worker", run_id)
                continue
            summary["claimed"] += 1
            try:
                status = await self.process_run(run_id)
            except Exception as e:
                logger.error("Run %s failed: %s", run_id, e, exc_info=True,
                             extra={"extra": {"run_id": str(run_id), "process": self.PROCESS_NAME}})
                status = await self.fail_run(run_id, _describe_error(e))
            summary[status.lower()] += 1
            set_correlation_id(None)

        logger.info("Worker cycle finished", extra={"extra": {"process": self.PROCESS_NAME, **summary}})
        return summary

    async def requeue_stale_runs(self) -> int:
        """Put runs left in APPLYING by a crashed worker back in the queue."""
        cutoff = utcnow() - timedelta(seconds=self.config.RUN_STALE_AFTER_SECONDS)
        async with self.session_factory() as session:
            result = await session.execute(
                update(RuleRun)
                .where(RuleRun.status == RunStatus.APPLYING, RuleRun.started_at < cutoff)
                .values(status=RunStatus.QUEUED)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Re-queued %d stale APPLYING runs", result.rowcount)
        return result.rowcount

    async def claim_run(self, run_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(RuleRun)
                .where(RuleRun.id == run_id, RuleRun.status == RunStatus.QUEUED)
                .values(status=RunStatus.APPLYING, started_at=utcnow())
            )
            await session.commit()
        return result.rowcount == 1

    async def process_run(self, run_id: uuid.UUID) -> str:
        """Apply every QUEUED target of a claimed run and finalize it; returns the terminal status."""
        set_correlation_id(run_id)
        async with self.session_factory() as session:
            run = await session.get(RuleRun, run_id)
            if run is None:
                raise LookupError(f"Run {run_id} disappeared after claim")
            connector = self.connectors.get(run.platform)
            target_ids = list((await session.execute(
                select(RuleTarget.id)
                .where(RuleTarget.rule_run_id == run_id, RuleTarget.status == TargetStatus.QUEUED)
                .order_by(RuleTarget.position, RuleTarget.created_at)
            )).scalars().all())

        logger.info("Applying run %s: %d targets via %s", run_id, len(target_ids), run.platform)
        delay = self.config.APPLY_TARGET_DELAY_MS / 1000
        for index, target_id in enumerate(target_ids):
            await self.apply_target(connector, run, target_id)
            if delay and index < len(target_ids) - 1:
                await asyncio.sleep(delay)

        return await self.finalize_run(run_id)

    async def apply_target(self, connector: PlatformConnector, run: RuleRun, target_id: uuid.UUID) -> str:
        """Returns applied, failed or skipped."""
        async with self.session_factory() as session:
            target = await session.get(RuleTarget, target_id)
            if target is None or not can_transition_target(target.status, TargetStatus.APPLIED):
                return "skipped"

            if not target.external_ref:
                await self._fail_target(session, run, target,
                                        f"Product {target.sku or target.product_id} has no {run.platform} variant reference")
                return "failed"

            before = PriceSnapshot.model_validate(target.before)
            after = PriceSnapshot.model_validate(target.after)
            external_ref = target.external_ref
            key = make_idempotency_key(run.tenant_id, external_ref, run.id, after.amount)

            if await is_applied(session, key):
                target.status = TargetStatus.APPLIED
                target.error_message = None
                self._audit_ledger_hit(session, run, target, key)
                await session.commit()
                logger.info("Target %s already applied, skipping platform call", target_id,
                            extra={"extra": {"idempotency_key": key}})
                return "applied"

        try:
            result = await asyncio.wait_for(
                connector.update_price(external_ref, after.amount, after.compare_at,
                                       currency=after.currency, idempotency_key=key),
                timeout=self.config.CONNECTOR_TIMEOUT_SECONDS,
            )
        except Exception as e:
            result = PriceUpdateResult(success=False, external_ref=external_ref, error=_describe_error(e))

        async with self.session_factory() as session:
            target = await session.get(RuleTarget, target_id)
            if not result.success:
                await self._fail_target(session, run, target, result.error or "Price update failed")
                return "failed"
            await self._record_applied(session, run, target, key, before, after)
        return "applied"

    def _audit_ledger_hit(self, session: AsyncSession, run: RuleRun, target: RuleTarget, key: str) -> None:
        AuditService(session, ACTOR).record(
            tenant_id=run.tenant_id, project_id=run.project_id, entity="RuleTarget", entity_id=target.id,
            action="applied_from_ledger", correlation_id=run.id,
            explain={"runId": str(run.id), "externalRef": target.external_ref, "idempotencyKey": key},
        )

    async def _fail_target(self, session: AsyncSession, run: RuleRun, target: RuleTarget, error: str) -> None:
        target.status = TargetStatus.FAILED
        target.error_message = error
        AuditService(session, ACTOR).record(
            tenant_id=run.tenant_id, project_id=run.project_id, entity="RuleTarget", entity_id=target.id,
            action="apply_failed", correlation_id=run.id,
            explain={"runId": str(run.id), "externalRef": target.external_ref, "error": error},
        )
        await session.commit()
        logger.warning("Target %s failed: %s", target.id, error, extra={"extra": {"sku": target.sku}})

    async def _record_applied(self, session: AsyncSession, run: RuleRun, target: RuleTarget, key: str,
                              before: PriceSnapshot, after: PriceSnapshot) -> None:
        """Commit the whole local effect of one successful platform write in a single transaction."""
        now = utcnow()
        target_id = target.id
        # Must run before the ledger row is pending: autoflush would raise its IntegrityError here
        await session.execute(
            update(PriceVersion)
            .where(PriceVersion.product_id == target.product_id, PriceVersion.valid_to.is_(None))
            .values(valid_to=now)
        )
        target.status = TargetStatus.APPLIED
        target.error_message = None

        change = PriceChange(
            id=uuid.uuid4(),
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            product_id=target.product_id,
            external_ref=target.external_ref,
            source=f"rule:{run.rule_id}",
            rule_run_id=run.id,
            from_amount=before.amount,
            to_amount=after.amount,
            currency=after.currency,
            compare_at_old=before.compare_at,
            compare_at_new=after.compare_at,
            status=PriceChangeStatus.APPLIED,
            applied_at=now,
            created_by=ACTOR,
            context={"idempotencyKey": key, "ruleTargetId": str(target_id), "platform": run.platform},
        )
        session.add(change)
        record_consumed(session, key, run.tenant_id, rule_run_id=run.id, rule_target_id=target_id)
        session.add(PriceVersion(
            product_id=target.product_id,
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            unit_amount=after.amount,
            currency=after.currency,
            compare_at=after.compare_at,
            valid_from=now,
        ))

        AuditService(session, ACTOR).record(
            tenant_id=run.tenant_id, project_id=run.project_id, entity="PriceChange", entity_id=change.id,
            action="applied", correlation_id=run.id,
            explain={"runId": str(run.id), "targetId": str(target_id), "from": before.amount, "to": after.amount},
        )
        enqueue_event(session, event_type=EventType.PRICECHANGE_APPLIED, tenant_id=run.tenant_id,
                      project_id=run.project_id, aggregate_id=change.id, correlation_id=run.id,
                      max_retries=self.config.OUTBOX_MAX_RETRIES,
                      payload={"priceChangeId": str(change.id), "runId": str(run.id), "ruleId": str(run.rule_id),
                               "productId": str(target.product_id), "externalRef": target.external_ref,
                               "fromAmount": before.amount, "toAmount": after.amount, "currency": after.currency})
        try:
            await session.commit()
        except IntegrityError:
            # Ledger key already present: another worker applied this exact write
            await session.rollback()
            target = await session.get(RuleTarget, target_id)
            target.status = TargetStatus.APPLIED
            target.error_message = None
            self._audit_ledger_hit(session, run, target, key)
            await session.commit()
            logger.info("Target %s already recorded in ledger", target_id, extra={"extra": {"idempotency_key": key}})
            return
        logger.info("Target %s applied: %d -> %d", target_id, before.amount, after.amount,
                    extra={"extra": {"external_ref": target.external_ref, "currency": after.currency}})

    async def finalize_run(self, run_id: uuid.UUID) -> str:
        async with self.session_factory() as session:
            run = await session.get(RuleRun, run_id)
            targets = list((await session.execute(
                select(RuleTarget).where(RuleTarget.rule_run_id == run_id).order_by(RuleTarget.position)
            )).scalars().all())

            for target in targets:
                if target.status == TargetStatus.QUEUED:
                    target.status = TargetStatus.FAILED
                    target.error_message = "Target was not processed"

            success_count = sum(1 for t in targets if t.status == TargetStatus.APPLIED)
            error_count = sum(1 for t in targets if t.status == TargetStatus.FAILED)
            status = final_run_status(success_count, error_count, self.config.RUNS_PARTIAL_STATUS)
            errors = [f"{t.sku or t.external_ref or t.id}: {t.error_message}"
                      for t in targets if t.status == TargetStatus.FAILED]

            run.status = status
            run.finished_at = utcnow()
            run.error_message = "; ".join(errors[: self.config.RUN_ERROR_SUMMARY_LIMIT]) or None
            results = {"successCount": success_count, "errorCount": error_count, "totalTargets": len(targets)}
            run.explain = {**(run.explain or {}), "results": results}

            AuditService(session, ACTOR).record(
                tenant_id=run.tenant_id, project_id=run.project_id, entity="RuleRun", entity_id=run.id,
                action="completed", correlation_id=run.id, explain={"status": status, **results},
            )
            enqueue_event(session, event_type=EventType.RULE_RUN_COMPLETED, tenant_id=run.tenant_id,
                          project_id=run.project_id, aggregate_id=run.id, correlation_id=run.id,
                          max_retries=self.config.OUTBOX_MAX_RETRIES,
                          payload={"runId": str(run.id), "ruleId": str(run.rule_id), "status": status, **results})
            await session.commit()

        logger.info("Run %s finished with %s", run_id, status, extra={"extra": results})
        return status

    async def fail_run(self, run_id: uuid.UUID, error: str) -> str:
        """Mark a run FAILED after an error outside the per-target loop."""
        async with self.session_factory() as session:
            run = await session.get(RuleRun, run_id)
            if run is None or not can_transition_run(run.status, RunStatus.FAILED):
                return RunStatus.FAILED

            targets = list((await session.execute(
                select(RuleTarget).where(RuleTarget.rule_run_id == run_id)
            )).scalars().all())
            for target in targets:
                if target.status == TargetStatus.QUEUED:
                    target.status = TargetStatus.FAILED
                    target.error_message = error

            success_count = sum(1 for t in targets if t.status == TargetStatus.APPLIED)
            results = {"successCount": success_count, "errorCount": len(targets) - success_count,
                       "totalTargets": len(targets)}
            run.status = RunStatus.FAILED
            run.finished_at = utcnow()
            run.error_message = error
            run.explain = {**(run.explain or {}), "results": results}

            AuditService(session, ACTOR).record(
                tenant_id=run.tenant_id, project_id=run.project_id, entity="RuleRun", entity_id=run.id,
                action="failed", correlation_id=run.id, explain={"error": error, **results},
            )
            enqueue_event(session, event_type=EventType.RULE_RUN_COMPLETED, tenant_id=run.tenant_id,
                          project_id=run.project_id, aggregate_id=run.id, correlation_id=run.id,
                          max_retries=self.config.OUTBOX_MAX_RETRIES,
                          payload={"runId": str(run.id), "ruleId": str(run.rule_id), "status": RunStatus.FAILED,
                                   "error": error, **results})
            await session.commit()
        return RunStatus.FAILED

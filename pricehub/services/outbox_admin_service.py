import logging
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.config import Settings, settings
from pricehub.core.errors import DeadLetterNotFoundError, DeadLetterResolvedError
from pricehub.db.base_class import utcnow
from pricehub.models.outbox import DeadLetterEvent, OutboxEvent, OutboxStatus
from pricehub.services.audit_service import AuditService
from pricehub.services.outbox_service import enqueue_event

logger = logging.getLogger(__name__)


class DeadLetterResolution:
    REPLAYED = "REPLAYED"
    DISCARDED = "DISCARDED"


class OutboxAdminService:
    """Operator view of the outbox: metrics, health and dead-letter handling."""

    def __init__(self, session: AsyncSession, config: Settings = settings, actor: str = "operator"):
        self.session = session
        self.config = config
        self.audit = AuditService(session, actor)

    async def metrics(self, tenant_id: str | None = None) -> dict[str, Any]:
        stmt = select(OutboxEvent.status, func.count()).group_by(OutboxEvent.status)
        if tenant_id:
            stmt = stmt.where(OutboxEvent.tenant_id == tenant_id)
        counts = {status: 0 for status in (OutboxStatus.PENDING, OutboxStatus.PROCESSING,
                                           OutboxStatus.COMPLETED, OutboxStatus.FAILED)}
        for status, count in (await self.session.execute(stmt)).all():
            counts[status] = count

        dlq_stmt = select(func.count()).select_from(DeadLetterEvent).where(DeadLetterEvent.resolution.is_(None))
        oldest_stmt = select(func.min(OutboxEvent.created_at)).where(OutboxEvent.status == OutboxStatus.PENDING)
        if tenant_id:
            dlq_stmt = dlq_stmt.where(DeadLetterEvent.tenant_id == tenant_id)
            oldest_stmt = oldest_stmt.where(OutboxEvent.tenant_id == tenant_id)

        dlq_size = (await self.session.execute(dlq_stmt)).scalar_one()
        oldest_pending = (await self.session.execute(oldest_stmt)).scalar_one_or_none()
        backlog_age = (utcnow() - oldest_pending).total_seconds() if oldest_pending else 0.0

        return {
            "pending": counts[OutboxStatus.PENDING],
            "processing": counts[OutboxStatus.PROCESSING],
            "completed": counts[OutboxStatus.COMPLETED],
            "failed": counts[OutboxStatus.FAILED],
            "dlq_size": dlq_size,
            "backlog_age_seconds": round(max(backlog_age, 0.0), 3),
        }

    async def health(self) -> dict[str, Any]:
        """
        Health verdict over a sliding window.

        Unhealthy when failures or new dead letters in the window reach their
        thresholds, or the oldest PENDING event is older than the backlog limit.
        """
        window_start = utcnow() - timedelta(seconds=self.config.OUTBOX_HEALTH_WINDOW_SECONDS)

        failed_recent = (await self.session.execute(
            select(func.count()).select_from(OutboxEvent).where(
                OutboxEvent.status == OutboxStatus.FAILED, OutboxEvent.updated_at >= window_start)
        )).scalar_one()
        dlq_recent = (await self.session.execute(
            select(func.count()).select_from(DeadLetterEvent).where(DeadLetterEvent.created_at >= window_start)
        )).scalar_one()

        metrics = await self.metrics()
        issues: list[str] = []
        if failed_recent >= self.config.OUTBOX_HEALTH_MAX_FAILED:
            issues.append(f"{failed_recent} failed events in window")
        if dlq_recent >= self.config.OUTBOX_HEALTH_MAX_DLQ:
            issues.append(f"{dlq_recent} dead letters in window")
        if metrics["backlog_age_seconds"] > self.config.OUTBOX_HEALTH_MAX_BACKLOG_SECONDS:
            issues.append(f"oldest pending event is {int(metrics['backlog_age_seconds'])}s old")

        if issues:
            logger.warning("Outbox unhealthy: %s", "; ".join(issues))
        return {
            "healthy": not issues,
            "issues": issues,
            "window_seconds": self.config.OUTBOX_HEALTH_WINDOW_SECONDS,
            "failed_in_window": failed_recent,
            "dlq_in_window": dlq_recent,
            **metrics,
        }

    async def list_dead_letters(self, tenant_id: str | None = None, include_resolved: bool = False,
                                limit: int = 50, offset: int = 0) -> list[DeadLetterEvent]:
        stmt = select(DeadLetterEvent).order_by(DeadLetterEvent.created_at.desc()).limit(limit).offset(offset)
        if tenant_id:
            stmt = stmt.where(DeadLetterEvent.tenant_id == tenant_id)
        if not include_resolved:
            stmt = stmt.where(DeadLetterEvent.resolution.is_(None))
        return list((await self.session.execute(stmt)).scalars().all())

    async def _get_unresolved(self, dead_letter_id: uuid.UUID, tenant_id: str | None) -> DeadLetterEvent:
        dead = await self.session.get(DeadLetterEvent, dead_letter_id)
        if dead is None or (tenant_id and dead.tenant_id != tenant_id):
            raise DeadLetterNotFoundError(f"Dead letter {dead_letter_id} not found")
        if dead.resolution is not None:
            raise DeadLetterResolvedError(f"Dead letter {dead_letter_id} already {dead.resolution.lower()}")
        return dead

    async def replay(self, dead_letter_id: uuid.UUID, tenant_id: str | None = None) -> OutboxEvent:
        """Re-enqueue a dead letter as a fresh PENDING event with a full retry budget."""
        dead = await self._get_unresolved(dead_letter_id, tenant_id)
        event = enqueue_event(
            self.session,
            event_type=dead.event_type,
            payload=dead.payload,
            tenant_id=dead.tenant_id,
            project_id=dead.project_id,
            aggregate_id=dead.aggregate_id,
            correlation_id=dead.correlation_id,
            max_retries=self.config.OUTBOX_MAX_RETRIES,
        )
        dead.resolution = DeadLetterResolution.REPLAYED
        dead.resolved_at = utcnow()
        self.audit.record(tenant_id=dead.tenant_id, project_id=dead.project_id, entity="DeadLetterEvent",
                          entity_id=dead.id, action="replayed",
                          explain={"original_id": str(dead.original_id), "new_event_id": str(event.id)})
        await self.session.commit()
        logger.info("Dead letter %s replayed as %s", dead.id, event.id)
        return event

    async def discard(self, dead_letter_id: uuid.UUID, tenant_id: str | None = None) -> DeadLetterEvent:
        dead = await self._get_unresolved(dead_letter_id, tenant_id)
        dead.resolution = DeadLetterResolution.DISCARDED
        dead.resolved_at = utcnow()
        self.audit.record(tenant_id=dead.tenant_id, project_id=dead.project_id, entity="DeadLetterEvent",
                          entity_id=dead.id, action="discarded", explain={"original_id": str(dead.original_id)})
        await self.session.commit()
        logger.info("Dead letter %s discarded", dead.id)
        return dead

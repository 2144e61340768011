import asyncio
import logging
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricehub.core.config import Settings, settings
from pricehub.core.logging import set_correlation_id
from pricehub.core.observability import log_step
from pricehub.db.base_class import utcnow
from pricehub.models.outbox import DeadLetterEvent, OutboxEvent, OutboxStatus
from pricehub.services.backoff import next_attempt_at, should_dead_letter
from pricehub.services.outbox_service import DomainEvent, SubscriberRegistry

logger = logging.getLogger(__name__)


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Subscriber timed out"
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class OutboxProcessorService:
    """
    Outbox dispatcher.

    Claims due PENDING events, hands each to every subscriber registered for
    its type and records the outcome. Delivery is at-least-once: an event is
    marked COMPLETED only after all of its subscribers returned.
    """
    PROCESS_NAME = "OutboxProcessor"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], subscribers: SubscriberRegistry,
                 config: Settings = settings):
        self.session_factory = session_factory
        self.subscribers = subscribers
        self.config = config

    @log_step("outbox.process_pending_events")
    async def process_pending_events(self) -> dict[str, int]:
        summary = {"claimed": 0, "completed": 0, "retried": 0, "dead_lettered": 0}

        await self.reset_stale_processing()
        event_ids = await self.claim_due_events()
        if not event_ids:
            logger.debug("No outbox events due")
            return summary

        summary["claimed"] = len(event_ids)
        logger.info("Dispatching %d outbox events", len(event_ids), extra={"extra": {"process": self.PROCESS_NAME}})

        for event_id in event_ids:
            outcome = await self.dispatch(event_id)
            summary[outcome] += 1

        logger.info("Outbox cycle finished", extra={"extra": {"process": self.PROCESS_NAME, **summary}})
        return summary

    async def reset_stale_processing(self) -> int:
        """Return events stuck in PROCESSING (dispatcher died mid-delivery) to PENDING."""
        cutoff = utcnow() - timedelta(seconds=self.config.OUTBOX_PROCESSING_TIMEOUT_SECONDS)
        async with self.session_factory() as session:
            result = await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.status == OutboxStatus.PROCESSING, OutboxEvent.locked_at < cutoff)
                .values(status=OutboxStatus.PENDING, locked_at=None)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Reset %d stale PROCESSING outbox events", result.rowcount)
        return result.rowcount

    async def claim_due_events(self) -> list[uuid.UUID]:
        """
        Move a batch of due PENDING events to PROCESSING.

        Each row is claimed with a conditional UPDATE, so concurrent dispatchers
        never deliver the same event in parallel.
        """
        now = utcnow()
        async with self.session_factory() as session:
            stmt = (
                select(OutboxEvent.id)
                .where(
                    OutboxEvent.status == OutboxStatus.PENDING,
                    (OutboxEvent.next_attempt_at.is_(None)) | (OutboxEvent.next_attempt_at <= now),
                )
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(self.config.OUTBOX_BATCH_SIZE)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list((await session.execute(stmt)).scalars().all())

            claimed: list[uuid.UUID] = []
            for event_id in candidate_ids:
                result = await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event_id, OutboxEvent.status == OutboxStatus.PENDING)
                    .values(status=OutboxStatus.PROCESSING, locked_at=now)
                )
                if result.rowcount == 1:
                    claimed.append(event_id)
            await session.commit()
        return claimed

    async def dispatch(self, event_id: uuid.UUID) -> str:
        """Deliver one claimed event; returns completed, retried or dead_lettered."""
        async with self.session_factory() as session:
            row = await session.get(OutboxEvent, event_id)
            if row is None:
                logger.warning("Claimed outbox event %s disappeared", event_id)
                return "completed"
            event = DomainEvent.from_row(row)

        set_correlation_id(event.correlation_id)
        handlers = self.subscribers.for_event(event.event_type)
        if not handlers:
            logger.warning("No subscribers for event type %s", event.event_type,
                           extra={"extra": {"event_id": str(event.id)}})

        try:
            for handler in handlers:
                await asyncio.wait_for(handler.handle(event), timeout=self.config.OUTBOX_HANDLER_TIMEOUT_SECONDS)
        except Exception as e:
            error = _describe_error(e)
            logger.error("Outbox event %s failed in subscriber: %s", event.id, error,
                         extra={"extra": {"event_type": event.event_type, "attempts": event.attempts + 1}},
                         exc_info=True)
            return await self.mark_failed(event.id, error)

        await self.mark_completed(event.id)
        logger.info("Outbox event %s delivered", event.id,
                    extra={"extra": {"event_type": event.event_type, "subscribers": len(handlers)}})
        return "completed"

    async def mark_completed(self, event_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(status=OutboxStatus.COMPLETED, processed_at=utcnow(), locked_at=None, last_error=None)
            )
            await session.commit()

    async def mark_failed(self, event_id: uuid.UUID, error: str) -> str:
        """Count the failed attempt and either schedule a retry or dead-letter the event."""
        async with self.session_factory() as session:
            row = await session.get(OutboxEvent, event_id)
            if row is None:
                return "completed"

            row.attempts += 1
            row.last_error = error
            row.locked_at = None

            if should_dead_letter(row.attempts, row.max_retries):
                session.add(DeadLetterEvent(
                    original_id=row.id,
                    event_type=row.event_type,
                    payload=row.payload,
                    tenant_id=row.tenant_id,
                    project_id=row.project_id,
                    correlation_id=row.correlation_id,
                    aggregate_id=row.aggregate_id,
                    failure_reason=error,
                    attempts=row.attempts,
                ))
                row.status = OutboxStatus.FAILED
                row.processed_at = utcnow()
                await session.commit()
                logger.error("Outbox event %s dead-lettered after %d attempts", event_id, row.attempts,
                             extra={"extra": {"event_type": row.event_type}})
                return "dead_lettered"

            row.status = OutboxStatus.PENDING
            row.next_attempt_at = next_attempt_at(
                row.attempts,
                initial_delay_ms=self.config.OUTBOX_INITIAL_DELAY_MS,
                multiplier=self.config.OUTBOX_BACKOFF_MULTIPLIER,
                max_delay_ms=self.config.OUTBOX_MAX_DELAY_MS,
            )
            await session.commit()
            logger.warning("Outbox event %s scheduled for retry %d/%d", event_id, row.attempts, row.max_retries,
                           extra={"extra": {"next_attempt_at": row.next_attempt_at}})
            return "retried"

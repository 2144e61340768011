import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.logging import correlation_id_var
from pricehub.models.outbox import OutboxEvent, OutboxStatus
from pricehub.services.audit_service import _ensure_jsonable

logger = logging.getLogger(__name__)


class EventType:
    RULE_SCHEDULED_QUEUED = "rule.scheduled.queued"
    RULE_MANUAL_QUEUED = "rule.manual.queued"
    RULE_RUN_COMPLETED = "rule.run.completed"
    PRICECHANGE_APPLIED = "pricechange.applied"

    ALL = (RULE_SCHEDULED_QUEUED, RULE_MANUAL_QUEUED, RULE_RUN_COMPLETED, PRICECHANGE_APPLIED)


def enqueue_event(session: AsyncSession, *, event_type: str, payload: dict[str, Any], tenant_id: str,
                  project_id: str | None = None, aggregate_id: Any = None, correlation_id: Any = None,
                  max_retries: int) -> OutboxEvent:
    """
    Add an outbox event to the caller's transaction.

    The event becomes visible to the dispatcher only if the caller commits; a
    rollback discards it together with the state change it announces.
    max_retries is the delivery budget from the caller's settings.
    """
    correlation = correlation_id if correlation_id is not None else correlation_id_var.get()
    event = OutboxEvent(
        id=uuid.uuid4(),
        event_type=event_type,
        payload=_ensure_jsonable(payload),
        tenant_id=tenant_id,
        project_id=project_id,
        aggregate_id=None if aggregate_id is None else str(aggregate_id),
        correlation_id=None if correlation is None else str(correlation),
        status=OutboxStatus.PENDING,
        attempts=0,
        max_retries=max_retries,
    )
    session.add(event)
    logger.debug("Outbox event enqueued", extra={"extra": {
        "event_id": str(event.id), "event_type": event_type, "aggregate_id": event.aggregate_id}})
    return event


class DomainEvent(BaseModel):
    """Detached view of an outbox row handed to subscribers."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str
    project_id: str | None = None
    correlation_id: str | None = None
    aggregate_id: str | None = None
    attempts: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: OutboxEvent) -> "DomainEvent":
        return cls(
            id=row.id,
            event_type=row.event_type,
            payload=row.payload or {},
            tenant_id=row.tenant_id,
            project_id=row.project_id,
            correlation_id=row.correlation_id,
            aggregate_id=row.aggregate_id,
            attempts=row.attempts,
            created_at=row.created_at,
        )


class OutboxSubscriber(ABC):
    """Side-effect handler for one or more event types ("*" subscribes to all)."""
    name: str = "subscriber"
    event_types: tuple[str, ...] = ("*",)

    @abstractmethod
    async def handle(self, event: DomainEvent) -> None:
        ...

    async def close(self) -> None:
        return None


class SubscriberRegistry:
    def __init__(self):
        self._subscribers: list[OutboxSubscriber] = []

    def register(self, subscriber: OutboxSubscriber) -> OutboxSubscriber:
        self._subscribers.append(subscriber)
        return subscriber

    def for_event(self, event_type: str) -> list[OutboxSubscriber]:
        return [s for s in self._subscribers if "*" in s.event_types or event_type in s.event_types]

    def __len__(self) -> int:
        return len(self._subscribers)

    async def close(self) -> None:
        for subscriber in self._subscribers:
            await subscriber.close()

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from factories import TENANT
from pricehub.core.errors import DeadLetterNotFoundError, DeadLetterResolvedError
from pricehub.db.base_class import utcnow
from pricehub.models.audit import AuditLog
from pricehub.models.outbox import DeadLetterEvent, OutboxEvent, OutboxStatus
from pricehub.services.outbox_admin_service import DeadLetterResolution, OutboxAdminService
from pricehub.services.outbox_service import EventType


async def _dead_letter(session, tenant_id=TENANT):
    dead = DeadLetterEvent(
        original_id=uuid.uuid4(), event_type=EventType.PRICECHANGE_APPLIED,
        payload={"runId": "r-1"}, tenant_id=tenant_id, project_id="project-a", correlation_id="corr-1",
        aggregate_id="agg-1", failure_reason="RuntimeError: boom", attempts=5,
    )
    session.add(dead)
    await session.commit()
    return dead


def _event(status, created_at=None, tenant_id=TENANT, **kwargs):
    return OutboxEvent(event_type=EventType.RULE_RUN_COMPLETED, payload={}, tenant_id=tenant_id, status=status,
                       created_at=created_at or utcnow(), **kwargs)


@pytest.mark.asyncio
async def test_metrics_count_by_status(session, test_settings):
    session.add_all([
        _event(OutboxStatus.PENDING, created_at=utcnow() - timedelta(seconds=120)),
        _event(OutboxStatus.PENDING),
        _event(OutboxStatus.COMPLETED),
        _event(OutboxStatus.FAILED),
        _event(OutboxStatus.PENDING, tenant_id="tenant-b"),
    ])
    await session.commit()
    await _dead_letter(session)

    metrics = await OutboxAdminService(session, test_settings).metrics(TENANT)

    assert metrics["pending"] == 2
    assert metrics["processing"] == 0
    assert metrics["completed"] == 1
    assert metrics["failed"] == 1
    assert metrics["dlq_size"] == 1
    assert metrics["backlog_age_seconds"] >= 120


@pytest.mark.asyncio
async def test_empty_outbox_is_healthy(session, test_settings):
    health = await OutboxAdminService(session, test_settings).health()

    assert health["healthy"] is True
    assert health["issues"] == []
    assert health["backlog_age_seconds"] == 0.0


@pytest.mark.asyncio
async def test_health_flags_failures_and_backlog(session, test_settings):
    config = test_settings.model_copy(update={"OUTBOX_HEALTH_MAX_FAILED": 2, "OUTBOX_HEALTH_MAX_BACKLOG_SECONDS": 60})
    session.add_all([
        _event(OutboxStatus.FAILED),
        _event(OutboxStatus.FAILED),
        _event(OutboxStatus.PENDING, created_at=utcnow() - timedelta(minutes=10)),
    ])
    await session.commit()

    health = await OutboxAdminService(session, config).health()

    assert health["healthy"] is False
    assert health["failed_in_window"] == 2
    assert len(health["issues"]) == 2


@pytest.mark.asyncio
async def test_old_failures_fall_out_of_the_window(session, test_settings):
    config = test_settings.model_copy(update={"OUTBOX_HEALTH_MAX_FAILED": 1, "OUTBOX_HEALTH_WINDOW_SECONDS": 60})
    old = utcnow() - timedelta(hours=2)
    session.add(_event(OutboxStatus.FAILED, created_at=old, updated_at=old))
    await session.commit()

    health = await OutboxAdminService(session, config).health()

    assert health["healthy"] is True
    assert health["failed"] == 1
    assert health["failed_in_window"] == 0


@pytest.mark.asyncio
async def test_replay_enqueues_a_fresh_event(session, test_settings):
    dead = await _dead_letter(session)

    event = await OutboxAdminService(session, test_settings).replay(dead.id, TENANT)

    assert event.status == OutboxStatus.PENDING
    assert event.attempts == 0
    assert event.payload == {"runId": "r-1"}
    assert event.correlation_id == "corr-1"
    assert dead.resolution == DeadLetterResolution.REPLAYED
    assert dead.resolved_at is not None
    audit = (await session.execute(select(AuditLog).where(AuditLog.entity_id == str(dead.id)))).scalars().one()
    assert audit.action == "replayed"
    assert await OutboxAdminService(session, test_settings).list_dead_letters(TENANT) == []


@pytest.mark.asyncio
async def test_resolved_dead_letter_cannot_be_replayed(session, test_settings):
    dead = await _dead_letter(session)
    admin = OutboxAdminService(session, test_settings)
    await admin.discard(dead.id, TENANT)

    with pytest.raises(DeadLetterResolvedError):
        await admin.replay(dead.id, TENANT)
    assert (await session.execute(select(OutboxEvent))).scalars().all() == []
    listed = await admin.list_dead_letters(TENANT, include_resolved=True)
    assert [d.resolution for d in listed] == [DeadLetterResolution.DISCARDED]


@pytest.mark.asyncio
async def test_dead_letters_are_tenant_scoped(session, test_settings):
    dead = await _dead_letter(session, tenant_id="tenant-b")
    admin = OutboxAdminService(session, test_settings)

    assert await admin.list_dead_letters(TENANT) == []
    with pytest.raises(DeadLetterNotFoundError):
        await admin.discard(dead.id, TENANT)

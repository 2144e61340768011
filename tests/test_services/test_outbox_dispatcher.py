import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from factories import TENANT, seed_product
from pricehub.db.base_class import utcnow
from pricehub.models.catalog import Product
from pricehub.models.outbox import DeadLetterEvent, OutboxEvent, OutboxStatus
from pricehub.services.backoff import compute_backoff_delay_ms, next_attempt_at, should_dead_letter
from pricehub.services.outbox_processor_service import OutboxProcessorService
from pricehub.services.outbox_service import EventType, OutboxSubscriber, SubscriberRegistry, enqueue_event


class RecordingSubscriber(OutboxSubscriber):
    name = "recording"

    def __init__(self, event_types=("*",), error=None, hang=False):
        self.event_types = event_types
        self.error = error
        self.hang = hang
        self.received = []

    async def handle(self, event):
        self.received.append(event)
        if self.hang:
            await asyncio.sleep(10)
        if self.error:
            raise self.error


def _registry(*subscribers):
    registry = SubscriberRegistry()
    for subscriber in subscribers:
        registry.register(subscriber)
    return registry


async def _enqueue(session, event_type=EventType.PRICECHANGE_APPLIED, max_retries=5, **payload):
    event = enqueue_event(session, event_type=event_type, payload=payload or {"runId": "r-1"},
                          tenant_id=TENANT, aggregate_id="agg-1", correlation_id="corr-1", max_retries=max_retries)
    await session.commit()
    return event


async def _reload(session, model, pk):
    return await session.get(model, pk, populate_existing=True)


def test_backoff_doubles_until_capped():
    delays = [compute_backoff_delay_ms(n) for n in range(1, 9)]
    assert delays == [1000, 2000, 4000, 8000, 16000, 32000, 60000, 60000]
    assert compute_backoff_delay_ms(0) == 0
    assert compute_backoff_delay_ms(3, initial_delay_ms=500, multiplier=3, max_delay_ms=10000) == 4500


def test_next_attempt_at_is_relative_to_now():
    now = utcnow()
    assert next_attempt_at(2, now=now) == now + timedelta(milliseconds=2000)


@pytest.mark.parametrize("attempts,max_retries,expected", [(1, 5, False), (4, 5, False), (5, 5, True), (6, 5, True)])
def test_should_dead_letter(attempts, max_retries, expected):
    assert should_dead_letter(attempts, max_retries) is expected


@pytest.mark.asyncio
async def test_rolled_back_transaction_leaves_no_event(session):
    session.add(Product(tenant_id=TENANT, project_id="p", sku="X"))
    enqueue_event(session, event_type=EventType.RULE_MANUAL_QUEUED, payload={}, tenant_id=TENANT, max_retries=5)
    await session.rollback()

    assert (await session.execute(select(func.count()).select_from(OutboxEvent))).scalar_one() == 0
    assert (await session.execute(select(func.count()).select_from(Product))).scalar_one() == 0


@pytest.mark.asyncio
async def test_explicit_zero_retry_budget_is_kept(session):
    event = await _enqueue(session, max_retries=0)
    assert (await _reload(session, OutboxEvent, event.id)).max_retries == 0


@pytest.mark.asyncio
async def test_event_committed_with_state_change(session):
    await seed_product(session, "A", 1000)
    event = await _enqueue(session)

    row = await _reload(session, OutboxEvent, event.id)
    assert row.status == OutboxStatus.PENDING
    assert row.attempts == 0
    assert row.correlation_id == "corr-1"


@pytest.mark.asyncio
async def test_delivered_event_is_completed(session, session_factory, test_settings):
    event = await _enqueue(session, runId="r-9")
    subscriber = RecordingSubscriber()

    summary = await OutboxProcessorService(session_factory, _registry(subscriber), test_settings).process_pending_events()

    assert summary == {"claimed": 1, "completed": 1, "retried": 0, "dead_lettered": 0}
    assert [e.payload for e in subscriber.received] == [{"runId": "r-9"}]
    assert subscriber.received[0].aggregate_id == "agg-1"
    row = await _reload(session, OutboxEvent, event.id)
    assert row.status == OutboxStatus.COMPLETED
    assert row.processed_at is not None
    assert row.locked_at is None


@pytest.mark.asyncio
async def test_subscribers_only_receive_their_event_types(session, session_factory, test_settings):
    await _enqueue(session, event_type=EventType.RULE_RUN_COMPLETED)
    await _enqueue(session, event_type=EventType.PRICECHANGE_APPLIED)
    applied_only = RecordingSubscriber(event_types=(EventType.PRICECHANGE_APPLIED,))
    everything = RecordingSubscriber()

    await OutboxProcessorService(session_factory, _registry(applied_only, everything),
                                 test_settings).process_pending_events()

    assert [e.event_type for e in applied_only.received] == [EventType.PRICECHANGE_APPLIED]
    assert len(everything.received) == 2


@pytest.mark.asyncio
async def test_event_without_subscribers_is_completed(session, session_factory, test_settings, caplog):
    event = await _enqueue(session)

    summary = await OutboxProcessorService(session_factory, SubscriberRegistry(), test_settings).process_pending_events()

    assert summary["completed"] == 1
    assert (await _reload(session, OutboxEvent, event.id)).status == OutboxStatus.COMPLETED
    assert any("No subscribers" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_later(session, session_factory, test_settings):
    event = await _enqueue(session)
    processor = OutboxProcessorService(session_factory, _registry(RecordingSubscriber(error=RuntimeError("boom"))),
                                       test_settings)

    first = await processor.process_pending_events()
    second = await processor.process_pending_events()

    assert first["retried"] == 1
    assert second["claimed"] == 0
    row = await _reload(session, OutboxEvent, event.id)
    assert row.status == OutboxStatus.PENDING
    assert row.attempts == 1
    assert row.last_error == "RuntimeError: boom"
    assert row.next_attempt_at > utcnow()


@pytest.mark.asyncio
async def test_exhausted_event_is_dead_lettered(session, session_factory, test_settings):
    event = await _enqueue(session, max_retries=3)
    config = test_settings.model_copy(update={"OUTBOX_INITIAL_DELAY_MS": 0})
    subscriber = RecordingSubscriber(error=RuntimeError("webhook down"))
    processor = OutboxProcessorService(session_factory, _registry(subscriber), config)

    outcomes = [await processor.process_pending_events() for _ in range(4)]

    assert [o["retried"] for o in outcomes] == [1, 1, 0, 0]
    assert [o["dead_lettered"] for o in outcomes] == [0, 0, 1, 0]
    assert len(subscriber.received) == 3

    row = await _reload(session, OutboxEvent, event.id)
    assert row.status == OutboxStatus.FAILED
    assert row.attempts == 3
    dead = (await session.execute(select(DeadLetterEvent))).scalars().one()
    assert dead.original_id == event.id
    assert dead.attempts == 3
    assert dead.failure_reason == "RuntimeError: webhook down"
    assert dead.resolution is None


@pytest.mark.asyncio
async def test_hanging_subscriber_times_out(session, session_factory, test_settings):
    event = await _enqueue(session)
    processor = OutboxProcessorService(session_factory, _registry(RecordingSubscriber(hang=True)), test_settings)

    summary = await processor.process_pending_events()

    assert summary["retried"] == 1
    assert (await _reload(session, OutboxEvent, event.id)).last_error == "Subscriber timed out"


@pytest.mark.asyncio
async def test_stale_processing_event_is_reclaimed(session, session_factory, test_settings):
    event = await _enqueue(session)
    await session.execute(update(OutboxEvent).where(OutboxEvent.id == event.id).values(
        status=OutboxStatus.PROCESSING, locked_at=utcnow() - timedelta(hours=1)))
    await session.commit()
    subscriber = RecordingSubscriber()

    summary = await OutboxProcessorService(session_factory, _registry(subscriber), test_settings).process_pending_events()

    assert summary["completed"] == 1
    assert len(subscriber.received) == 1


@pytest.mark.asyncio
async def test_recently_locked_event_is_not_redelivered(session, session_factory, test_settings):
    event = await _enqueue(session)
    await session.execute(update(OutboxEvent).where(OutboxEvent.id == event.id).values(
        status=OutboxStatus.PROCESSING, locked_at=utcnow()))
    await session.commit()
    subscriber = RecordingSubscriber()

    summary = await OutboxProcessorService(session_factory, _registry(subscriber), test_settings).process_pending_events()

    assert summary["claimed"] == 0
    assert subscriber.received == []

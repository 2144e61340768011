import uuid

import httpx
import pytest

from factories import PROJECT, TENANT, seed_product, seed_rule
from pricehub.main import create_app
from pricehub.models.outbox import DeadLetterEvent
from pricehub.services.apply_worker_service import ApplyWorkerService

HEADERS = {"X-Tenant-Id": TENANT, "X-Project-Id": PROJECT}


@pytest.fixture
async def client(pipeline_context):
    app = create_app(pipeline_context)
    # ASGITransport does not run the lifespan
    app.state.context = pipeline_context
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_root_and_db_health(client):
    assert (await client.get("/")).json()["status"] == "ok"
    assert (await client.get("/health/db")).json() == {"db": "ok"}


@pytest.mark.asyncio
async def test_create_and_read_rule(client):
    response = await client.post("/api/v1/rules", headers=HEADERS, json={
        "name": "Summer sale",
        "selector": {"tag": ["summer"]},
        "transform": {"type": "percentage", "value": -15, "floor": 500},
        "schedule_at": "2026-11-01T10:00:00+02:00",
    })

    assert response.status_code == 201
    rule = response.json()
    assert rule["tenant_id"] == TENANT
    assert rule["transform"] == {"type": "percentage", "value": "-15", "floor": 500}
    assert rule["schedule_at"] == "2026-11-01T08:00:00"

    fetched = await client.get(f"/api/v1/rules/{rule['id']}", headers=HEADERS)
    assert fetched.status_code == 200
    listed = await client.get("/api/v1/rules", headers=HEADERS)
    assert [r["id"] for r in listed.json()] == [rule["id"]]


@pytest.mark.asyncio
async def test_invalid_rule_definitions_are_rejected(client):
    bad_transform = await client.post("/api/v1/rules", headers=HEADERS, json={
        "name": "Broken", "selector": {"all": True}, "transform": {"type": "percentage", "value": -150}})
    bad_selector = await client.post("/api/v1/rules", headers=HEADERS, json={
        "name": "Broken", "selector": {"colour": "red"}, "transform": {"type": "fixed", "value": 100}})
    no_project = await client.post("/api/v1/rules", headers={"X-Tenant-Id": TENANT}, json={
        "name": "Ok", "selector": {"all": True}, "transform": {"type": "fixed", "value": 100}})
    no_tenant = await client.get("/api/v1/rules")

    assert bad_transform.status_code == 422
    assert bad_selector.status_code == 422
    assert no_project.status_code == 400
    assert no_tenant.status_code == 422


@pytest.mark.asyncio
async def test_rule_lifecycle(client, session):
    rule = await seed_rule(session)
    base = f"/api/v1/rules/{rule.id}"

    assert (await client.post(f"{base}/disable", headers=HEADERS)).json()["enabled"] is False
    assert (await client.post(f"{base}/enable", headers=HEADERS)).json()["enabled"] is True
    scheduled = await client.put(f"{base}/schedule", headers=HEADERS, json={"schedule_at": None})
    assert scheduled.json()["schedule_at"] is None

    assert (await client.delete(base, headers=HEADERS)).status_code == 204
    assert (await client.get(base, headers=HEADERS)).status_code == 404
    assert (await client.get(base, headers={"X-Tenant-Id": "tenant-b"})).status_code == 404


@pytest.mark.asyncio
async def test_preview_writes_nothing(client, session):
    await seed_product(session, "A", 1000, tags=["sale"])
    await seed_product(session, "B", 1000)
    await seed_product(session, "C", None, tags=["sale"])
    rule = await seed_rule(session, selector={"tag": "sale"})

    preview = (await client.post(f"/api/v1/rules/{rule.id}/preview", headers=HEADERS)).json()

    assert preview["matchedProducts"] == 2
    assert preview["withoutPrice"] == 1
    assert preview["targetCount"] == 1
    assert preview["sample"][0]["after"]["amount"] == 900
    assert (await client.get("/api/v1/runs", headers=HEADERS)).json() == []


@pytest.mark.asyncio
async def test_policy_is_stored_and_blocks_in_preview(client, session):
    await seed_product(session, "CHEAP", 1000)
    await seed_product(session, "PRICEY", 3000)
    created = await client.post("/api/v1/rules", headers=HEADERS, json={
        "name": "Flat markdown", "selector": {"all": True}, "transform": {"type": "absolute", "value": -300},
        "policy": {"max_pct_delta": "0.2"}})
    assert created.status_code == 201
    rule = created.json()
    assert rule["policy"] == {"max_pct_delta": "0.2"}
    base = f"/api/v1/rules/{rule['id']}"

    preview = (await client.post(f"{base}/preview", headers=HEADERS)).json()

    assert preview["blocked"] == 1
    assert preview["targetCount"] == 1
    blocked = preview["blockedSample"][0]
    assert blocked["sku"] == "CHEAP"
    assert blocked["failedChecks"] == ["maxPctDelta"]
    assert blocked["checks"][0]["actual"] == "0.3000"

    cleared = await client.put(f"{base}/policy", headers=HEADERS, json={"policy": None})
    assert cleared.json()["policy"] is None
    assert (await client.post(f"{base}/preview", headers=HEADERS)).json()["targetCount"] == 2

    invalid = await client.put(f"{base}/policy", headers=HEADERS, json={"policy": {"max_pct_delta": -1}})
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_apply_queues_one_run(client, session):
    await seed_product(session, "A", 1000)
    rule = await seed_rule(session)

    accepted = await client.post(f"/api/v1/rules/{rule.id}/apply", headers=HEADERS)
    duplicate = await client.post(f"/api/v1/rules/{rule.id}/apply", headers=HEADERS)

    assert accepted.status_code == 202
    body = accepted.json()
    assert body["status"] == "QUEUED"
    assert body["target_count"] == 1
    assert body["request_id"]
    assert duplicate.status_code == 409


@pytest.mark.asyncio
async def test_apply_without_changes_is_unprocessable(client, session):
    await seed_product(session, "A", 1000)
    rule = await seed_rule(session, transform={"type": "fixed", "value": 1000})

    response = await client.post(f"/api/v1/rules/{rule.id}/apply", headers=HEADERS)

    assert response.status_code == 422
    assert (await client.post(f"/api/v1/rules/{uuid.uuid4()}/apply", headers=HEADERS)).status_code == 404


@pytest.mark.asyncio
async def test_run_detail_status_and_retry(client, session, pipeline_context, connector):
    await seed_product(session, "A", 1000)
    await seed_product(session, "B", 1000)
    rule = await seed_rule(session)
    run_id = (await client.post(f"/api/v1/rules/{rule.id}/apply", headers=HEADERS)).json()["run_id"]

    connector.fail_refs.add("var-B")
    await ApplyWorkerService(pipeline_context.session_factory, pipeline_context.connectors,
                             pipeline_context.settings).poll_and_process_runs()

    detail = (await client.get(f"/api/v1/runs/{run_id}", headers=HEADERS)).json()
    assert detail["status"] == "PARTIAL"
    assert [t["status"] for t in detail["targets"]] == ["APPLIED", "FAILED"]
    assert detail["explain"]["results"]["errorCount"] == 1

    status = (await client.get("/api/v1/runs/status", headers=HEADERS)).json()
    assert status["runs"]["PARTIAL"] == 1
    assert status["targets"] == {"QUEUED": 0, "APPLIED": 1, "FAILED": 1}

    retried = await client.post(f"/api/v1/runs/{run_id}/retry-failed", headers=HEADERS)
    assert retried.status_code == 202
    assert retried.json()["requeued_targets"] == 1
    again = await client.post(f"/api/v1/runs/{run_id}/retry-failed", headers=HEADERS)
    assert again.status_code == 409

    assert (await client.get(f"/api/v1/runs/{run_id}", headers={"X-Tenant-Id": "tenant-b"})).status_code == 404


@pytest.mark.asyncio
async def test_outbox_health_and_dead_letters(client, session):
    dead = DeadLetterEvent(original_id=uuid.uuid4(), event_type="pricechange.applied", payload={"runId": "r"},
                           tenant_id=TENANT, failure_reason="RuntimeError: boom", attempts=5)
    session.add(dead)
    await session.commit()

    health = (await client.get("/api/v1/outbox/health")).json()
    assert health["healthy"] is True
    assert health["dlq_size"] == 1

    listed = (await client.get("/api/v1/outbox/dead-letters", headers=HEADERS)).json()
    assert [d["id"] for d in listed] == [str(dead.id)]

    replayed = await client.post(f"/api/v1/outbox/dead-letters/{dead.id}/replay", headers=HEADERS)
    assert replayed.status_code == 202
    assert replayed.json()["status"] == "PENDING"
    discarded = await client.post(f"/api/v1/outbox/dead-letters/{dead.id}/discard", headers=HEADERS)
    assert discarded.status_code == 409
    missing = await client.post(f"/api/v1/outbox/dead-letters/{uuid.uuid4()}/discard", headers=HEADERS)
    assert missing.status_code == 404
